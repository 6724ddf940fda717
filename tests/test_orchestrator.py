import threading

import pytest

from bluegreen.errors import (
    BuildError,
    DeploymentAborted,
    DeploymentError,
    DeploymentLockedError,
    HealthCheckError,
    InfrastructureError,
    SwitchError,
    SwitchRevertedError,
    TopologyNotFoundError,
)
from bluegreen.locks import reload_lock, service_lock
from bluegreen.models import Color, ColorStatus
from bluegreen.orchestrator import main
from bluegreen.proxy import ConfigTest
from bluegreen.rollback import emergency_rollback


@pytest.fixture
def blue_live(runtime, topology):
    for name in topology.container_names(Color.BLUE):
        runtime.add(name, ports=[3000 if "frontend" in name else 3001])
    return runtime


def _state(manager):
    return manager.states.load("shop")


def _pointer(manager):
    return manager.layout.current_color("shop.example.com")


# ── Prepare ──


def test_fresh_service_prepares_green(manager, runtime):
    assert _state(manager).active_color is Color.BLUE

    result = manager.prepare("shop", version="1.2.0")

    assert result.color is Color.GREEN
    state = _state(manager)
    assert state.green.status is ColorStatus.READY
    assert state.green.version == "1.2.0"
    assert state.blue.status is ColorStatus.RUNNING
    assert "shop-backend-green" in runtime.containers
    assert _pointer(manager) is Color.BLUE


def test_prepare_by_domain(manager):
    assert manager.prepare("shop.example.com").color is Color.GREEN


def test_startup_delay_clamped(manager, topology, sleeps):
    assert manager.startup_delay(topology) == 3
    manager.prepare("shop")
    assert 3 in sleeps


def test_strict_failure_tears_down_target(manager, runtime, proxy):
    runtime.probe_script["shop-frontend-green"] = [None]

    with pytest.raises(HealthCheckError):
        manager.prepare("shop")

    assert "shop-backend-green" not in runtime.containers
    assert "shop-frontend-green" not in runtime.containers
    assert "db-server-postgres" in runtime.containers
    assert _state(manager).green.status is ColorStatus.STOPPED
    assert _pointer(manager) is Color.BLUE


def test_build_failure_leaves_state_untouched(manager, runtime):
    runtime.fail_build.add("backend")
    with pytest.raises(BuildError):
        manager.prepare("shop")
    state = _state(manager)
    assert state.active_color is Color.BLUE
    assert state.green.status is ColorStatus.STOPPED
    assert not runtime.calls_of("start")


def test_missing_infrastructure_is_fatal(manager, runtime):
    del runtime.containers["db-server-postgres"]
    with pytest.raises(InfrastructureError):
        manager.prepare("shop")
    assert not runtime.calls_of("build")


def test_unknown_service(manager):
    with pytest.raises(TopologyNotFoundError):
        manager.prepare("nope")


def test_second_prepare_reuses_healthy_build(manager, runtime):
    manager.prepare("shop")
    for name in ("shop-backend-green", "shop-frontend-green"):
        runtime.health[name] = "healthy"
    builds = len(runtime.calls_of("build"))

    result = manager.prepare("shop")

    assert result.plan.rebuild_count == 0
    assert len(runtime.calls_of("build")) == builds


# ── Switch ──


def test_switch_requires_ready_color(manager):
    with pytest.raises(DeploymentError, match="not ready"):
        manager.switch_traffic("shop")


def test_switch_promotes_green(manager, blue_live):
    manager.prepare("shop")
    manager.switch_traffic("shop")

    state = _state(manager)
    assert state.active_color is Color.GREEN
    assert state.green.status is ColorStatus.RUNNING
    assert state.blue.status is ColorStatus.BACKUP
    assert state.last_deployment.color is Color.GREEN
    assert state.last_deployment.success is True
    assert _pointer(manager) is Color.GREEN


def test_reload_failure_reverts_and_records_failure(manager, blue_live, proxy):
    manager.prepare("shop")
    reloads = proxy.reloads
    proxy.reload_failures = 1

    with pytest.raises(SwitchRevertedError):
        manager.switch_traffic("shop")

    assert proxy.reloads == reloads + 2
    assert _pointer(manager) is Color.BLUE
    state = _state(manager)
    assert state.active_color is Color.BLUE
    assert state.last_deployment.success is False


def test_validation_failure_keeps_pointer(manager, blue_live, proxy):
    manager.prepare("shop")
    proxy.test_results.append(ConfigTest(False, "[emerg] bad in blue-green/shop.example.com.green.conf:3"))

    with pytest.raises(SwitchRevertedError):
        manager.switch_traffic("shop")

    assert _pointer(manager) is Color.BLUE
    assert _state(manager).active_color is Color.BLUE


# ── Monitor / rollback ──


def test_monitor_window_passes(manager, blue_live, sleeps):
    manager.prepare("shop")
    manager.switch_traffic("shop")
    assert manager.monitor("shop") == 4
    assert sleeps.count(30) == 3


def test_total_failure_during_monitor_rolls_back_once(manager, blue_live, runtime):
    manager.prepare("shop")
    manager.switch_traffic("shop")
    runtime.probe_script["shop-backend-green"] = [None]
    runtime.probe_script["shop-frontend-green"] = [None]

    with pytest.raises(HealthCheckError) as excinfo:
        manager.monitor("shop")

    assert excinfo.value.rolled_back
    state = _state(manager)
    assert state.active_color is Color.BLUE
    assert state.blue.status is ColorStatus.RUNNING
    assert state.green.status is ColorStatus.STOPPED
    assert state.last_deployment.success is False
    assert [h.rollback for h in state.history].count(True) == 1
    assert "shop-backend-green" not in runtime.containers
    assert "db-server-postgres" in runtime.containers
    assert "nginx-microservice" in runtime.containers
    assert _pointer(manager) is Color.BLUE
    document = manager.layout.document("shop.example.com", Color.BLUE).read_text()
    assert "-green" not in document
    assert "shop-backend-blue:3001 weight=100" in document


def test_failed_rollback_during_deploy_is_not_retried(manager, blue_live, runtime):
    original_switch = manager.switch_traffic
    attempts = []

    def switch_then_break_green(service):
        original_switch(service)
        runtime.probe_script["shop-backend-green"] = [None]
        runtime.probe_script["shop-frontend-green"] = [None]

    def broken_rollback(service, restore=None, failed=None, reason="manual"):
        attempts.append(reason)
        raise SwitchError("nginx reload failed during rollback")

    manager.switch_traffic = switch_then_break_green
    manager.rollback = broken_rollback

    with pytest.raises(HealthCheckError) as excinfo:
        manager.deploy("shop")

    assert excinfo.value.rolled_back
    assert "rollback failed" in str(excinfo.value)
    assert attempts == ["monitor"]


def test_one_healthy_endpoint_keeps_lenient_monitor_green(manager, blue_live, runtime):
    manager.prepare("shop")
    manager.switch_traffic("shop")
    runtime.probe_script["shop-backend-green"] = [None]
    assert manager.monitor("shop") == 4
    assert _state(manager).active_color is Color.GREEN


def test_rollback_restarts_stopped_previous_color(manager, runtime):
    manager.prepare("shop")
    manager.switch_traffic("shop")
    assert "shop-backend-blue" not in runtime.containers

    manager.rollback("shop")

    assert ("start", "shop_blue", ("backend", "frontend")) in runtime.calls
    assert "shop-backend-blue" in runtime.containers
    assert "shop-backend-green" not in runtime.containers
    assert _state(manager).active_color is Color.BLUE


def test_rollback_to_same_color_refused(manager):
    with pytest.raises(DeploymentError):
        manager.rollback("shop", restore=Color.BLUE, failed=Color.BLUE)


# ── Cleanup ──


def test_cleanup_stops_inactive_color_only(manager, blue_live, runtime):
    manager.prepare("shop")
    manager.switch_traffic("shop")
    manager.cleanup("shop")

    state = _state(manager)
    assert state.blue.status is ColorStatus.STOPPED
    assert state.blue.deployed_at is None
    assert state.blue.version is None
    assert "shop-backend-blue" not in runtime.containers
    assert "shop-backend-green" in runtime.containers
    assert "db-server-postgres" in runtime.containers
    document = manager.layout.document("shop.example.com", Color.GREEN).read_text()
    assert "shop-backend-blue" not in document


# ── Full pipeline ──


def test_deploy_end_to_end(manager, blue_live, runtime):
    manager.deploy("shop", version="2.0")

    state = _state(manager)
    assert state.active_color is Color.GREEN
    assert state.green.status is ColorStatus.RUNNING
    assert state.blue.status is ColorStatus.STOPPED
    assert state.history[-1].success is True
    assert state.history[-1].version == "2.0"
    assert _pointer(manager) is Color.GREEN
    assert "shop-backend-blue" not in runtime.containers


def test_deploy_switch_failure_rolls_back(manager, blue_live, runtime, proxy):
    original_switch = manager.switch_traffic

    def failing_switch(service):
        proxy.reload_failures = 1
        return original_switch(service)

    manager.switch_traffic = failing_switch

    with pytest.raises(SwitchRevertedError):
        manager.deploy("shop")

    state = _state(manager)
    assert state.active_color is Color.BLUE
    assert state.green.status is ColorStatus.STOPPED
    assert "shop-backend-green" not in runtime.containers
    assert "shop-backend-blue" in runtime.containers
    assert state.history[-1].success is False


def test_deploy_aborted_after_switch_rolls_back(manager, blue_live, runtime):
    def interrupted(service):
        raise KeyboardInterrupt

    manager.monitor = interrupted

    with pytest.raises(DeploymentAborted):
        manager.deploy("shop")

    state = _state(manager)
    assert state.active_color is Color.BLUE
    assert state.history[-2].rollback is True
    assert _pointer(manager) is Color.BLUE


def test_concurrent_deploy_of_same_service_refused(manager, settings):
    holder_ready = threading.Event()
    release = threading.Event()

    def hold():
        with service_lock(settings.state_dir, "shop"):
            holder_ready.set()
            release.wait(5)

    t = threading.Thread(target=hold)
    t.start()
    holder_ready.wait(5)
    try:
        with pytest.raises(DeploymentLockedError):
            manager.prepare("shop")
    finally:
        release.set()
        t.join()


# ── Standalone commands ──


def test_health_check_rolls_back_dead_service(manager, blue_live, runtime):
    manager.prepare("shop")
    manager.switch_traffic("shop")
    runtime.probe_script["shop-backend-green"] = [None]
    runtime.probe_script["shop-frontend-green"] = [None]

    with pytest.raises(HealthCheckError):
        manager.health_check("shop")

    assert _state(manager).active_color is Color.BLUE


def test_reconcile_repoints_proxy(manager, blue_live):
    manager.prepare("shop")
    manager.switch_traffic("shop")
    manager.layout.point("shop.example.com", Color.BLUE)

    assert manager.reconcile("shop") is True
    assert _pointer(manager) is Color.GREEN
    assert manager.reconcile("shop") is False


def test_emergency_rollback_flips_pointer(manager, blue_live, settings, proxy):
    manager.prepare("shop")
    manager.switch_traffic("shop")

    assert emergency_rollback("shop", config=settings, proxy=proxy) is Color.BLUE
    assert _pointer(manager) is Color.BLUE
    assert _state(manager).active_color is Color.BLUE
    assert _state(manager).green.status is ColorStatus.BACKUP


def test_emergency_rollback_waits_for_reload_lock(manager, blue_live, settings, proxy):
    manager.prepare("shop")
    manager.switch_traffic("shop")
    reloads = proxy.reloads
    result = []

    with reload_lock(settings.nginx_conf_dir):
        worker = threading.Thread(
            target=lambda: result.append(emergency_rollback("shop", config=settings, proxy=proxy))
        )
        worker.start()
        worker.join(timeout=0.3)
        assert worker.is_alive()
        assert proxy.reloads == reloads
        assert _pointer(manager) is Color.GREEN

    worker.join(timeout=5)
    assert result == [Color.BLUE]
    assert proxy.reloads == reloads + 1
    assert _pointer(manager) is Color.BLUE


def test_emergency_rollback_refused_during_deploy(manager, blue_live, settings, proxy):
    manager.prepare("shop")
    manager.switch_traffic("shop")

    with service_lock(settings.state_dir, "shop"):
        with pytest.raises(DeploymentLockedError):
            emergency_rollback("shop", config=settings, proxy=proxy)
    assert _pointer(manager) is Color.GREEN

    assert emergency_rollback("shop", config=settings, proxy=proxy, update_state=False) is Color.BLUE


def test_emergency_rollback_ignores_other_domains_errors(manager, blue_live, settings, proxy):
    manager.prepare("shop")
    manager.switch_traffic("shop")
    proxy.test_results = [ConfigTest(False, "[emerg] host not found in /etc/nginx/conf.d/api.shop.example.com.conf:4")]

    assert emergency_rollback("shop", config=settings, proxy=proxy) is Color.BLUE
    assert _pointer(manager) is Color.BLUE


def test_status_and_history_print(manager, blue_live, capsys):
    manager.deploy("shop")
    manager.status("shop")
    manager.show_history("shop")
    out = capsys.readouterr().out
    assert "shop (shop.example.com)" in out
    assert "[OK] blue -> green" in out


def test_cli_exit_code_on_failure(monkeypatch, tmp_path):
    monkeypatch.setattr("bluegreen.orchestrator.setup_logging", lambda config: None)
    assert main(["status", "missing-service", "--project-root", str(tmp_path)]) == 1
