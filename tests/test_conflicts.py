import pytest

from bluegreen.conflicts import ConflictResolver
from bluegreen.models import Color


@pytest.fixture
def resolver(runtime, settings):
    return ConflictResolver(runtime, settings)


def test_stale_target_containers_removed(resolver, runtime, topology):
    runtime.add("shop-backend-green", status="exited")
    runtime.add("shop-frontend-green")
    report = resolver.clear_for_start(topology, Color.GREEN, active_color=Color.BLUE)
    assert sorted(report.removed) == ["shop-backend-green", "shop-frontend-green"]
    assert "shop-backend-green" not in runtime.containers


def test_active_color_never_touched(resolver, runtime, topology):
    runtime.add("shop-backend-blue", ports=[3001])
    runtime.add("shop-frontend-blue", ports=[3000])
    report = resolver.clear_for_start(topology, Color.GREEN, active_color=Color.BLUE)
    assert report.removed == []
    assert "shop-backend-blue" in runtime.containers
    assert "shop-frontend-blue" in runtime.containers
    assert sorted(report.skipped) == ["shop-backend-blue", "shop-frontend-blue"]


def test_target_equal_to_active_is_skipped(resolver, runtime, topology):
    runtime.add("shop-backend-blue")
    report = resolver.clear_for_start(topology, Color.BLUE, active_color=Color.BLUE)
    assert "shop-backend-blue" in runtime.containers
    assert "shop-backend-blue" in report.skipped


def test_port_squatter_removed(resolver, runtime, topology):
    runtime.add("legacy-api", ports=[3001])
    report = resolver.clear_for_start(topology, Color.GREEN, active_color=Color.BLUE)
    assert report.removed == ["legacy-api"]


def test_infrastructure_holding_port_survives(resolver, runtime, topology):
    runtime.containers["db-server-postgres"].ports = [3000]
    report = resolver.clear_for_start(topology, Color.GREEN, active_color=Color.BLUE)
    assert "db-server-postgres" in runtime.containers
    assert report.removed == []


def test_removal_failure_is_best_effort(resolver, runtime, topology):
    runtime.add("shop-backend-green")
    runtime.add("shop-frontend-green")
    runtime.fail_remove.add("shop-backend-green")
    report = resolver.clear_for_start(topology, Color.GREEN, active_color=Color.BLUE)
    assert report.removed == ["shop-frontend-green"]
    assert [name for name, _ in report.failed] == ["shop-backend-green"]


def test_second_call_is_a_no_op(resolver, runtime, topology):
    runtime.add("shop-backend-green")
    runtime.add("legacy-web", ports=[3000])
    first = resolver.clear_for_start(topology, Color.GREEN, active_color=Color.BLUE)
    assert first.removed

    removals = len(runtime.calls_of("remove"))
    second = resolver.clear_for_start(topology, Color.GREEN, active_color=Color.BLUE)
    assert second.clean
    assert len(runtime.calls_of("remove")) == removals
