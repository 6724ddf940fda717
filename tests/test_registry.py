import json

import pytest

from bluegreen.errors import ConfigurationError, StateError, StateVerificationError, TopologyNotFoundError
from bluegreen.models import Color, ColorStatus
from bluegreen.registry import ServiceRegistry, StateStore


def test_load_topology(settings, write_registry, registry_doc):
    write_registry(registry_doc)
    topology = ServiceRegistry(settings.registry_dir).load_topology("shop")
    assert topology.domain == "shop.example.com"
    assert set(topology.services) == {"backend", "frontend"}


def test_missing_topology(settings):
    with pytest.raises(TopologyNotFoundError):
        ServiceRegistry(settings.registry_dir).load_topology("nope")


def test_invalid_json_is_configuration_error(settings):
    settings.registry_dir.mkdir(parents=True)
    (settings.registry_dir / "broken.json").write_text("{not json")
    with pytest.raises(ConfigurationError, match="Invalid JSON"):
        ServiceRegistry(settings.registry_dir).load_topology("broken")


def test_invalid_document_is_configuration_error(settings, write_registry):
    write_registry({"service_name": "bad", "services": {}})
    with pytest.raises(ConfigurationError):
        ServiceRegistry(settings.registry_dir).load_topology("bad")


def test_resolve_by_domain(settings, write_registry, registry_doc):
    write_registry(registry_doc)
    registry = ServiceRegistry(settings.registry_dir)
    assert registry.resolve_service_name("shop") == "shop"
    assert registry.resolve_service_name("shop.example.com") == "shop"
    with pytest.raises(TopologyNotFoundError):
        registry.resolve_service_name("unknown.example.com")


def test_first_load_bootstraps_and_persists(settings):
    store = StateStore(settings.state_dir)
    state = store.load("shop")
    assert state.active_color is Color.BLUE
    assert state.blue.status is ColorStatus.RUNNING
    assert state.green.status is ColorStatus.STOPPED
    assert store.path_for("shop").exists()


def test_save_keeps_backup_and_verifies(settings):
    store = StateStore(settings.state_dir)
    state = store.load("shop")
    state.active_color = Color.GREEN
    state.set_record(Color.BLUE, status=ColorStatus.BACKUP)
    state.set_record(Color.GREEN, status=ColorStatus.RUNNING)
    persisted = store.save_verified("shop", state)

    assert persisted.active_color is Color.GREEN
    backup = json.loads((settings.state_dir / "shop.json.bak").read_text())
    assert backup["active_color"] == "blue"


def test_verify_detects_mismatch(settings):
    store = StateStore(settings.state_dir)
    state = store.load("shop")
    expected = state.model_copy(deep=True)
    expected.active_color = Color.GREEN
    with pytest.raises(StateVerificationError):
        store.verify("shop", expected)


def test_inconsistent_state_is_not_written(settings):
    store = StateStore(settings.state_dir)
    state = store.load("shop")
    state.set_record(Color.GREEN, status=ColorStatus.RUNNING)
    with pytest.raises(StateError):
        store.save("shop", state)
    assert store.load("shop").green.status is ColorStatus.STOPPED


def test_corrupt_state_is_an_error(settings):
    settings.state_dir.mkdir(parents=True)
    (settings.state_dir / "shop.json").write_text("{ truncated")
    with pytest.raises(StateError, match="corrupt"):
        StateStore(settings.state_dir).load("shop")
