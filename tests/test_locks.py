"""Serialization of proxy reloads and per-service deployments."""

import threading
import time

import pytest

from bluegreen.errors import DeploymentLockedError
from bluegreen.locks import reload_lock, service_lock


def test_reload_lock_serializes_threads(tmp_path):
    inside = []
    overlaps = []

    def worker():
        with reload_lock(tmp_path):
            if inside:
                overlaps.append(True)
            inside.append(1)
            time.sleep(0.05)
            inside.pop()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlaps == []
    assert (tmp_path / ".reload.lock").exists()


def test_service_lock_is_not_reentrant_across_callers(tmp_path):
    with service_lock(tmp_path, "shop"):
        with pytest.raises(DeploymentLockedError):
            with service_lock(tmp_path, "shop"):
                pass


def test_different_services_do_not_contend(tmp_path):
    with service_lock(tmp_path, "shop"):
        with service_lock(tmp_path, "blog"):
            pass


def test_service_lock_released_after_error(tmp_path):
    with pytest.raises(RuntimeError):
        with service_lock(tmp_path, "shop"):
            raise RuntimeError("boom")

    with service_lock(tmp_path, "shop"):
        pass
