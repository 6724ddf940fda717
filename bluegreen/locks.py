"""Advisory file locks.

Two kinds of serialization are needed: one deployment per service at a
time, and one proxy reload sequence at a time across every service on
the host. Both use fcntl.flock on a lock file, paired with an in-process
threading.Lock so concurrent threads in one interpreter are serialized
as well (flock is per open file description, not per thread).
"""

import fcntl
import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path

from bluegreen.errors import DeploymentLockedError

logger = logging.getLogger(__name__)

_process_locks = {}
_process_locks_guard = threading.Lock()


def _thread_lock_for(path: Path) -> threading.Lock:
    key = str(Path(path).resolve())
    with _process_locks_guard:
        lock = _process_locks.get(key)
        if lock is None:
            lock = _process_locks[key] = threading.Lock()
        return lock


@contextmanager
def file_lock(path: Path, blocking: bool = True, timeout: float = 0.0, label: str = None):
    """Hold an exclusive lock on `path` for the duration of the block.

    With blocking=False the lock is tried until `timeout` elapses and
    DeploymentLockedError is raised if it is still held elsewhere.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    label = label or path.name
    thread_lock = _thread_lock_for(path)

    deadline = time.monotonic() + max(timeout, 0.0)
    if blocking:
        acquired = thread_lock.acquire()
    elif timeout > 0:
        acquired = thread_lock.acquire(timeout=timeout)
    else:
        acquired = thread_lock.acquire(blocking=False)
    if not acquired:
        raise DeploymentLockedError(f"{label} is locked by another deployment in this process")

    try:
        fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
    except OSError:
        thread_lock.release()
        raise
    try:
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | (0 if blocking else fcntl.LOCK_NB))
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise DeploymentLockedError(
                        f"{label} is locked by another deployment (lock file {path})"
                    )
                time.sleep(0.2)
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        logger.debug(f"Acquired lock {path}")
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug(f"Released lock {path}")
    finally:
        os.close(fd)
        thread_lock.release()


def service_lock(state_dir: Path, service_name: str, timeout: float = 0.0):
    """Non-blocking per-service deployment lock."""
    return file_lock(
        Path(state_dir) / f"{service_name}.lock",
        blocking=False,
        timeout=timeout,
        label=f"Service '{service_name}'",
    )


def reload_lock(nginx_conf_dir: Path):
    """Host-wide lock around point/validate/reload of the proxy."""
    return file_lock(Path(nginx_conf_dir) / ".reload.lock", blocking=True, label="proxy reload")
