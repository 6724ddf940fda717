"""Source fingerprints used as a build cache key.

Git content identity is preferred. Without a usable repository the
fingerprint falls back to hashing file paths, sizes and modification
times, which is weaker: clock skew or a fresh checkout changes it (and
forces a rebuild) even when the sources did not change.
"""

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

from bluegreen.errors import CommandError, StateError
from bluegreen.models import ServiceTopology
from bluegreen.runtime import run_command

logger = logging.getLogger(__name__)


def tracked_paths(topology: ServiceTopology, key: str, workdir: Path) -> List[str]:
    """Relative paths whose content decides whether `key` must be rebuilt."""
    spec = topology.services[key]
    candidates = [f"services/{key}", *spec.source_paths, *topology.source_paths]
    seen = []
    for rel in candidates:
        if rel not in seen and (workdir / rel).exists():
            seen.append(rel)
    return seen


def _git(workdir: Path, *args) -> Optional[str]:
    try:
        result = run_command(["git", "-C", str(workdir), *args], timeout=30, check=False)
    except CommandError:
        return None
    if result.returncode != 0:
        return None
    return result.stdout


def git_fingerprint(workdir: Path, paths: List[str]) -> Optional[str]:
    if not paths or _git(workdir, "rev-parse", "--is-inside-work-tree") is None:
        return None
    commit = (_git(workdir, "log", "-1", "--format=%H", "--", *paths) or "").strip()
    if not commit:
        return None

    dirty = (_git(workdir, "status", "--porcelain", "--", *paths) or "").strip()
    if not dirty:
        return f"git:{commit}"

    # Uncommitted edits: fold the working-tree diff and untracked files into the key
    digest = hashlib.sha256(commit.encode())
    digest.update((_git(workdir, "diff", "HEAD", "--", *paths) or "").encode())
    for line in sorted(dirty.splitlines()):
        digest.update(line.encode())
        if line.startswith("??"):
            untracked = workdir / line[3:].strip()
            if untracked.is_file():
                digest.update(untracked.read_bytes())
    return f"git-dirty:{digest.hexdigest()}"


def mtime_fingerprint(workdir: Path, paths: List[str]) -> str:
    digest = hashlib.sha256()
    for rel in sorted(paths):
        root = workdir / rel
        files = [root] if root.is_file() else sorted(p for p in root.rglob("*") if p.is_file())
        for f in files:
            if "node_modules" in f.parts or ".git" in f.parts:
                continue
            st = f.stat()
            digest.update(f"{f.relative_to(workdir)}:{st.st_size}:{st.st_mtime_ns}\n".encode())
    return f"mtime:{digest.hexdigest()}"


def compute_fingerprint(topology: ServiceTopology, key: str, workdir: Path) -> str:
    paths = tracked_paths(topology, key, workdir)
    fingerprint = git_fingerprint(workdir, paths)
    if fingerprint is None:
        logger.debug(f"  No git history for {key}, using mtime fingerprint")
        fingerprint = mtime_fingerprint(workdir, paths)
    return fingerprint


class FingerprintStore:
    def __init__(self, state_dir: Path):
        self.dir = Path(state_dir) / "fingerprints"

    def path_for(self, service_name: str) -> Path:
        return self.dir / f"{service_name}.json"

    def load(self, service_name: str) -> Dict[str, str]:
        path = self.path_for(service_name)
        if not path.exists():
            return {}
        try:
            with open(path) as f:
                return dict(json.load(f))
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            # A lost cache only costs a rebuild
            logger.warning(f"Ignoring unreadable fingerprint cache {path}: {e}")
            return {}

    def update(self, service_name: str, fingerprints: Dict[str, str]) -> None:
        if not fingerprints:
            return
        stored = self.load(service_name)
        stored.update(fingerprints)
        self.dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(service_name)
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            with open(tmp, "w") as f:
                json.dump(stored, f, indent=4, sort_keys=True)
            os.replace(tmp, path)
        except OSError as e:
            raise StateError(f"Failed to write fingerprints for {service_name}: {e}")
