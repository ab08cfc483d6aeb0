from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable


LOGGER = logging.getLogger("vulkan_entrypoint")
LOGGER.addHandler(logging.NullHandler())

STATUS_OK = "ok"
STATUS_RECOVERED = "recovered"


@dataclass(frozen=True)
class StepResult:
    """Result of a best-effort filesystem step.

    ``recovered`` means the step failed, the failure was logged and startup
    continues. Fatal problems are raised instead.
    """

    step: str
    path: str
    status: str = STATUS_OK
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


def _recovered(step: str, path: Path, detail: str) -> StepResult:
    LOGGER.warning("%s failed for %s: %s", step, path, detail)
    return StepResult(step=step, path=str(path), status=STATUS_RECOVERED, detail=detail)


def _ensure_dir(step: str, path: Path, mode: int, uid: int, gid: int) -> StepResult:
    try:
        path.mkdir(parents=True, exist_ok=True)
        os.chown(path, uid, gid)
        os.chmod(path, mode)
    except OSError as exc:
        return _recovered(step, path, str(exc))
    return StepResult(step=step, path=str(path))


def _create_dir(step: str, path: Path, mode: int) -> StepResult:
    if path.is_dir():
        return StepResult(step=step, path=str(path))
    try:
        path.mkdir(parents=True, exist_ok=True)
        os.chmod(path, mode)
    except OSError as exc:
        return _recovered(step, path, str(exc))
    return StepResult(step=step, path=str(path))


def ensure_runtime_dirs(workspace: Path, cache_dir: Path) -> list[StepResult]:
    """Creates the workspace and shared cache directories before anything else.

    Both are usually volumes, so existing directories are left untouched.
    """
    return [
        _create_dir("workspace", workspace, 0o755),
        _create_dir("cache", cache_dir, 0o777),
    ]


def prepare_home(home: Path, uid: int, gid: int) -> list[StepResult]:
    ssh_dir = home / ".ssh"
    authorized_keys = ssh_dir / "authorized_keys"
    results = [
        _ensure_dir("home", home, 0o755, uid, gid),
        _ensure_dir("ssh dir", ssh_dir, 0o700, uid, gid),
    ]
    try:
        authorized_keys.touch(exist_ok=True)
        os.chown(authorized_keys, uid, gid)
        os.chmod(authorized_keys, 0o600)
    except OSError as exc:
        results.append(_recovered("authorized_keys", authorized_keys, str(exc)))
    else:
        results.append(StepResult(step="authorized_keys", path=str(authorized_keys)))
    LOGGER.info("Prepared home=%s (uid=%d, gid=%d) and SSH dir", home, uid, gid)
    return results


def _chown_tree(root: Path, uid: int, gid: int) -> list[str]:
    failures: list[str] = []

    def _chown(path: str) -> None:
        try:
            os.chown(path, uid, gid, follow_symlinks=False)
        except OSError as exc:
            failures.append(f"{path}: {exc.strerror or exc}")

    _chown(str(root))
    for dirpath, dirnames, filenames in os.walk(root, onerror=lambda exc: failures.append(str(exc))):
        for name in (*dirnames, *filenames):
            _chown(os.path.join(dirpath, name))
    return failures


def propagate_ownership(paths: Iterable[Path], uid: int, gid: int) -> list[StepResult]:
    results: list[StepResult] = []
    for path in paths:
        if not path.is_dir():
            results.append(_recovered("chown", path, "directory not found"))
            continue
        failures = _chown_tree(path, uid, gid)
        if failures:
            detail = f"{len(failures)} path(s) not changed, first: {failures[0]}"
            results.append(_recovered("chown", path, detail))
            continue
        LOGGER.info("Ownership of %s -> %d:%d", path, uid, gid)
        results.append(StepResult(step="chown", path=str(path)))
    return results
