from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from .logging import get_logger

logger = get_logger(__name__)


class LockError(RuntimeError):
    def __init__(self, *, path: Path, state: str) -> None:
        self.path = path
        self.state = state
        super().__init__(_format_lock_message(path, state))


@dataclass
class LockHandle:
    path: Path

    def release(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("lock.release_failed", path=str(self.path), error=str(exc))

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def lock_path_for_auth_dir(auth_dir: Path) -> Path:
    return auth_dir.with_name(f"{auth_dir.name}.lock")


def acquire_lock(*, auth_dir: Path) -> LockHandle:
    """One process per auth directory; two would keep replacing each other."""
    lock_path = lock_path_for_auth_dir(auth_dir.expanduser().resolve())
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        pid = _read_lock_pid(lock_path)
        if pid is not None and pid != os.getpid() and _pid_running(pid):
            raise LockError(path=lock_path, state="running") from None
        lock_path.write_text(
            json.dumps({"pid": os.getpid()}, indent=2) + "\n", encoding="utf-8"
        )
    except OSError as exc:
        raise LockError(path=lock_path, state=str(exc)) from exc
    return LockHandle(path=lock_path)


def _read_lock_pid(path: Path) -> int | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    pid = data.get("pid")
    if isinstance(pid, bool) or not isinstance(pid, int):
        return None
    return pid


def _pid_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _format_lock_message(path: Path, state: str) -> str:
    if state != "running":
        return f"error: lock failed: {state}"
    return "\n".join(
        ["error: already running on this account", f"remove {path} if stale"]
    )
