from __future__ import annotations

import hashlib
import json
import os
import socket
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from .logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockInfo:
    pid: int | None
    hostname: str | None
    started_at: str | None
    token_fingerprint: str | None


class LockError(RuntimeError):
    def __init__(self, *, path: Path, existing: LockInfo | None, state: str) -> None:
        self.path = path
        self.existing = existing
        self.state = state
        super().__init__(_format_lock_message(path, state))


@dataclass
class LockHandle:
    path: Path
    pid: int

    def release(self) -> None:
        try:
            existing = _read_lock_info(self.path)
            if existing is None or existing.pid == self.pid:
                self.path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("lock.release_failed", path=str(self.path), error=str(exc))

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def token_fingerprint(token: str) -> str:
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    return digest[:10]


def lock_path_for_cursor(cursor_path: Path) -> Path:
    return cursor_path.with_name(f"{cursor_path.name}.lock")


def _pid_running(pid: int | None) -> bool | None:
    if pid is None or pid <= 0:
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return None
    return True


def _lock_state(existing: LockInfo | None) -> str:
    if existing is None:
        return "unknown"
    if existing.hostname and existing.hostname != socket.gethostname():
        return "unknown"
    running = _pid_running(existing.pid)
    if running is False:
        return "stale"
    if running:
        return "running"
    return "unknown"


def _create(lock_path: Path, info: LockInfo) -> None:
    fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        json.dump(asdict(info), handle, indent=2, sort_keys=True)
        handle.write("\n")


def acquire_lock(
    *, cursor_path: Path, token_fingerprint: str | None = None
) -> LockHandle:
    """Claim the cursor file for this process.

    A lock left behind by a dead process on this host is replaced.
    """
    lock_path = lock_path_for_cursor(cursor_path.expanduser().resolve())
    pid = os.getpid()
    info = LockInfo(
        pid=pid,
        hostname=socket.gethostname(),
        started_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        token_fingerprint=token_fingerprint,
    )
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            _create(lock_path, info)
        except FileExistsError:
            existing = _read_lock_info(lock_path)
            state = _lock_state(existing)
            if state != "stale":
                raise LockError(path=lock_path, existing=existing, state=state) from None
            logger.info("lock.stale_replaced", path=str(lock_path), pid=existing.pid)
            lock_path.unlink(missing_ok=True)
            _create(lock_path, info)
    except FileExistsError:
        raise LockError(path=lock_path, existing=None, state="running") from None
    except OSError as exc:
        raise LockError(path=lock_path, existing=None, state=str(exc)) from exc

    return LockHandle(path=lock_path, pid=pid)


def _read_lock_info(path: Path) -> LockInfo | None:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    pid = data.get("pid")
    if isinstance(pid, bool) or not isinstance(pid, int):
        pid = None
    hostname = data.get("hostname")
    started_at = data.get("started_at")
    fingerprint = data.get("token_fingerprint")
    return LockInfo(
        pid=pid,
        hostname=hostname if isinstance(hostname, str) else None,
        started_at=started_at if isinstance(started_at, str) else None,
        token_fingerprint=fingerprint if isinstance(fingerprint, str) else None,
    )


def _format_lock_message(path: Path, state: str) -> str:
    if state not in {"running", "unknown"}:
        return f"failed to create lock {path}: {state}"
    header = "another blablabot instance may already be using this cursor."
    if state == "running":
        header = "another blablabot instance is already using this cursor."
    return f"{header}\nif you are sure that's not the case, delete {path}"
