from __future__ import annotations

import hashlib
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO


class RunLockedError(RuntimeError):
    """Raised when another poller already holds the run lock for the same state DB."""


@dataclass(frozen=True)
class ProcessLock:
    path: str
    handle: object
    pid: int


@dataclass(frozen=True)
class LockDiagnostics:
    lock_path: Path
    pid_path: Path
    owner_pid: int | None
    owner_pid_alive: bool


def get_lock_dir() -> Path:
    configured = os.getenv("DEPOSITWATCH_LOCK_DIR")
    if configured:
        lock_dir = Path(configured).expanduser()
    elif os.name == "nt":
        lock_dir = Path(os.getenv("LOCALAPPDATA") or tempfile.gettempdir()) / "depositwatch" / "locks"
    else:
        lock_dir = Path(tempfile.gettempdir()) / "depositwatch-locks"
    lock_dir.mkdir(parents=True, exist_ok=True)
    if not lock_dir.is_dir():
        raise RuntimeError(f"lock directory is not a directory: {lock_dir}")
    return lock_dir.resolve()


def lock_paths(db_path: str) -> tuple[Path, Path]:
    """Lock and pid file for a state DB; one lock per resolved DB path."""
    resolved = str(Path(db_path).expanduser().resolve())
    digest = hashlib.sha256(resolved.encode()).hexdigest()[:16]
    lock_path = get_lock_dir() / f"depositwatch-{digest}.lock"
    return lock_path, lock_path.with_suffix(".pid")


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def get_lock_diagnostics(*, db_path: str) -> LockDiagnostics:
    lock_path, pid_path = lock_paths(db_path)
    try:
        raw = pid_path.read_text(encoding="utf-8").strip()
    except OSError:
        raw = ""
    owner_pid = int(raw) if raw.isdigit() else None
    return LockDiagnostics(
        lock_path=lock_path,
        pid_path=pid_path,
        owner_pid=owner_pid,
        owner_pid_alive=owner_pid is not None and _pid_alive(owner_pid),
    )


def _flock(fh: BinaryIO, *, exclusive: bool) -> None:
    if os.name == "nt":
        import msvcrt

        fh.seek(0)
        msvcrt_mod: Any = msvcrt
        msvcrt_mod.locking(fh.fileno(), msvcrt_mod.LK_NBLCK if exclusive else msvcrt_mod.LK_UNLCK, 1)
        return
    import fcntl

    fcntl.flock(fh.fileno(), (fcntl.LOCK_EX | fcntl.LOCK_NB) if exclusive else fcntl.LOCK_UN)


def _write_pid_file(pid_path: Path, pid: int) -> None:
    tmp_path = pid_path.with_suffix(f".pid.{pid}.tmp")
    tmp_path.write_text(f"{pid}\n", encoding="utf-8")
    os.replace(tmp_path, pid_path)


def _remove_pid_file(pid_path: Path, pid: int) -> None:
    try:
        if pid_path.read_text(encoding="utf-8").strip() == str(pid):
            pid_path.unlink()
    except OSError:
        return


@contextmanager
def single_instance_lock(*, db_path: str) -> Iterator[ProcessLock]:
    """Serialize poll runs against one state DB.

    Uses OS advisory file locks (flock/msvcrt), so it only holds on local filesystems.
    """
    lock_path, pid_path = lock_paths(db_path)
    fh: BinaryIO = os.fdopen(os.open(lock_path, os.O_CREAT | os.O_RDWR), "r+b")
    pid = os.getpid()
    try:
        try:
            _flock(fh, exclusive=True)
        except OSError as exc:
            owner = get_lock_diagnostics(db_path=db_path)
            owner_text = (
                f" owner_pid={owner.owner_pid} owner_alive={owner.owner_pid_alive}"
                if owner.owner_pid is not None
                else ""
            )
            raise RunLockedError(
                "LOCKED: another depositwatch poller is already running "
                f"for db_path={Path(db_path).expanduser().resolve()} lock_path={lock_path}.{owner_text}"
            ) from exc

        _write_pid_file(pid_path, pid)
        try:
            yield ProcessLock(path=str(lock_path), handle=fh, pid=pid)
        finally:
            _remove_pid_file(pid_path, pid)
            try:
                _flock(fh, exclusive=False)
            except OSError:
                pass
    finally:
        fh.close()
