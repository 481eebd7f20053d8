"""Shared helpers for cross-process state-file locking and atomic JSON writes."""

from __future__ import annotations

import asyncio
import errno
import json
import os
import tempfile
import time
from contextlib import asynccontextmanager, contextmanager
from typing import Any, AsyncIterator, BinaryIO, Iterator

try:  # pragma: no cover - platform specific
    import msvcrt
except Exception:  # pragma: no cover - platform specific
    msvcrt = None  # type: ignore[assignment]

try:  # pragma: no cover - platform specific
    import fcntl
except Exception:  # pragma: no cover - platform specific
    fcntl = None  # type: ignore[assignment]

E_STATE_LOCKED = "E_STATE_LOCKED"
E_JSON_CORRUPT = "E_JSON_CORRUPT"
E_STATE_IO = "E_STATE_IO"

_TRANSIENT_REPLACE_WINERRORS = {5, 32, 33}
_TRANSIENT_REPLACE_ERRNOS = {errno.EACCES, errno.EBUSY, errno.EPERM}


class StateFileLockError(RuntimeError):
    """Raised when the state-file lock cannot be acquired in time."""

    code = E_STATE_LOCKED


class StateFileCorruptError(ValueError):
    """Raised when a state document exists but is not valid JSON."""

    code = E_JSON_CORRUPT


def lock_path_for(target_path: str) -> str:
    return f"{str(target_path)}.lock"


def _ensure_lock_byte(handle: Any) -> None:
    handle.seek(0, os.SEEK_END)
    if handle.tell() == 0:
        handle.write(b"0")
        handle.flush()
        try:
            os.fsync(handle.fileno())
        except OSError:
            pass
    handle.seek(0)


def _try_lock(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
            return
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc
    if fcntl is not None:  # pragma: no cover - unix-only runtime path
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            return
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc
    # No lock primitive available: fallback is no-op.
    return


def _unlock(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        return
    if fcntl is not None:  # pragma: no cover - unix-only runtime path
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _open_lock_handle(target_path: str) -> BinaryIO:
    lock_path = lock_path_for(target_path)
    os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)
    handle = open(lock_path, "a+b")
    try:
        _ensure_lock_byte(handle)
    except OSError:
        handle.close()
        raise
    return handle


def _release_lock_handle(handle: BinaryIO, locked: bool) -> None:
    if locked:
        try:
            _unlock(handle)
        except OSError:
            pass
    try:
        handle.close()
    except OSError:
        pass


def _lock_window(timeout_seconds: float, poll_seconds: float) -> tuple[float, float]:
    timeout = max(0.05, float(timeout_seconds))
    poll = max(0.01, float(poll_seconds))
    return time.monotonic() + timeout, poll


@contextmanager
def state_file_lock(
    target_path: str,
    *,
    timeout_seconds: float = 2.0,
    poll_seconds: float = 0.05,
) -> Iterator[None]:
    """Acquire an inter-process lock for a state file using `<state>.lock`."""

    deadline, poll = _lock_window(timeout_seconds, poll_seconds)
    handle = _open_lock_handle(target_path)
    locked = False
    try:
        while True:
            try:
                _try_lock(handle)
                locked = True
                break
            except BlockingIOError as exc:
                if time.monotonic() >= deadline:
                    raise StateFileLockError(
                        f"{E_STATE_LOCKED}: state lock timeout path={target_path}"
                    ) from exc
                time.sleep(poll)
        yield
    finally:
        _release_lock_handle(handle, locked)


@asynccontextmanager
async def async_state_file_lock(
    target_path: str,
    *,
    timeout_seconds: float = 2.0,
    poll_seconds: float = 0.05,
) -> AsyncIterator[None]:
    """Same lock as `state_file_lock`, but waits with `asyncio.sleep` so the loop keeps running."""

    deadline, poll = _lock_window(timeout_seconds, poll_seconds)
    handle = _open_lock_handle(target_path)
    locked = False
    try:
        while True:
            try:
                _try_lock(handle)
                locked = True
                break
            except BlockingIOError as exc:
                if time.monotonic() >= deadline:
                    raise StateFileLockError(
                        f"{E_STATE_LOCKED}: state lock timeout path={target_path}"
                    ) from exc
                await asyncio.sleep(poll)
        yield
    finally:
        _release_lock_handle(handle, locked)


def atomic_write_json(
    path: str,
    payload: Any,
    *,
    encoding: str = "utf-8",
    ensure_ascii: bool = False,
    indent: int = 2,
    sort_keys: bool = False,
) -> None:
    """Write JSON atomically via temp file + replace in the same directory."""

    abs_path = str(path)
    state_dir = os.path.dirname(abs_path) or "."
    os.makedirs(state_dir, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(
        prefix=f"{os.path.basename(abs_path)}.",
        suffix=".tmp",
        dir=state_dir,
        text=True,
    )
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            json.dump(payload, f, ensure_ascii=ensure_ascii, indent=indent, sort_keys=sort_keys)
            f.flush()
            try:
                os.fsync(f.fileno())
            except OSError:
                pass
        replace_retries = max(0, int(os.getenv("STATE_ATOMIC_REPLACE_RETRIES", "8") or 8))
        replace_base_delay = max(0.01, float(os.getenv("STATE_ATOMIC_REPLACE_BASE_DELAY_SECONDS", "0.03") or 0.03))
        for attempt in range(replace_retries + 1):
            try:
                os.replace(tmp_path, abs_path)
                break
            except OSError as exc:
                winerror = int(getattr(exc, "winerror", 0) or 0)
                err_no = int(getattr(exc, "errno", 0) or 0)
                transient = (winerror in _TRANSIENT_REPLACE_WINERRORS) or (err_no in _TRANSIENT_REPLACE_ERRNOS)
                if (not transient) or attempt >= replace_retries:
                    raise
                time.sleep(replace_base_delay * (1.5**attempt))
    except Exception:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise


def read_json(path: str, *, encoding: str = "utf-8-sig") -> Any | None:
    """Read a JSON document; None when the file does not exist yet."""

    if not os.path.exists(path):
        return None
    with open(path, "r", encoding=encoding) as f:
        try:
            return json.load(f)
        except json.JSONDecodeError as exc:
            raise StateFileCorruptError(f"{E_JSON_CORRUPT}: path={path} err={exc}") from exc
