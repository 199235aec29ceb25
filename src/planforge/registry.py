"""Per-session advisory locks so one worker drives a session at a time."""

from __future__ import annotations

from contextlib import contextmanager
import fcntl
from pathlib import Path
import threading
from typing import IO, Iterator

from planforge.errors import PersistenceError, SessionLockedError
from planforge.util.logging import get_logger

LOCK_FILE = ".session.lock"


class SessionRegistry:
    """In-process registry of held session locks backed by ``fcntl.flock``.

    Each session directory gets a ``.session.lock`` sidecar. The lock is
    taken non-blocking, so a collision (another task here, or another
    process) raises SessionLockedError instead of waiting.
    """

    def __init__(self) -> None:
        self._held: dict[Path, IO[str]] = {}
        self._guard = threading.Lock()
        self.logger = get_logger("planforge.registry")

    def _key(self, session_dir: Path) -> Path:
        return Path(session_dir).resolve()

    def is_held(self, session_dir: Path) -> bool:
        with self._guard:
            return self._key(session_dir) in self._held

    def acquire(self, session_dir: Path) -> None:
        key = self._key(session_dir)
        with self._guard:
            if key in self._held:
                raise SessionLockedError(f"Session {key.name} is already running in this process")
            try:
                key.mkdir(parents=True, exist_ok=True)
                handle = (key / LOCK_FILE).open("a+", encoding="utf-8")
            except OSError as exc:
                raise PersistenceError(f"Cannot create lock for {key}: {exc}") from exc
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                handle.close()
                raise SessionLockedError(
                    f"Session {key.name} is locked by another worker"
                ) from exc
            self._held[key] = handle
        self.logger.info("session.lock acquired=%s", key.name)

    def release(self, session_dir: Path) -> None:
        key = self._key(session_dir)
        with self._guard:
            handle = self._held.pop(key, None)
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()
        self.logger.info("session.lock released=%s", key.name)

    def active_sessions(self) -> list[str]:
        with self._guard:
            return sorted(key.name for key in self._held)

    @contextmanager
    def hold(self, session_dir: Path) -> Iterator[None]:
        self.acquire(session_dir)
        try:
            yield
        finally:
            self.release(session_dir)


DEFAULT_REGISTRY = SessionRegistry()
