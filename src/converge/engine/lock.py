"""Advisory file locks guarding the state store."""

from __future__ import annotations

import fcntl
import logging
import os
import time
from pathlib import Path
from typing import IO, TYPE_CHECKING

from converge.engine.errors import StateLockError

if TYPE_CHECKING:
    from types import TracebackType

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05


class FileLock:
    """Exclusive ``flock`` on a lock file, used as a context manager.

    ``flock`` locks belong to the open file description, so two ``FileLock``
    instances on the same path exclude each other across threads as well as
    across processes.

    With *timeout* set, acquisition gives up with ``StateLockError`` after
    that many seconds; otherwise it blocks until the holder releases.

    A holder may ``discard()`` the lock file, which is unlinked before the
    lock is released. Waiters that then win the lock on the unlinked file
    notice and retry on a fresh one.
    """

    def __init__(self, lock_path: Path, *, timeout: float | None = None) -> None:
        self._lock_path = Path(lock_path)
        self._timeout = timeout
        self._file: IO[str] | None = None
        self._discard = False

    @property
    def path(self) -> Path:
        return self._lock_path

    def __enter__(self) -> FileLock:
        self._discard = False
        while True:
            self._lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = self._lock_path.open("a+", encoding="utf-8")
            try:
                self._acquire(handle)
            except BaseException:
                handle.close()
                raise
            if self._is_current(handle):
                self._file = handle
                return self
            logger.debug("Lock file %s was removed while waiting; retrying", self._lock_path)
            handle.close()

    def discard(self) -> None:
        """Remove the lock file when this holder releases it."""
        self._discard = True

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        handle, self._file = self._file, None
        if handle is None:
            return
        try:
            if self._discard:
                self._lock_path.unlink(missing_ok=True)
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def _is_current(self, handle: IO[str]) -> bool:
        """True while *handle* is still the file linked at the lock path."""
        try:
            return os.stat(self._lock_path).st_ino == os.fstat(handle.fileno()).st_ino
        except FileNotFoundError:
            return False

    def _acquire(self, handle: IO[str]) -> None:
        try:
            if self._timeout is None:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                return

            deadline = time.monotonic() + self._timeout
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    return
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise StateLockError(
                            f"Timed out after {self._timeout:g}s waiting for {self._lock_path}"
                        ) from None
                    time.sleep(_POLL_INTERVAL)
        except OSError as exc:
            raise StateLockError(f"Cannot lock {self._lock_path}: {exc}") from exc


class StateLock(FileLock):
    """Store-wide lock guarding read-modify-write of the state file."""

    def __init__(self, state_path: Path, *, timeout: float | None = None) -> None:
        super().__init__(Path(f"{state_path}.lock"), timeout=timeout)


class IdentityLock(FileLock):
    """Single-writer token for one resource identity.

    Held by the executor for the whole duration of a change step so that two
    runs racing on the same identity serialize. The executor discards it
    after a successful destroy, so the lock directory only holds identities
    that are still tracked or in flight.
    """

    def __init__(self, state_path: Path, identity: str, *, timeout: float | None = None) -> None:
        super().__init__(Path(f"{state_path}.locks") / f"{identity}.lock", timeout=timeout)
        self.identity = identity

    def __enter__(self) -> IdentityLock:
        logger.debug("Locking %s", self.identity)
        super().__enter__()
        return self
