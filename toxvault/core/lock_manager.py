"""
Process exclusive profile locks.

A profile is locked by holding a non-blocking exclusive flock on
`<settings dir>/<name>.lock`. The kernel drops the lock when the holding
process exits, so a crashed instance never leaves a stale lock behind.
"""
import fcntl
import logging
import os
from typing import Callable, IO, Optional
from .config import Settings
from .errors import ContractViolation
from .models import LockResult

logger = logging.getLogger(__name__)


class LockManager:
    """
    Holds at most one profile lock for this process.

    Usage:
        locks = LockManager(settings)
        if locks.acquire("alice") is LockResult.LOCKED:
            ...
            locks.release()
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._file: Optional[IO[str]] = None
        self._name: Optional[str] = None

    @property
    def held_by(self) -> Optional[str]:
        return self._name

    @property
    def has_lock(self) -> bool:
        return self._file is not None

    def acquire(self, name: str) -> LockResult:
        if self._name == name:
            return LockResult.LOCKED
        if self._file is not None:
            raise ContractViolation(f"Tried to lock profile {name}, but {self._name} is already locked")

        result, handle = self._try_lock(name)
        if result is LockResult.LOCKED:
            self._file = handle
            self._name = name
        return result

    def transfer(self, new_name: str, migrate: Optional[Callable[[], None]] = None) -> LockResult:
        """
        Move the held lock to `new_name`.

        The new lock is taken first. `migrate` then runs while both locks are
        held, and only after it returns is the old lock released. If the new
        lock can't be taken nothing else happens; if `migrate` raises, the new
        lock is dropped and the old one kept.
        """
        if self._file is None:
            raise ContractViolation(f"Tried to move lock to {new_name}, but no profile is locked")
        if new_name == self._name:
            return LockResult.LOCKED

        result, handle = self._try_lock(new_name)
        if result is not LockResult.LOCKED:
            return result

        try:
            if migrate is not None:
                migrate()
        except BaseException:
            self._unlock(handle)
            raise

        self._unlock(self._file)
        logger.debug("Moved profile lock from %s to %s", self._name, new_name)
        self._file = handle
        self._name = new_name
        return LockResult.LOCKED

    def release(self) -> None:
        """Safe to call multiple times or without prior acquire."""
        if self._file is None:
            return
        self._unlock(self._file)
        logger.debug("Released lock of profile %s", self._name)
        self._file = None
        self._name = None

    def assert_held(self, name: str) -> None:
        if self._file is None:
            raise ContractViolation(f"Profile {name} is not locked")
        if self._name != name:
            raise ContractViolation(f"Lock is held for {self._name}, expected {name}")

    def _try_lock(self, name: str):
        lock_path = self.settings.lock_path(name)
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(lock_path, "a+")
        except OSError as e:
            logger.error("Couldn't create lock file %s: %s", lock_path, e)
            return LockResult.IO_ERROR, None

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            logger.warning("Profile %s is locked by another instance", name)
            return LockResult.ALREADY_LOCKED, None
        except OSError as e:
            handle.close()
            logger.error("Couldn't lock %s: %s", lock_path, e)
            return LockResult.IO_ERROR, None

        # pid is informational only, the flock is what counts
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        logger.debug("Locked profile %s (PID %s)", name, os.getpid())
        return LockResult.LOCKED, handle

    @staticmethod
    def _unlock(handle: IO[str]) -> None:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()
