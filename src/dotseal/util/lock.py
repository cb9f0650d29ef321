# src/dotseal/util/lock.py: Cross-process lock on the cache directory.
# One sync at a time per cache. The lock is a filelock FileLock on a sibling
# of the cache directory, taken without waiting so a second invocation fails
# fast with LockHeld. An owner file records the holder's pid and host; an
# owner that is no longer alive on this host marks the lock as stale and it is
# reclaimed.

import json
import os
import socket
from pathlib import Path
from typing import Optional

from filelock import FileLock, Timeout

from .errors import LockHeld
from .log import get_logger

logger = get_logger(__name__)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    return True


class CacheLock:
    """
    Scoped exclusive lock for one cache directory.

    Usage:
        with CacheLock(cache_dir):
            ...
    """

    def __init__(self, cache_dir: Path):
        cache_dir = Path(cache_dir)
        self.cache_dir = cache_dir
        self.lock_path = cache_dir.with_name(f"{cache_dir.name}.lock")
        self.owner_path = cache_dir.with_name(f"{cache_dir.name}.lock.owner")
        self._lock = FileLock(str(self.lock_path))
        self.reclaimed_from: Optional[int] = None

    def _read_owner(self) -> Optional[dict]:
        try:
            return json.loads(self.owner_path.read_text())
        except (OSError, ValueError):
            return None

    def _is_stale(self, owner: Optional[dict]) -> bool:
        if not owner:
            return False
        if owner.get("host") != socket.gethostname():
            return False
        pid = owner.get("pid")
        return isinstance(pid, int) and not _pid_alive(pid)

    def acquire(self) -> "CacheLock":
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        owner = self._read_owner()
        if self._is_stale(owner):
            logger.warning(
                "Reclaiming stale cache lock left by pid %s.", owner["pid"]
            )
            self.reclaimed_from = owner["pid"]
            self.owner_path.unlink(missing_ok=True)

        try:
            self._lock.acquire(timeout=0)
        except Timeout:
            owner = self._read_owner() or {}
            pid = owner.get("pid")
            raise LockHeld(
                f"Another dotseal process (pid {pid if pid is not None else 'unknown'}) "
                f"is using the cache at '{self.cache_dir}'.",
                owner_pid=pid,
            )

        self.owner_path.write_text(
            json.dumps({"pid": os.getpid(), "host": socket.gethostname()})
        )
        logger.debug("Acquired cache lock %s", self.lock_path)
        return self

    def release(self) -> None:
        if not self._lock.is_locked:
            return
        self.owner_path.unlink(missing_ok=True)
        self._lock.release()
        logger.debug("Released cache lock %s", self.lock_path)

    @property
    def is_locked(self) -> bool:
        return self._lock.is_locked

    def __enter__(self) -> "CacheLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
