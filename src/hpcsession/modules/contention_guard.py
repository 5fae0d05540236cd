"""Advisory contention guard for compute nodes.

Only one session server of each kind can run on a node at a time (they
share fixed paths under /tmp). A session claims the node by creating a lock
directory holding an ``owner`` file with the claiming user and hostname.

This is advisory, not a mutex:
- mkdir is atomic, but a lock left by the same user is taken over, and
  release checks ownership before deleting; a second session can slip in
  between the check and the delete.
- Two sessions starting within the same instant may both see no lock.
Callers treat a foreign owner as BUSY and move on; nothing blocks.

Public API:
    ContentionGuard: protocol implemented by lock backends
    DirectoryLockGuard: lock directory on the node's filesystem
    LockOwner: who holds a lock
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockOwner:
    user: str
    hostname: str


class ContentionGuard(Protocol):
    def acquire(self) -> LockOwner | None:
        """Claim the node. Returns None on success, or the foreign owner."""
        ...

    def release(self) -> None:
        """Give the node back if this guard still owns it."""
        ...


class DirectoryLockGuard:
    """Lock directory with an owner file."""

    OWNER_FILE = "owner"

    def __init__(self, lock_dir: Path, user: str, hostname: str):
        self.lock_dir = lock_dir
        self.owner = LockOwner(user=user, hostname=hostname)
        self.held = False

    @property
    def owner_file(self) -> Path:
        return self.lock_dir / self.OWNER_FILE

    def read_owner(self) -> LockOwner | None:
        """Owner recorded in the lock directory, or None if unreadable."""
        try:
            lines = self.owner_file.read_text().splitlines()
        except OSError:
            return None
        if len(lines) < 2 or not lines[0]:
            return None
        return LockOwner(user=lines[0].strip(), hostname=lines[1].strip())

    def acquire(self) -> LockOwner | None:
        try:
            self.lock_dir.mkdir(parents=True)
        except FileExistsError:
            current = self.read_owner()
            if current is not None and current.user != self.owner.user:
                logger.info(f"Lock {self.lock_dir} held by {current.user} on {current.hostname}")
                return current
            # Last writer wins for our own (or an ownerless) stale lock
            logger.info(f"Taking over lock {self.lock_dir}")

        self.owner_file.write_text(f"{self.owner.user}\n{self.owner.hostname}\n")
        self.held = True
        logger.debug(f"Acquired lock {self.lock_dir}")
        return None

    def release(self) -> None:
        if not self.held:
            return
        self.held = False
        current = self.read_owner()
        if current is not None and current.user != self.owner.user:
            logger.warning(f"Lock {self.lock_dir} now owned by {current.user}, leaving it")
            return
        shutil.rmtree(self.lock_dir, ignore_errors=True)
        logger.debug(f"Released lock {self.lock_dir}")


__all__ = ["ContentionGuard", "DirectoryLockGuard", "LockOwner"]
