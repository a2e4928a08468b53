"""
Per-configuration run lock for the CRM → Mailchimp sync.

The lock is a directory below ``DATA_DIR/locks``; ``os.mkdir`` either creates
it or fails, so two processes can never both acquire it. Runs of different
configurations do not block each other.

A run touches the lock while it works. A lock that was not touched for
``MAX_LOCK_TIME`` seconds is left over from a crashed run and is removed.
"""

import logging
import os
import time
from typing import Optional

from .config import DATA_DIR, MAX_LOCK_TIME
from .notifications import notify_warning

logger = logging.getLogger(__name__)


class SyncLock:
    def __init__(self, config_name: str, data_dir: Optional[str] = None, max_age: int = MAX_LOCK_TIME):
        self.config_name = config_name
        self.root = os.path.join(data_dir or DATA_DIR, "locks")
        self.path = os.path.join(self.root, f"{config_name}.lock")
        self.max_age = max_age

    @property
    def locked(self) -> bool:
        return os.path.isdir(self.path)

    def age(self) -> Optional[float]:
        """Seconds since the lock was last touched, None if not locked."""
        if not self.locked:
            return None
        return time.time() - os.path.getmtime(self.path)

    def acquire(self) -> bool:
        """Take the lock. Returns False if another run holds it."""
        os.makedirs(self.root, exist_ok=True)

        age = self.age()
        if age is not None:
            if age <= self.max_age:
                logger.debug(f"Lock of '{self.config_name}' taken {age:.0f}s ago")
                return False
            self.release()
            notify_warning(f"⚠️ Max lock time exceeded for '{self.config_name}'. Lock of a crashed run removed.",
                           {"config": self.config_name, "age": round(age)})

        try:
            os.mkdir(self.path, 0o700)
        except FileExistsError:
            return False
        return True

    def refresh(self):
        if self.locked:
            os.utime(self.path)

    def release(self):
        try:
            os.rmdir(self.path)
        except FileNotFoundError:
            pass
