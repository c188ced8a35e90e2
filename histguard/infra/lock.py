"""
Advisory lock for histguard.

A lock file created with O_EXCL marks one operation as owning a
repository. Well-behaved callers respect it; nothing in git enforces it.
Acquisition never waits: a held lock fails fast with OperationInProgress.
"""

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional
import logging

from ..exceptions import OperationInProgress

logger = logging.getLogger(__name__)


class AdvisoryLock:
    """
    Exclusive, non-blocking lock file.

    Example:
        with AdvisoryLock(repo.metadata_dir / "operation.lock", purpose="deploy"):
            ...
    """

    def __init__(self, path: Path, purpose: str = "operation"):
        self.path = Path(path)
        self.purpose = purpose
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def owner(self) -> Optional[Dict[str, Any]]:
        """Contents of the lock file, None when unlocked or unreadable."""
        try:
            return json.loads(self.path.read_text())
        except (OSError, ValueError):
            return None

    def acquire(self) -> 'AdvisoryLock':
        if self._held:
            raise OperationInProgress(str(self.path), owner=f"this process ({self.purpose})")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            info = self.owner() or {}
            owner = None
            if info:
                owner = f"pid {info.get('pid')} ({info.get('purpose', 'unknown')}) since {info.get('acquired_at')}"
            raise OperationInProgress(str(self.path), owner=owner)

        with os.fdopen(fd, 'w') as f:
            json.dump({
                'pid': os.getpid(),
                'purpose': self.purpose,
                'acquired_at': datetime.now().isoformat(),
            }, f)
        self._held = True
        logger.debug(f"Acquired {self.purpose} lock {self.path}")
        return self

    def release(self) -> None:
        if not self._held:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning(f"Lock file {self.path} vanished while held")
        self._held = False
        logger.debug(f"Released {self.purpose} lock {self.path}")

    def is_stale(self) -> bool:
        """True when the lock exists but its owner process is gone."""
        info = self.owner()
        if not self.path.exists():
            return False
        if not info or 'pid' not in info:
            return True
        try:
            os.kill(int(info['pid']), 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    def break_stale(self) -> bool:
        """Remove a stale lock. Returns True if one was removed."""
        if not self.is_stale():
            return False
        self.path.unlink(missing_ok=True)
        logger.info(f"Removed stale lock {self.path}")
        return True

    def __enter__(self) -> 'AdvisoryLock':
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
