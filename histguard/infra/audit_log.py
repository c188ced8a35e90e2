"""
Append-only audit log for histguard.

One JSON line per plan run. Records come from PlanReport.to_dict(), which
carries step names, outcomes and remote names, never credentials. Known
secrets are masked once more before a line is written.
"""

import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
import logging

from .credentials import REDACTED

logger = logging.getLogger(__name__)


class AuditLog:
    """
    JSONL audit trail.

    Example:
        log = AuditLog(repo.metadata_dir / "audit.jsonl")
        log.append(report.to_dict())
        for record in log.records(limit=10):
            print(record['plan'], record['outcome'])
    """

    def __init__(self, path: Path, secrets: Optional[Iterable[str]] = None):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._secrets = secrets

    def _scrub(self, line: str) -> str:
        for secret in (self._secrets() if callable(self._secrets) else self._secrets or ()):
            if secret:
                line = line.replace(secret, REDACTED)
        return line

    def append(self, record: Dict[str, Any]) -> None:
        """Append one record. Existing lines are never rewritten."""
        line = self._scrub(json.dumps(record, ensure_ascii=False, default=str))
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'a', encoding='utf-8') as f:
                f.write(line + '\n')
                f.flush()
                os.fsync(f.fileno())
        logger.debug(f"Audit record appended to {self.path}")

    def records(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Most recent records last; `limit` keeps only the newest N."""
        if not self.path.exists():
            return []
        result = []
        with open(self.path, 'r', encoding='utf-8') as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    result.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning(f"Skipping corrupt audit line {lineno} in {self.path}")
        if limit is not None:
            result = result[-limit:] if limit > 0 else []
        return result

    def __len__(self) -> int:
        return len(self.records())
