"""
File store infrastructure for histguard.

A small JSON document of named records, kept in the repository's metadata
directory. Every change rewrites the whole document through a temp file
and os.replace, so a reader sees either the old state or the new one,
never half of each.
"""

import json
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator
import logging

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class FileStore:
    """
    Named records persisted as {"version": 1, "records": {...}}.

    Nothing is cached between calls: another process may have written the
    file since. A bare mapping without the version wrapper is read as the
    records themselves.

    Example:
        store = FileStore(repo.metadata_dir / "remotes.json")
        store.set("origin", {"url": "...", "role": "primary"})
        with store.transaction() as records:
            records["origin"]["role"] = "secondary"
            records["mirror"] = {"url": "...", "role": "primary"}
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self._lock = threading.RLock()

    def _load(self) -> Dict[str, Any]:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                document = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable store {self.path}: {e}")
            return {}

        if not isinstance(document, dict):
            logger.warning(f"Ignoring store {self.path}: expected a JSON object")
            return {}
        if 'version' in document and isinstance(document.get('records'), dict):
            if document['version'] != SCHEMA_VERSION:
                logger.warning(f"{self.path} has schema version {document['version']}, expected {SCHEMA_VERSION}")
            return dict(document['records'])
        return document

    def _dump(self, records: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump({'version': SCHEMA_VERSION, 'records': records}, f,
                          indent=2, sort_keys=True, ensure_ascii=False)
                f.write('\n')
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except BaseException:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def read(self) -> Dict[str, Any]:
        """All records, keyed by name."""
        with self._lock:
            return self._load()

    @contextmanager
    def transaction(self) -> Iterator[Dict[str, Any]]:
        """
        Read-modify-write under the store lock.

        The yielded dict is written back only when the block finishes
        without raising.
        """
        with self._lock:
            records = self._load()
            yield records
            self._dump(records)

    def get(self, name: str, default: Any = None) -> Any:
        return self.read().get(name, default)

    def set(self, name: str, record: Any) -> None:
        with self.transaction() as records:
            records[name] = record

    def delete(self, name: str) -> bool:
        """Remove a record. Returns False if there was none."""
        with self._lock:
            records = self._load()
            if name not in records:
                return False
            del records[name]
            self._dump(records)
            return True

    def __len__(self) -> int:
        return len(self.read())

    def __contains__(self, name: str) -> bool:
        return name in self.read()
