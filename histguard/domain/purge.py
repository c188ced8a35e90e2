"""
Purge domain objects for histguard.

A PurgeSpec says which paths to strip from history (or which to keep),
and a RewriteResult records what a purge run did.
"""

import fnmatch
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..exceptions import AmbiguousPredicate

# Mapping value for a revision the purge emptied and dropped
REMOVED = "removed"


class PurgeMode(Enum):
    REMOVE_PATH = "remove-path"
    KEEP_ONLY = "keep-only"


class PredicateKind(Enum):
    EXACT = "exact"
    GLOB = "glob"
    CONTENT = "content"


@dataclass(frozen=True)
class PurgeSpec:
    """
    What to purge from history.

    Attributes:
        patterns: Paths, glob patterns or content regexes
        kind: How patterns are interpreted
        mode: Remove matched paths, or keep only matched paths
        match_directories: A path pattern also covers everything below it
        prune_empty: Drop revisions left with no change of their own
    """
    patterns: Tuple[str, ...]
    kind: PredicateKind = PredicateKind.EXACT
    mode: PurgeMode = PurgeMode.REMOVE_PATH
    match_directories: bool = True
    prune_empty: bool = False
    _compiled: Tuple[Any, ...] = field(default=(), init=False, repr=False, compare=False)

    def __post_init__(self):
        if isinstance(self.patterns, str):
            object.__setattr__(self, 'patterns', (self.patterns,))
        patterns = tuple(p.strip() for p in self.patterns if p and p.strip())
        if self.kind != PredicateKind.CONTENT:
            patterns = tuple(p.strip('/') for p in patterns)
        if not patterns:
            raise ValueError("PurgeSpec needs at least one non-empty pattern")
        object.__setattr__(self, 'patterns', patterns)
        if self.kind == PredicateKind.CONTENT:
            compiled = tuple(re.compile(p.encode('utf-8')) for p in patterns)
            object.__setattr__(self, '_compiled', compiled)

    @classmethod
    def for_paths(cls, paths, keep_only: bool = False, **kwargs) -> 'PurgeSpec':
        mode = PurgeMode.KEEP_ONLY if keep_only else PurgeMode.REMOVE_PATH
        return cls(patterns=tuple(paths), kind=PredicateKind.EXACT, mode=mode, **kwargs)

    @property
    def needs_content(self) -> bool:
        return self.kind == PredicateKind.CONTENT

    def _match_exact(self, path: str) -> bool:
        for pattern in self.patterns:
            if path == pattern:
                return True
            if self.match_directories and path.startswith(pattern + '/'):
                return True
        return False

    def _match_glob(self, path: str) -> bool:
        candidates = [path]
        if self.match_directories:
            parts = path.split('/')
            candidates.extend('/'.join(parts[:i]) for i in range(1, len(parts)))
        for pattern in self.patterns:
            for candidate in candidates:
                if fnmatch.fnmatchcase(candidate, pattern):
                    return True
                # Slash-free patterns match at any depth, as in .gitignore
                if '/' not in pattern and fnmatch.fnmatchcase(candidate.rsplit('/', 1)[-1], pattern):
                    return True
        return False

    def matches(self, path: str, content: Optional[Callable[[], Optional[bytes]]] = None) -> bool:
        """
        Does this predicate select `path`?

        Args:
            path: Tree path
            content: Loader for the file's bytes, used by content predicates
        """
        if self.kind == PredicateKind.EXACT:
            return self._match_exact(path)
        if self.kind == PredicateKind.GLOB:
            return self._match_glob(path)
        if content is None:
            return False
        data = content()
        if data is None:
            return False
        return any(regex.search(data) for regex in self._compiled)

    def ignore_patterns(self) -> List[str]:
        """Ignore-file lines that keep matched paths from being re-added."""
        if self.mode != PurgeMode.REMOVE_PATH:
            return []
        if self.kind == PredicateKind.EXACT:
            return [f"/{p}" for p in self.patterns]
        if self.kind == PredicateKind.GLOB:
            return list(self.patterns)
        return []

    def to_dict(self) -> Dict[str, Any]:
        return {
            'patterns': list(self.patterns),
            'kind': self.kind.value,
            'mode': self.mode.value,
            'match_directories': self.match_directories,
            'prune_empty': self.prune_empty,
        }


@dataclass
class RewriteResult:
    """
    Outcome of one purge run.

    Attributes:
        mapping: Old revision id -> new id, or REMOVED
        objects_purged: Distinct objects no longer referenced by any rewritten tree
        ref_updates: Ref -> (old id, new id or None when the ref was deleted)
        matched_paths: Every path the predicate selected
        warning: Set when the predicate matched nothing
    """
    spec: PurgeSpec
    mapping: Dict[str, str] = field(default_factory=dict)
    objects_purged: int = 0
    ref_updates: Dict[str, Tuple[str, Optional[str]]] = field(default_factory=dict)
    matched_paths: Set[str] = field(default_factory=set)
    warning: Optional[AmbiguousPredicate] = None

    @property
    def no_match(self) -> bool:
        return self.warning is not None

    @property
    def rewritten(self) -> int:
        return sum(1 for old, new in self.mapping.items() if new != old and new != REMOVED)

    @property
    def removed(self) -> int:
        return sum(1 for new in self.mapping.values() if new == REMOVED)

    @property
    def unchanged(self) -> int:
        return sum(1 for old, new in self.mapping.items() if new == old)

    @property
    def changed(self) -> bool:
        return bool(self.ref_updates)

    def new_id(self, old_id: str) -> Optional[str]:
        """The rewritten id of `old_id`, None if it was removed or unknown."""
        new = self.mapping.get(old_id)
        if new is None or new == REMOVED:
            return None
        return new

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'type': 'purge',
            'spec': self.spec.to_dict(),
            'revisions': len(self.mapping),
            'rewritten': self.rewritten,
            'removed': self.removed,
            'unchanged': self.unchanged,
            'objects_purged': self.objects_purged,
            'refs_updated': sorted(self.ref_updates),
            'matched_paths': sorted(self.matched_paths),
        }
        if self.warning:
            result['warning'] = str(self.warning)
        return result
