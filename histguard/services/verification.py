"""
Verification probe for histguard.

Read-only checks run after each mutating step. Nothing here writes to the
repository or to a remote.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, TypeVar

from ..domain.purge import REMOVED, PurgeMode, PurgeSpec, RewriteResult
from ..domain.remote import RemoteEndpoint, RetargetRecord
from ..exceptions import TransientError
from ..infra.credentials import CredentialResolver
from ..infra.repository import RepositoryHandle

logger = logging.getLogger(__name__)

T = TypeVar('T')


class VerificationProbe:
    """
    Post-operation checks.

    Example:
        probe = VerificationProbe(repo)
        assert probe.confirm_absent("config/secrets.env", repo)
    """

    def __init__(
        self,
        handle: RepositoryHandle,
        credentials: Optional[CredentialResolver] = None,
        retries: int = 3,
        backoff_seconds: float = 1.0,
        timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.handle = handle
        self.credentials = credentials or CredentialResolver()
        self.retries = max(1, retries)
        self.backoff_seconds = backoff_seconds
        self.timeout = timeout
        self._sleep = sleep
        self.last_observed: Optional[str] = None

    def _with_retry(self, label: str, action: Callable[[], T]) -> T:
        """Retry a read-only action on transient errors, with exponential backoff."""
        attempt = 1
        while True:
            try:
                return action()
            except TransientError as e:
                if attempt >= self.retries:
                    raise
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(f"{label} failed ({e}); retrying in {delay:.1f}s ({attempt}/{self.retries})")
                self._sleep(delay)
                attempt += 1

    def confirm_absent(self, path: str, handle: Optional[RepositoryHandle] = None) -> bool:
        """
        True when `path` (or anything below it) is in no reachable revision.

        Scans every revision reachable from any ref (remote-tracking refs
        and the stash included), not just the current tree.
        """
        handle = handle or self.handle
        path = path.strip('/')
        prefix = path + '/'
        for rev in handle.list_revisions():
            if path in rev.tree or any(p.startswith(prefix) for p in rev.tree):
                logger.info(f"{path} still present in {rev.short_id}")
                return False
        return True

    def confirm_absent_spec(self, spec: PurgeSpec, handle: Optional[RepositoryHandle] = None) -> List[str]:
        """
        Paths a remove-path spec still selects anywhere in history.

        An empty list means the purge holds. Keep-only specs always pass.
        """
        handle = handle or self.handle
        if spec.mode != PurgeMode.REMOVE_PATH:
            return []
        remaining = set()
        for rev in handle.list_revisions():
            for path, entry in rev.tree.items():
                if spec.matches(path, lambda oid=entry.object_id: handle.read_blob(oid)):
                    remaining.add(path)
        return sorted(remaining)

    def confirm_rewrite(self, result: RewriteResult, handle: Optional[RepositoryHandle] = None) -> bool:
        """
        Every surviving rewritten revision exists and every updated ref landed.

        A ref may have moved on since the purge (the ignore-file commit
        does this); it still counts when the rewritten tip is its ancestor.
        """
        handle = handle or self.handle
        for old, new in result.mapping.items():
            if new != REMOVED and new != old and handle.get_revision(new) is None:
                logger.info(f"Rewritten revision {new[:8]} is missing")
                return False
        refs = handle.list_refs()
        for ref, (_, new) in result.ref_updates.items():
            current = refs.get(ref)
            if current == new:
                continue
            if current is not None and new is not None and handle.is_ancestor(new, current):
                continue
            logger.info(f"{ref} is at {current}, expected {new}")
            return False
        return True

    def remote_tips(self, endpoint: RemoteEndpoint) -> Dict[str, str]:
        """Branch and tag tips currently on a remote."""
        cred = self.credentials.resolve(endpoint.auth) if endpoint.auth else None
        return self._with_retry(
            f"fetch {endpoint.name}",
            lambda: self.handle.fetch(endpoint.name, credentials=cred, timeout=self.timeout),
        )

    def observe_remote(self, endpoint: RemoteEndpoint, ref: Optional[str] = None) -> Optional[str]:
        """Current tip of `ref` (default: the checked-out branch) on a remote, None if absent."""
        ref = ref or self.handle.head_ref()
        self.last_observed = self.remote_tips(endpoint).get(ref)
        return self.last_observed

    def confirm_remote_matches(self, endpoint: RemoteEndpoint, expected_tip: Optional[str],
                               ref: Optional[str] = None) -> bool:
        """Fetch the remote tip of `ref` and compare it with `expected_tip`."""
        ref = ref or self.handle.head_ref()
        observed = self.observe_remote(endpoint, ref)
        if observed != expected_tip:
            logger.info(f"Remote '{endpoint.name}' {ref} is at {observed}, expected {expected_tip}")
            return False
        return True

    def confirm_retarget(self, record: RetargetRecord, handle: Optional[RepositoryHandle] = None) -> bool:
        handle = handle or self.handle
        return handle.get_remote(record.name) == record.new_url
