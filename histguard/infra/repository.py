"""
RepositoryHandle: the boundary between histguard and a version-control engine.

Everything histguard knows about a repository goes through this interface,
so services can run against real git (GitRepository) or an in-process
engine (InMemoryRepository) without change.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..domain.revision import Revision, RevisionMeta, TreeEntry
from .credentials import Credential


@dataclass
class PushOutcome:
    """Result of a single push."""
    remote: str
    ref: str
    ok: bool
    forced: bool = False
    rejected: bool = False
    message: str = ""
    new_tip: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'remote': self.remote,
            'ref': self.ref,
            'ok': self.ok,
            'forced': self.forced,
            'rejected': self.rejected,
            'message': self.message,
            'new_tip': self.new_tip,
        }


class RepositoryHandle(ABC):
    """Capability wrapper over an external version-control engine."""

    @property
    @abstractmethod
    def metadata_dir(self) -> Path:
        """Directory for histguard's own state (locks, registry, audit log)."""

    # History

    @abstractmethod
    def list_revisions(self) -> List[Revision]:
        """Every revision reachable from any ref, ancestors first."""

    @abstractmethod
    def get_revision(self, revision_id: str) -> Optional[Revision]:
        """A single revision, or None if unknown."""

    @abstractmethod
    def read_tree(self, revision_id: str, path: str) -> Optional[bytes]:
        """Content at `path` in a revision's tree, or None when absent."""

    @abstractmethod
    def read_blob(self, object_id: str) -> Optional[bytes]:
        """Raw content of a stored file object."""

    @abstractmethod
    def write_revision(self, tree: Mapping[str, TreeEntry], parents: Tuple[str, ...], meta: RevisionMeta) -> Revision:
        """Store a new revision and return it."""

    @abstractmethod
    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """True when `ancestor` is reachable from `descendant` (or equal)."""

    # Refs

    @abstractmethod
    def list_refs(self) -> Dict[str, str]:
        """Branch and tag refs mapped to the revision they point at."""

    @abstractmethod
    def resolve_ref(self, ref: str) -> Optional[str]:
        """Revision id a ref or revision expression points at."""

    @abstractmethod
    def head_ref(self) -> Optional[str]:
        """Full name of the checked-out branch, None when detached."""

    @abstractmethod
    def update_ref(self, ref: str, new_id: str, old_id: Optional[str]) -> None:
        """
        Compare-and-swap a ref.

        Raises RewriteConflict when the ref no longer holds `old_id`
        (None means the ref must not exist).
        """

    @abstractmethod
    def delete_ref(self, ref: str, old_id: str) -> None:
        """Delete a ref if it still holds `old_id`."""

    # Working state

    @abstractmethod
    def is_dirty(self) -> bool:
        """True when tracked files have uncommitted modifications."""

    @abstractmethod
    def reset_index(self) -> None:
        """Re-read the index from the checked-out branch, keeping worktree files."""

    @abstractmethod
    def read_worktree_file(self, path: str) -> Optional[bytes]:
        """Content of a worktree file, None when missing."""

    @abstractmethod
    def write_worktree_file(self, path: str, data: Optional[bytes]) -> None:
        """Write a worktree file; None deletes it."""

    @abstractmethod
    def commit_files(self, paths: Iterable[str], message: str) -> Revision:
        """Commit the worktree state of `paths` onto the checked-out branch."""

    # Remotes

    @abstractmethod
    def list_remotes(self) -> Dict[str, str]:
        """Remote name -> URL."""

    @abstractmethod
    def get_remote(self, name: str) -> Optional[str]:
        """URL of a remote, None when not configured."""

    @abstractmethod
    def set_remote(self, name: str, url: str) -> None:
        """Create or retarget a remote."""

    @abstractmethod
    def remove_remote(self, name: str) -> None:
        """Remove a remote alias (never touches the remote itself)."""

    @abstractmethod
    def fetch(self, remote: str, credentials: Optional[Credential] = None,
              timeout: Optional[float] = None) -> Dict[str, str]:
        """Current branch and tag tips on a remote. Raises NetworkTimeout."""

    @abstractmethod
    def push(self, remote: str, ref: str, force: bool = False,
             expected_remote: Optional[str] = None,
             credentials: Optional[Credential] = None,
             timeout: Optional[float] = None) -> PushOutcome:
        """
        Push a local ref to the same name on a remote.

        With `force`, the push replaces remote history only if the remote
        still holds `expected_remote` (a lease). Raises NetworkTimeout.
        """
