"""
In-process version-control engine for histguard.

InMemoryRepository implements RepositoryHandle with content-derived ids,
branches, tags, a worktree and remotes, all held in dictionaries. Remotes
are InMemoryRemote objects looked up by URL in a shared network dict, and
can be told to fail their next push or fetch.
"""

import hashlib
import tempfile
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple
import logging

from ..domain.revision import (
    BLOB_MODE,
    Revision,
    RevisionMeta,
    Signature,
    TreeEntry,
    compute_revision_id,
    freeze_tree,
)
from ..exceptions import GitCommandError, NetworkTimeout, RewriteConflict
from .credentials import Credential
from .repository import PushOutcome, RepositoryHandle

logger = logging.getLogger(__name__)


def blob_id(data: bytes) -> str:
    return hashlib.sha1(f"blob {len(data)}\0".encode('utf-8') + data).hexdigest()


def topological_order(revisions: Mapping[str, Revision], tips: Iterable[str]) -> List[Revision]:
    """Revisions reachable from `tips`, every parent before its children."""
    ordered: List[Revision] = []
    seen: Set[str] = set()
    for tip in sorted(set(tips)):
        stack: List[Tuple[str, bool]] = [(tip, False)]
        while stack:
            rev_id, expanded = stack.pop()
            if expanded:
                ordered.append(revisions[rev_id])
                continue
            if rev_id in seen or rev_id not in revisions:
                continue
            seen.add(rev_id)
            stack.append((rev_id, True))
            for parent in reversed(revisions[rev_id].parents):
                if parent not in seen:
                    stack.append((parent, False))
    return ordered


class InMemoryRemote:
    """
    A remote repository reachable by URL.

    Attributes:
        fail_next_push: None, or one of "reject", "timeout", "interrupt", "partial"
        fail_fetches: Number of upcoming fetches that time out
        required_token: When set, pushes need a credential with this token
    """

    def __init__(self, url: str, required_token: Optional[str] = None):
        self.url = url
        self.refs: Dict[str, str] = {}
        self.revisions: Dict[str, Revision] = {}
        self.blobs: Dict[str, bytes] = {}
        self.required_token = required_token
        self.fail_next_push: Optional[str] = None
        self.fail_fetches = 0
        self.push_attempts = 0
        self.fetch_attempts = 0


class InMemoryRepository(RepositoryHandle):
    """
    Complete in-process repository.

    Example:
        repo = InMemoryRepository(metadata_dir=tmp_path / "meta")
        repo.commit({"README.md": b"hello"}, "Initial commit")
        repo.commit({"secret.env": b"TOKEN=abc"}, "Add config")
    """

    def __init__(
        self,
        metadata_dir: Optional[Path] = None,
        network: Optional[Dict[str, InMemoryRemote]] = None,
        user: Tuple[str, str] = ("Test User", "test@example.com"),
        branch: str = "main",
    ):
        self._metadata_dir = Path(metadata_dir) if metadata_dir else Path(tempfile.mkdtemp(prefix="histguard-"))
        self.network = network if network is not None else {}
        self.user = user
        self.revisions: Dict[str, Revision] = {}
        self.blobs: Dict[str, bytes] = {}
        self.refs: Dict[str, str] = {}
        self.head: Optional[str] = f"refs/heads/{branch}"
        self.worktree: Dict[str, bytes] = {}
        self.remotes: Dict[str, str] = {}
        self._clock = 1700000000

    # Helpers for building histories

    def _tick(self) -> Signature:
        self._clock += 60
        return Signature(name=self.user[0], email=self.user[1], when=f"{self._clock} +0000")

    def store_blob(self, data: bytes) -> str:
        oid = blob_id(data)
        self.blobs[oid] = data
        return oid

    def head_tree(self) -> Dict[str, TreeEntry]:
        tip = self.refs.get(self.head) if self.head else None
        return dict(self.revisions[tip].tree) if tip else {}

    def commit(
        self,
        files: Mapping[str, Optional[bytes]],
        message: str,
        branch: Optional[str] = None,
        extra_parents: Tuple[str, ...] = (),
    ) -> Revision:
        """
        Commit file changes onto a branch (the checked-out one by default).

        A None value deletes the path. Committing to the checked-out branch
        also updates the worktree.
        """
        ref = f"refs/heads/{branch}" if branch else self.head
        tip = self.refs.get(ref)
        tree = dict(self.revisions[tip].tree) if tip else {}
        for path, data in files.items():
            if data is None:
                tree.pop(path, None)
            else:
                tree[path] = TreeEntry(mode=BLOB_MODE, object_id=self.store_blob(data))
        parents = ((tip,) if tip else ()) + tuple(extra_parents)
        stamp = self._tick()
        rev = self.write_revision(tree, parents, RevisionMeta(author=stamp, committer=stamp, message=message))
        self.refs[ref] = rev.id
        if ref == self.head:
            for path, data in files.items():
                if data is None:
                    self.worktree.pop(path, None)
                else:
                    self.worktree[path] = data
        return rev

    def create_branch(self, name: str, at: Optional[str] = None) -> str:
        ref = f"refs/heads/{name}"
        self.refs[ref] = at or self.refs[self.head]
        return ref

    def tag(self, name: str, at: Optional[str] = None) -> str:
        ref = f"refs/tags/{name}"
        self.refs[ref] = at or self.refs[self.head]
        return ref

    def add_remote_repo(self, name: str, url: str, required_token: Optional[str] = None) -> InMemoryRemote:
        """Create a remote on the network and alias it locally."""
        remote = self.network.get(url)
        if remote is None:
            remote = InMemoryRemote(url, required_token=required_token)
            self.network[url] = remote
        self.remotes[name] = url
        return remote

    # RepositoryHandle

    @property
    def metadata_dir(self) -> Path:
        return self._metadata_dir

    def list_revisions(self) -> List[Revision]:
        return topological_order(self.revisions, self.list_refs().values())

    def get_revision(self, revision_id: str) -> Optional[Revision]:
        return self.revisions.get(revision_id)

    def read_tree(self, revision_id: str, path: str) -> Optional[bytes]:
        rev = self.revisions.get(revision_id)
        if rev is None:
            return None
        entry = rev.tree.get(path.strip('/'))
        if entry is None:
            return None
        return self.blobs.get(entry.object_id)

    def read_blob(self, object_id: str) -> Optional[bytes]:
        return self.blobs.get(object_id)

    def write_revision(self, tree: Mapping[str, TreeEntry], parents: Tuple[str, ...], meta: RevisionMeta) -> Revision:
        for parent in parents:
            if parent not in self.revisions:
                raise GitCommandError(['commit-tree'], 128, f"unknown parent {parent}")
        parents = tuple(parents)
        rev_id = compute_revision_id(tree, parents, meta)
        rev = Revision(
            id=rev_id,
            parents=parents,
            tree=freeze_tree(tree),
            author=meta.author,
            committer=meta.committer,
            message=meta.message,
            encoding=meta.encoding,
        )
        self.revisions.setdefault(rev_id, rev)
        return self.revisions[rev_id]

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        if ancestor not in self.revisions or descendant not in self.revisions:
            return False
        stack = [descendant]
        seen: Set[str] = set()
        while stack:
            rev_id = stack.pop()
            if rev_id == ancestor:
                return True
            if rev_id in seen:
                continue
            seen.add(rev_id)
            stack.extend(self.revisions[rev_id].parents)
        return False

    def list_refs(self) -> Dict[str, str]:
        return {ref: rev for ref, rev in sorted(self.refs.items())
                if ref.startswith('refs/')}

    def resolve_ref(self, ref: str) -> Optional[str]:
        if ref == 'HEAD':
            return self.refs.get(self.head) if self.head else None
        for candidate in (ref, f"refs/heads/{ref}", f"refs/tags/{ref}"):
            if candidate in self.refs:
                return self.refs[candidate]
        return ref if ref in self.revisions else None

    def head_ref(self) -> Optional[str]:
        return self.head

    def update_ref(self, ref: str, new_id: str, old_id: Optional[str]) -> None:
        current = self.refs.get(ref)
        if current != old_id:
            raise RewriteConflict(f"Ref {ref} moved: expected {old_id}, found {current}")
        if new_id not in self.revisions:
            raise GitCommandError(['update-ref', ref, new_id], 128, "unknown revision")
        self.refs[ref] = new_id

    def delete_ref(self, ref: str, old_id: str) -> None:
        current = self.refs.get(ref)
        if current != old_id:
            raise RewriteConflict(f"Ref {ref} moved: expected {old_id}, found {current}")
        del self.refs[ref]

    def is_dirty(self) -> bool:
        for path, entry in self.head_tree().items():
            data = self.worktree.get(path)
            if data is None or blob_id(data) != entry.object_id:
                return True
        return False

    def reset_index(self) -> None:
        # The index is always the head tree here; worktree files stay as they are
        pass

    def read_worktree_file(self, path: str) -> Optional[bytes]:
        return self.worktree.get(path)

    def write_worktree_file(self, path: str, data: Optional[bytes]) -> None:
        if data is None:
            self.worktree.pop(path, None)
        else:
            self.worktree[path] = data

    def commit_files(self, paths: Iterable[str], message: str) -> Revision:
        return self.commit({p: self.worktree.get(p) for p in paths}, message)

    def list_remotes(self) -> Dict[str, str]:
        return dict(self.remotes)

    def get_remote(self, name: str) -> Optional[str]:
        return self.remotes.get(name)

    def set_remote(self, name: str, url: str) -> None:
        self.remotes[name] = url

    def remove_remote(self, name: str) -> None:
        self.remotes.pop(name, None)

    def _remote(self, name: str) -> InMemoryRemote:
        url = self.remotes.get(name)
        if url is None:
            raise GitCommandError(['fetch', name], 128, f"'{name}' does not appear to be a git repository")
        remote = self.network.get(url)
        if remote is None:
            raise GitCommandError(['fetch', name], 128, f"repository '{url}' not found")
        return remote

    def _copy_reachable(self, tip: str, source_revs, source_blobs, target_revs, target_blobs) -> None:
        for rev in topological_order(source_revs, [tip]):
            if rev.id in target_revs:
                continue
            target_revs[rev.id] = rev
            for entry in rev.tree.values():
                if entry.object_id in source_blobs:
                    target_blobs[entry.object_id] = source_blobs[entry.object_id]

    def fetch(self, remote: str, credentials: Optional[Credential] = None,
              timeout: Optional[float] = None) -> Dict[str, str]:
        target = self._remote(remote)
        target.fetch_attempts += 1
        if target.fail_fetches > 0:
            target.fail_fetches -= 1
            raise NetworkTimeout(remote, timeout or 0)
        for tip in target.refs.values():
            self._copy_reachable(tip, target.revisions, target.blobs, self.revisions, self.blobs)
        return dict(target.refs)

    def push(self, remote: str, ref: str, force: bool = False,
             expected_remote: Optional[str] = None,
             credentials: Optional[Credential] = None,
             timeout: Optional[float] = None) -> PushOutcome:
        target = self._remote(remote)
        target.push_attempts += 1
        local_tip = self.resolve_ref(ref)
        if local_tip is None:
            return PushOutcome(remote=remote, ref=ref, ok=False, rejected=True, message=f"src refspec {ref} does not match any")

        if target.required_token and (credentials is None or credentials.token != target.required_token):
            return PushOutcome(remote=remote, ref=ref, ok=False, rejected=True, message="Authentication failed")

        failure, target.fail_next_push = target.fail_next_push, None
        if failure == "reject":
            return PushOutcome(remote=remote, ref=ref, ok=False, rejected=True, message="pre-receive hook declined")
        if failure == "timeout":
            raise NetworkTimeout(remote, timeout or 0)
        if failure == "interrupt":
            raise KeyboardInterrupt()

        current = target.refs.get(ref)
        fast_forward = current is None or self.is_ancestor(current, local_tip)
        if not fast_forward and not force:
            return PushOutcome(remote=remote, ref=ref, ok=False, rejected=True, message="non-fast-forward")
        if force and current != expected_remote:
            return PushOutcome(remote=remote, ref=ref, ok=False, rejected=True, message="stale info")

        if failure == "partial":
            # Objects transferred, ref update lost half way
            self._copy_reachable(local_tip, self.revisions, self.blobs, target.revisions, target.blobs)
            target.refs.pop(ref, None)
            raise NetworkTimeout(remote, timeout or 0)

        self._copy_reachable(local_tip, self.revisions, self.blobs, target.revisions, target.blobs)
        target.refs[ref] = local_tip
        return PushOutcome(remote=remote, ref=ref, ok=True, forced=not fast_forward, new_tip=local_tip)
