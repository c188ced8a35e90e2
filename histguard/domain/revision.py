"""
Revision domain objects for histguard.

A Revision is an immutable node in a history graph. Its tree is kept flat:
a mapping of slash-separated paths to the object stored at that path, the
same shape `git ls-tree -r` prints.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

BLOB_MODE = "100644"
EXEC_MODE = "100755"
LINK_MODE = "120000"
GITLINK_MODE = "160000"


@dataclass(frozen=True)
class TreeEntry:
    """One file in a flattened tree."""
    mode: str
    object_id: str

    def to_dict(self) -> Dict[str, str]:
        return {'mode': self.mode, 'object_id': self.object_id}


@dataclass(frozen=True)
class Signature:
    """Author or committer stamp.

    `when` is kept in git's raw form ("<unix seconds> <tz offset>") so a
    rewritten revision reproduces its original timestamp exactly.
    """
    name: str
    email: str
    when: str

    @classmethod
    def now(cls, name: str, email: str) -> 'Signature':
        stamp = datetime.now().astimezone()
        offset = stamp.strftime('%z') or '+0000'
        return cls(name=name, email=email, when=f"{int(stamp.timestamp())} {offset}")

    def format(self) -> str:
        return f"{self.name} <{self.email}> {self.when}"


@dataclass(frozen=True)
class RevisionMeta:
    """Metadata carried from a revision to its rewrite.

    `encoding` is the commit's declared message encoding, None for UTF-8.
    """
    author: Signature
    committer: Signature
    message: str
    encoding: Optional[str] = None


def freeze_tree(tree: Mapping[str, TreeEntry]) -> Mapping[str, TreeEntry]:
    """Return a read-only, path-sorted copy of a tree mapping."""
    return MappingProxyType({path: tree[path] for path in sorted(tree)})


def tree_digest(tree: Mapping[str, TreeEntry]) -> str:
    """Content identifier of a flattened tree."""
    h = hashlib.sha1()
    for path in sorted(tree):
        entry = tree[path]
        h.update(f"{entry.mode} {entry.object_id}\t{path}\n".encode('utf-8'))
    return h.hexdigest()


def compute_revision_id(tree: Mapping[str, TreeEntry], parents: Tuple[str, ...], meta: RevisionMeta) -> str:
    """
    Deterministic identifier from tree, parents and metadata.

    Any change to an ancestor changes its id, which changes the parents of
    its children, so the change propagates to every descendant.
    """
    lines = [f"tree {tree_digest(tree)}"]
    lines.extend(f"parent {p}" for p in parents)
    lines.append(f"author {meta.author.format()}")
    lines.append(f"committer {meta.committer.format()}")
    if meta.encoding:
        lines.append(f"encoding {meta.encoding}")
    lines.append("")
    lines.append(meta.message)
    payload = "\n".join(lines).encode('utf-8', errors='surrogateescape')
    header = f"commit {len(payload)}\0".encode('utf-8')
    return hashlib.sha1(header + payload).hexdigest()


@dataclass(frozen=True)
class Revision:
    """
    Immutable snapshot node in a history graph.

    Attributes:
        id: Content-derived identifier
        parents: Parent identifiers (empty for a root, 2+ for a merge)
        tree: Flattened path -> TreeEntry mapping
        author: Author stamp
        committer: Committer stamp
        message: Commit message
        encoding: Declared message encoding (None for UTF-8)
    """
    id: str
    parents: Tuple[str, ...]
    tree: Mapping[str, TreeEntry] = field(compare=False, hash=False)
    author: Signature
    committer: Signature
    message: str = ""
    encoding: Optional[str] = None

    @property
    def meta(self) -> RevisionMeta:
        return RevisionMeta(author=self.author, committer=self.committer, message=self.message,
                            encoding=self.encoding)

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def entry(self, path: str) -> Optional[TreeEntry]:
        return self.tree.get(path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'parents': list(self.parents),
            'author': self.author.format(),
            'committer': self.committer.format(),
            'message': self.message,
            'paths': len(self.tree),
        }

    def __str__(self) -> str:
        subject = self.message.splitlines()[0] if self.message else ""
        return f"{self.short_id} {subject}"
