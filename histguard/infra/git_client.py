"""
Git infrastructure for histguard.

GitRepository implements RepositoryHandle on top of the git command line.
All git operations go through this class, making them:
- Easy to swap for InMemoryRepository in tests
- Consistent in error handling
- Isolated from business logic

History is rewritten with plumbing only (update-index into a scratch
index, write-tree, commit-tree, update-ref), so the worktree is never
checked out or touched during a purge.
"""

import os
import re
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
import logging

from ..domain.revision import Revision, RevisionMeta, Signature, TreeEntry, freeze_tree
from ..exceptions import GitCommandError, NetworkTimeout, RewriteConflict
from .credentials import Credential
from .repository import PushOutcome, RepositoryHandle

logger = logging.getLogger(__name__)

ZERO_OID = "0" * 40
SIGNATURE_RE = re.compile(r'^(?P<name>.*?) <(?P<email>[^>]*)> (?P<when>\d+ [+-]\d{4})$')


def parse_signature(value: str) -> Signature:
    match = SIGNATURE_RE.match(value.strip())
    if not match:
        return Signature(name=value.strip(), email="", when="0 +0000")
    return Signature(name=match.group('name'), email=match.group('email'), when=match.group('when'))


def parse_commit_object(raw: bytes) -> Tuple[Tuple[str, ...], Signature, Signature, str, Optional[str]]:
    """
    Parse `git cat-file commit` output into parents, author, committer,
    message and declared encoding.

    Bytes that are not UTF-8 are kept as surrogate escapes, so encoding
    the message with errors='surrogateescape' gives back the exact bytes.
    """
    text = raw.decode('utf-8', errors='surrogateescape')
    header, _, message = text.partition('\n\n')
    parents = []
    author = committer = Signature(name="", email="", when="0 +0000")
    encoding = None
    for line in header.split('\n'):
        if line.startswith(' '):
            continue  # continuation of a multi-line header (gpgsig)
        key, _, value = line.partition(' ')
        if key == 'parent':
            parents.append(value.strip())
        elif key == 'author':
            author = parse_signature(value)
        elif key == 'committer':
            committer = parse_signature(value)
        elif key == 'encoding':
            encoding = value.strip() or None
    return tuple(parents), author, committer, message, encoding


class GitRepository(RepositoryHandle):
    """
    RepositoryHandle backed by a git checkout.

    Example:
        repo = GitRepository("/path/to/repo")
        if not repo.is_dirty():
            for rev in repo.list_revisions():
                print(rev)
    """

    def __init__(self, path: str = ".", timeout: int = 30, metadata_dir_name: str = "histguard"):
        """
        Initialize GitRepository.

        Args:
            path: Any directory inside the working tree
            timeout: Timeout in seconds for local commands
            metadata_dir_name: Directory under .git for histguard state
        """
        self.path = str(Path(path).expanduser().resolve())
        self.timeout = timeout
        self._metadata_dir_name = metadata_dir_name
        self._git_dir: Optional[Path] = None
        self._toplevel: Optional[Path] = None
        self._tag_objects: Dict[str, str] = {}

    def _run(
        self,
        args: List[str],
        check: bool = True,
        input: Optional[bytes] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        """
        Run a git command and return the completed process (bytes output).

        Raises:
            GitCommandError: non-zero exit when `check` is set
            subprocess.TimeoutExpired: the command outlived its timeout
        """
        full_env = None
        if env:
            full_env = os.environ.copy()
            full_env.update(env)
        result = subprocess.run(
            ['git'] + args,
            cwd=self.path,
            input=input,
            capture_output=True,
            env=full_env,
            timeout=timeout or self.timeout,
        )
        if check and result.returncode != 0:
            raise GitCommandError(['git'] + args, result.returncode, result.stderr.decode('utf-8', errors='replace'))
        return result

    def _out(self, args: List[str], **kwargs) -> str:
        return self._run(args, **kwargs).stdout.decode('utf-8', errors='replace').strip()

    def is_git_repo(self) -> bool:
        return self._run(['rev-parse', '--git-dir'], check=False).returncode == 0

    @property
    def git_dir(self) -> Path:
        if self._git_dir is None:
            self._git_dir = Path(self._out(['rev-parse', '--absolute-git-dir']))
        return self._git_dir

    @property
    def toplevel(self) -> Path:
        if self._toplevel is None:
            self._toplevel = Path(self._out(['rev-parse', '--show-toplevel']))
        return self._toplevel

    @property
    def metadata_dir(self) -> Path:
        return self.git_dir / self._metadata_dir_name

    # History

    def _read_tree_entries(self, rev_id: str) -> Dict[str, TreeEntry]:
        raw = self._run(['ls-tree', '-r', '-z', '--full-tree', rev_id]).stdout
        tree = {}
        for record in raw.split(b'\0'):
            if not record:
                continue
            meta, _, path = record.partition(b'\t')
            mode, _, rest = meta.decode('ascii').partition(' ')
            _, _, object_id = rest.partition(' ')
            tree[path.decode('utf-8', errors='surrogateescape')] = TreeEntry(mode=mode, object_id=object_id)
        return tree

    def get_revision(self, revision_id: str) -> Optional[Revision]:
        result = self._run(['cat-file', 'commit', revision_id], check=False)
        if result.returncode != 0:
            return None
        parents, author, committer, message, encoding = parse_commit_object(result.stdout)
        full_id = self._out(['rev-parse', f'{revision_id}^{{commit}}'])
        return Revision(
            id=full_id,
            parents=parents,
            tree=freeze_tree(self._read_tree_entries(full_id)),
            author=author,
            committer=committer,
            message=message,
            encoding=encoding,
        )

    def list_revisions(self) -> List[Revision]:
        tips = sorted(set(self.list_refs().values()))
        if not tips:
            return []
        output = self._out(['rev-list', '--topo-order', '--reverse'] + tips)
        revisions = []
        for rev_id in output.split('\n'):
            rev_id = rev_id.strip()
            if rev_id:
                rev = self.get_revision(rev_id)
                if rev is not None:
                    revisions.append(rev)
        return revisions

    def read_tree(self, revision_id: str, path: str) -> Optional[bytes]:
        result = self._run(['cat-file', 'blob', f"{revision_id}:{path.strip('/')}"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout

    def read_blob(self, object_id: str) -> Optional[bytes]:
        result = self._run(['cat-file', 'blob', object_id], check=False)
        if result.returncode != 0:
            return None
        return result.stdout

    def write_revision(self, tree: Mapping[str, TreeEntry], parents: Tuple[str, ...], meta: RevisionMeta) -> Revision:
        fd, index_path = tempfile.mkstemp(prefix='histguard-index-', dir=str(self.git_dir))
        os.close(fd)
        os.unlink(index_path)
        index_env = {'GIT_INDEX_FILE': index_path}
        try:
            self._run(['read-tree', '--empty'], env=index_env)
            if tree:
                records = b''.join(
                    f"{entry.mode} {entry.object_id}\t".encode('ascii')
                    + path.encode('utf-8', errors='surrogateescape') + b'\0'
                    for path, entry in sorted(tree.items())
                )
                self._run(['update-index', '-z', '--index-info'], input=records, env=index_env)
            tree_id = self._out(['write-tree'], env=index_env)
        finally:
            if os.path.exists(index_path):
                os.unlink(index_path)

        args = ['commit-tree', '--no-gpg-sign', tree_id]
        if meta.encoding:
            # commit-tree writes the encoding header from this setting
            args = ['-c', f'i18n.commitEncoding={meta.encoding}'] + args
        for parent in parents:
            args.extend(['-p', parent])
        commit_env = {
            'GIT_AUTHOR_NAME': meta.author.name,
            'GIT_AUTHOR_EMAIL': meta.author.email,
            'GIT_AUTHOR_DATE': meta.author.when,
            'GIT_COMMITTER_NAME': meta.committer.name,
            'GIT_COMMITTER_EMAIL': meta.committer.email,
            'GIT_COMMITTER_DATE': meta.committer.when,
        }
        rev_id = self._out(args, input=meta.message.encode('utf-8', errors='surrogateescape'), env=commit_env)
        return Revision(
            id=rev_id,
            parents=tuple(parents),
            tree=freeze_tree(tree),
            author=meta.author,
            committer=meta.committer,
            message=meta.message,
            encoding=meta.encoding,
        )

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = self._run(['merge-base', '--is-ancestor', ancestor, descendant], check=False)
        return result.returncode == 0

    # Refs

    def list_refs(self) -> Dict[str, str]:
        """
        Every ref that keeps a commit reachable: branches, tags,
        remote-tracking refs, the stash and anything else under refs/.

        Symbolic refs (refs/remotes/<name>/HEAD) are left out; their target
        is listed on its own.
        """
        output = self._run([
            'for-each-ref',
            '--format=%(refname)%09%(objectname)%09%(objecttype)%09%(*objectname)%09%(*objecttype)%09%(symref)',
        ]).stdout.decode('utf-8', errors='surrogateescape')
        refs = {}
        self._tag_objects = {}
        for line in output.splitlines():
            parts = line.split('\t')
            if len(parts) != 6:
                continue
            ref, object_id, object_type, peeled_id, peeled_type, symref = parts
            if symref:
                continue
            if object_type == 'tag':
                # Tags of trees or blobs reach no history
                if peeled_type != 'commit':
                    continue
                self._tag_objects[ref] = object_id
                refs[ref] = peeled_id
            elif object_type == 'commit':
                refs[ref] = object_id
        return refs

    def resolve_ref(self, ref: str) -> Optional[str]:
        result = self._run(['rev-parse', '--verify', '-q', f'{ref}^{{commit}}'], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.decode('ascii').strip()

    def head_ref(self) -> Optional[str]:
        result = self._run(['symbolic-ref', '-q', 'HEAD'], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.decode('utf-8').strip() or None

    def _expected_object(self, ref: str, old_id: Optional[str]) -> str:
        if old_id is None:
            return ZERO_OID
        # Annotated tags: the ref holds the tag object, not the commit
        if ref in self._tag_objects:
            return self._tag_objects[ref]
        return old_id

    def update_ref(self, ref: str, new_id: str, old_id: Optional[str]) -> None:
        if ref in self._tag_objects:
            logger.warning(f"{ref} is an annotated tag; it will be rewritten as a lightweight tag")
        result = self._run(
            ['update-ref', '-m', 'histguard', ref, new_id, self._expected_object(ref, old_id)],
            check=False,
        )
        if result.returncode != 0:
            raise RewriteConflict(
                f"Ref {ref} did not hold {old_id}: {result.stderr.decode('utf-8', errors='replace').strip()}"
            )
        self._tag_objects.pop(ref, None)

    def delete_ref(self, ref: str, old_id: str) -> None:
        result = self._run(['update-ref', '-d', ref, self._expected_object(ref, old_id)], check=False)
        if result.returncode != 0:
            raise RewriteConflict(
                f"Ref {ref} did not hold {old_id}: {result.stderr.decode('utf-8', errors='replace').strip()}"
            )
        self._tag_objects.pop(ref, None)

    # Working state

    def is_dirty(self) -> bool:
        output = self._out(['status', '--porcelain', '--untracked-files=no'])
        return bool(output.strip())

    def reset_index(self) -> None:
        if self.resolve_ref('HEAD'):
            self._run(['reset', '-q'])

    def read_worktree_file(self, path: str) -> Optional[bytes]:
        target = self.toplevel / path
        try:
            return target.read_bytes()
        except FileNotFoundError:
            return None

    def write_worktree_file(self, path: str, data: Optional[bytes]) -> None:
        target = self.toplevel / path
        if data is None:
            target.unlink(missing_ok=True)
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def commit_files(self, paths: Iterable[str], message: str) -> Revision:
        paths = list(paths)
        self._run(['add', '-A', '--'] + paths)
        self._run(['commit', '-q', '--no-verify', '--no-gpg-sign', '-m', message, '--'] + paths)
        return self.get_revision(self.resolve_ref('HEAD'))

    # Remotes

    def list_remotes(self) -> Dict[str, str]:
        result = self._run(['config', '--get-regexp', r'^remote\..*\.url$'], check=False)
        remotes = {}
        for line in result.stdout.decode('utf-8').splitlines():
            key, _, url = line.partition(' ')
            name = key[len('remote.'):-len('.url')]
            remotes[name] = url.strip()
        return remotes

    def get_remote(self, name: str) -> Optional[str]:
        result = self._run(['config', '--get', f'remote.{name}.url'], check=False)
        if result.returncode == 0:
            return result.stdout.decode('utf-8').strip() or None
        return None

    def set_remote(self, name: str, url: str) -> None:
        if self.get_remote(name) is None:
            self._run(['remote', 'add', name, url])
        else:
            self._run(['remote', 'set-url', name, url])

    def remove_remote(self, name: str) -> None:
        if self.get_remote(name) is not None:
            self._run(['remote', 'remove', name])

    def fetch(self, remote: str, credentials: Optional[Credential] = None,
              timeout: Optional[float] = None) -> Dict[str, str]:
        env = credentials.git_env() if credentials else {'GIT_TERMINAL_PROMPT': '0'}
        try:
            output = self._out(['ls-remote', '--heads', '--tags', remote], env=env, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise NetworkTimeout(remote, timeout or self.timeout)
        refs = {}
        for line in output.splitlines():
            object_id, _, ref = line.partition('\t')
            if ref.endswith('^{}'):
                refs[ref[:-3]] = object_id  # peeled annotated tag
            elif ref not in refs:
                refs[ref] = object_id
        return refs

    def push(self, remote: str, ref: str, force: bool = False,
             expected_remote: Optional[str] = None,
             credentials: Optional[Credential] = None,
             timeout: Optional[float] = None) -> PushOutcome:
        args = ['push', '--porcelain', '--no-verify']
        if force:
            args.append(f"--force-with-lease={ref}:{expected_remote or ''}")
        args.extend([remote, f"{ref}:{ref}"])
        env = credentials.git_env() if credentials else {'GIT_TERMINAL_PROMPT': '0'}
        try:
            result = self._run(args, check=False, env=env, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise NetworkTimeout(remote, timeout or self.timeout)

        stdout = result.stdout.decode('utf-8', errors='replace')
        stderr = result.stderr.decode('utf-8', errors='replace').strip()
        rejected = False
        forced = False
        summary = ""
        for line in stdout.splitlines():
            parts = line.split('\t')
            if len(parts) < 3 or len(parts[0]) != 1:
                continue
            flag, summary = parts[0], parts[2]
            if flag == '!':
                rejected = True
            elif flag == '+':
                forced = True

        ok = result.returncode == 0 and not rejected
        return PushOutcome(
            remote=remote,
            ref=ref,
            ok=ok,
            forced=forced,
            rejected=rejected,
            message=summary or stderr,
            new_tip=self.resolve_ref(ref) if ok else None,
        )
