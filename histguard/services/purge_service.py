"""
History purge service for histguard.

HistoryPurgeEngine rewrites every reachable revision so that the paths a
PurgeSpec selects are gone (or, in keep-only mode, are all that is left).
Revisions are visited ancestors-first; a revision is only rewritten when
its tree or its parents changed, so untouched history keeps its ids.
"""

import logging
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

from ..domain.purge import REMOVED, PurgeMode, PurgeSpec, RewriteResult
from ..domain.revision import Revision, TreeEntry
from ..exceptions import AmbiguousPredicate, DirtyWorkingState, OperationInProgress, RewriteConflict
from ..infra.lock import AdvisoryLock
from ..infra.repository import RepositoryHandle

logger = logging.getLogger(__name__)

PURGE_LOCK_NAME = "purge.lock"


class HistoryPurgeEngine:
    """
    Rewrites history to remove (or keep only) selected paths.

    Example:
        engine = HistoryPurgeEngine(repo)
        result = engine.purge(PurgeSpec.for_paths(["config/secrets.env"]))
        print(f"Rewrote {result.rewritten} revisions")
    """

    def __init__(self, handle: RepositoryHandle):
        self.handle = handle
        self.last_result: Optional[RewriteResult] = None

    def _lock(self) -> AdvisoryLock:
        return AdvisoryLock(self.handle.metadata_dir / PURGE_LOCK_NAME, purpose="purge")

    def purge(self, spec: PurgeSpec) -> RewriteResult:
        """
        Rewrite history according to `spec`.

        Raises:
            DirtyWorkingState: uncommitted changes, nothing was read or written
            RewriteConflict: another purge holds the repository, or refs
                moved while rewriting; no ref was left changed
        """
        if self.handle.is_dirty():
            raise DirtyWorkingState()

        lock = self._lock()
        try:
            lock.acquire()
        except OperationInProgress as e:
            raise RewriteConflict(f"Another purge is running on this repository: {e}") from e

        try:
            result = self._purge_locked(spec)
        finally:
            lock.release()

        self.last_result = result
        return result

    def _purge_locked(self, spec: PurgeSpec) -> RewriteResult:
        refs_before = self.handle.list_refs()
        revisions = self.handle.list_revisions()
        logger.info(f"Scanning {len(revisions)} revisions for {', '.join(spec.patterns)}")

        result, replacement = self._rewrite(spec, revisions)

        if not result.matched_paths:
            result.warning = AmbiguousPredicate(spec.patterns)
            logger.warning(str(result.warning))
            return result

        updates = self._plan_ref_updates(result, replacement, refs_before)

        if self.handle.list_refs() != refs_before:
            raise RewriteConflict("Refs changed while history was being rewritten; nothing was updated")

        self._apply_ref_updates(updates)
        result.ref_updates = updates

        head = self.handle.head_ref()
        if head in updates:
            self.handle.reset_index()

        logger.info(
            f"Purge rewrote {result.rewritten} revisions, removed {result.removed}, "
            f"purged {result.objects_purged} objects, updated {len(updates)} refs"
        )
        return result

    def _filter_tree(
        self,
        spec: PurgeSpec,
        tree: Mapping[str, TreeEntry],
        decisions: Dict[Tuple[str, str], bool],
    ) -> Tuple[Dict[str, TreeEntry], Set[str], Set[str]]:
        """
        Apply the predicate to one tree.

        Returns:
            (filtered tree, paths the predicate selected, paths dropped)
        """
        kept: Dict[str, TreeEntry] = {}
        selected: Set[str] = set()
        dropped: Set[str] = set()
        for path, entry in tree.items():
            key = (path, entry.object_id) if spec.needs_content else (path, "")
            hit = decisions.get(key)
            if hit is None:
                loader: Callable[[], Optional[bytes]] = lambda oid=entry.object_id: self.handle.read_blob(oid)
                hit = spec.matches(path, loader)
                decisions[key] = hit
            if hit:
                selected.add(path)
            drop = hit if spec.mode == PurgeMode.REMOVE_PATH else not hit
            if drop:
                dropped.add(path)
            else:
                kept[path] = entry
        return kept, selected, dropped

    def _rewrite(
        self,
        spec: PurgeSpec,
        revisions: List[Revision],
    ) -> Tuple[RewriteResult, Dict[str, Optional[str]]]:
        result = RewriteResult(spec=spec)
        decisions: Dict[Tuple[str, str], bool] = {}
        # old id of a removed revision -> the id its children should use instead
        replacement: Dict[str, Optional[str]] = {}
        trees_by_new_id: Dict[str, Mapping[str, TreeEntry]] = {}
        objects_before: Set[str] = set()
        objects_after: Set[str] = set()

        for rev in revisions:
            tree, selected, dropped = self._filter_tree(spec, rev.tree, decisions)
            result.matched_paths |= selected
            objects_before.update(e.object_id for e in rev.tree.values())

            parents = self._remap_parents(rev.parents, result.mapping, replacement)

            if not dropped and parents == rev.parents:
                result.mapping[rev.id] = rev.id
                trees_by_new_id[rev.id] = rev.tree
                objects_after.update(e.object_id for e in rev.tree.values())
                continue

            if dropped and self._became_empty(spec, rev, tree, parents, trees_by_new_id):
                result.mapping[rev.id] = REMOVED
                replacement[rev.id] = parents[0] if parents else None
                logger.debug(f"Revision {rev.short_id} is empty after purge; dropping it")
                continue

            new_rev = self.handle.write_revision(tree, parents, rev.meta)
            result.mapping[rev.id] = new_rev.id
            trees_by_new_id[new_rev.id] = tree
            objects_after.update(e.object_id for e in tree.values())
            logger.debug(f"Rewrote {rev.short_id} -> {new_rev.short_id}")

        result.objects_purged = len(objects_before - objects_after)
        return result, replacement

    @staticmethod
    def _remap_parents(
        parents: Tuple[str, ...],
        mapping: Dict[str, str],
        replacement: Dict[str, Optional[str]],
    ) -> Tuple[str, ...]:
        remapped: List[str] = []
        for parent in parents:
            new = mapping.get(parent, parent)
            if new == REMOVED:
                new = replacement.get(parent)
            if new is not None and new not in remapped:
                remapped.append(new)
        return tuple(remapped)

    @staticmethod
    def _became_empty(
        spec: PurgeSpec,
        rev: Revision,
        tree: Mapping[str, TreeEntry],
        parents: Tuple[str, ...],
        trees_by_new_id: Dict[str, Mapping[str, TreeEntry]],
    ) -> bool:
        """A non-merge revision whose own change was entirely purged."""
        if len(rev.parents) > 1:
            return False
        if not tree:
            return True
        if not spec.prune_empty:
            return False
        parent_tree = trees_by_new_id.get(parents[0], {}) if parents else {}
        return dict(tree) == dict(parent_tree)

    @staticmethod
    def _plan_ref_updates(
        result: RewriteResult,
        replacement: Dict[str, Optional[str]],
        refs: Dict[str, str],
    ) -> Dict[str, Tuple[str, Optional[str]]]:
        """Ref -> (old, new); new is None when nothing of the branch survived."""
        updates: Dict[str, Tuple[str, Optional[str]]] = {}
        for ref, old in refs.items():
            if old not in result.mapping:
                continue
            new = result.mapping[old]
            if new == REMOVED:
                new = replacement.get(old)
            if new != old:
                updates[ref] = (old, new)
        return updates

    def _apply_ref_updates(self, updates: Dict[str, Tuple[str, Optional[str]]]) -> None:
        done: List[str] = []
        try:
            for ref, (old, new) in sorted(updates.items()):
                if new is None:
                    logger.warning(f"{ref} only pointed at purged history; deleting it")
                    self.handle.delete_ref(ref, old)
                else:
                    self.handle.update_ref(ref, new, old)
                done.append(ref)
        except RewriteConflict:
            for ref in reversed(done):
                old, new = updates[ref]
                if new is None:
                    self.handle.update_ref(ref, old, None)
                else:
                    self.handle.update_ref(ref, old, new)
            raise

    def rollback(self, result: RewriteResult) -> None:
        """Point every ref the purge moved back at its original revision."""
        for ref, (old, new) in sorted(result.ref_updates.items()):
            if new is None:
                self.handle.update_ref(ref, old, None)
            else:
                self.handle.update_ref(ref, old, new)
            logger.info(f"Restored {ref} to {old[:8]}")
        if self.handle.head_ref() in result.ref_updates:
            self.handle.reset_index()
