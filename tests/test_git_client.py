"""
Tests for GitRepository against real git checkouts.

Skipped when git is not installed.
"""

import subprocess

import pytest

from histguard import exit_codes
from histguard.domain.purge import PurgeSpec
from histguard.exceptions import GitCommandError, RewriteConflict
from histguard.infra.git_client import GitRepository, parse_commit_object, parse_signature
from histguard.services.orchestrator import DeploymentOrchestrator
from histguard.services.purge_service import HistoryPurgeEngine
from histguard.services.verification import VerificationProbe

from .conftest import git, requires_git


class TestParsing:

    def test_parse_signature(self):
        sig = parse_signature("Ada Lovelace <ada@example.com> 1700000000 +0100")
        assert sig.name == "Ada Lovelace"
        assert sig.email == "ada@example.com"
        assert sig.when == "1700000000 +0100"

    def test_parse_commit_object(self):
        raw = (
            b"tree 4b825dc642cb6eb9a060e54bf8d69288fbee4904\n"
            b"parent 1111111111111111111111111111111111111111\n"
            b"parent 2222222222222222222222222222222222222222\n"
            b"author A <a@x> 1700000000 +0000\n"
            b"committer C <c@x> 1700000060 +0000\n"
            b"gpgsig -----BEGIN PGP SIGNATURE-----\n"
            b" abc\n"
            b" -----END PGP SIGNATURE-----\n"
            b"\n"
            b"Merge things\n\nBody\n"
        )
        parents, author, committer, message, encoding = parse_commit_object(raw)
        assert parents == ("1" * 40, "2" * 40)
        assert author.name == "A"
        assert committer.when == "1700000060 +0000"
        assert message == "Merge things\n\nBody\n"
        assert encoding is None

    def test_non_utf8_message_kept_byte_for_byte(self):
        body = "Café crème\n".encode("latin-1")
        raw = (
            b"tree 4b825dc642cb6eb9a060e54bf8d69288fbee4904\n"
            b"author A <a@x> 1700000000 +0000\n"
            b"committer C <c@x> 1700000060 +0000\n"
            b"encoding ISO-8859-1\n"
            b"\n" + body
        )
        _, _, _, message, encoding = parse_commit_object(raw)
        assert encoding == "ISO-8859-1"
        assert message.encode("utf-8", errors="surrogateescape") == body


@requires_git
class TestGitRepository:

    def test_history(self, git_repo):
        repo = GitRepository(str(git_repo))
        revisions = repo.list_revisions()

        assert [r.message.strip() for r in revisions] == ["Initial commit", "Add config", "Update readme"]
        assert revisions[0].parents == ()
        assert revisions[2].parents == (revisions[1].id,)
        assert revisions[1].author.name == "Test User"
        assert "secret.env" in revisions[2].tree
        assert repo.read_tree(revisions[2].id, "secret.env") == b"TOKEN=abc123\n"
        assert repo.read_tree(revisions[0].id, "secret.env") is None
        assert repo.head_ref() == "refs/heads/main"
        assert repo.is_ancestor(revisions[0].id, revisions[2].id)
        assert not repo.is_ancestor(revisions[2].id, revisions[0].id)

    def test_metadata_dir_inside_git_dir(self, git_repo):
        repo = GitRepository(str(git_repo))
        assert repo.is_git_repo()
        assert repo.metadata_dir == (git_repo / ".git" / "histguard").resolve()

    def test_not_a_repository(self, tmp_path):
        plain = tmp_path / "plain"
        plain.mkdir()
        assert not GitRepository(str(plain)).is_git_repo()

    def test_dirty_ignores_untracked(self, git_repo):
        repo = GitRepository(str(git_repo))
        (git_repo / "notes.txt").write_text("scratch\n")
        assert not repo.is_dirty()
        (git_repo / "README.md").write_text("changed\n")
        assert repo.is_dirty()

    def test_write_revision_keeps_metadata(self, git_repo):
        repo = GitRepository(str(git_repo))
        original = repo.list_revisions()[1]

        tree = {p: e for p, e in original.tree.items() if p != "secret.env"}
        written = repo.write_revision(tree, original.parents, original.meta)

        reread = repo.get_revision(written.id)
        assert "secret.env" not in reread.tree
        assert reread.author == original.author
        assert reread.committer == original.committer
        assert reread.message == original.message
        assert reread.parents == original.parents

    def test_update_ref_compare_and_swap(self, git_repo):
        repo = GitRepository(str(git_repo))
        first, _, tip = repo.list_revisions()
        with pytest.raises(RewriteConflict):
            repo.update_ref("refs/heads/main", first.id, old_id=first.id)
        repo.update_ref("refs/heads/main", first.id, old_id=tip.id)
        assert repo.resolve_ref("refs/heads/main") == first.id

    def test_commit_files(self, git_repo):
        repo = GitRepository(str(git_repo))
        repo.write_worktree_file(".gitignore", b"/secret.env\n")
        rev = repo.commit_files([".gitignore"], "Ignore secrets\n")
        assert repo.resolve_ref("HEAD") == rev.id
        assert repo.read_tree(rev.id, ".gitignore") == b"/secret.env\n"
        assert not repo.is_dirty()

    def test_remote_configuration(self, git_repo):
        repo = GitRepository(str(git_repo))
        repo.set_remote("origin", "https://git.example.com/a.git")
        repo.set_remote("origin", "https://git.example.com/b.git")
        assert repo.get_remote("origin") == "https://git.example.com/b.git"
        assert repo.list_remotes() == {"origin": "https://git.example.com/b.git"}
        repo.remove_remote("origin")
        assert repo.get_remote("origin") is None


@requires_git
class TestPurgeWithGit:

    def test_purge_removes_path_from_history(self, git_repo):
        repo = GitRepository(str(git_repo))
        first = repo.list_revisions()[0]

        result = HistoryPurgeEngine(repo).purge(PurgeSpec.for_paths(["secret.env"]))

        assert result.rewritten == 2
        assert result.mapping[first.id] == first.id
        assert git(git_repo, "log", "--all", "--format=%H", "--", "secret.env") == ""
        assert VerificationProbe(repo).confirm_absent("secret.env")
        # The file itself stays on disk, now untracked
        assert (git_repo / "secret.env").exists()
        assert not repo.is_dirty()

    def test_annotated_tag_rewritten(self, git_repo):
        git(git_repo, "tag", "-a", "v1", "-m", "release", "HEAD~1")
        repo = GitRepository(str(git_repo))
        assert "refs/tags/v1" in repo.list_refs()

        result = HistoryPurgeEngine(repo).purge(PurgeSpec.for_paths(["secret.env"]))

        assert "refs/tags/v1" in result.ref_updates
        assert git(git_repo, "cat-file", "-t", "refs/tags/v1") == "commit"
        assert "secret.env" not in repo.get_revision(repo.resolve_ref("refs/tags/v1")).tree

    def test_remote_tracking_refs_and_stash_rewritten(self, git_repo, tmp_path):
        bare = tmp_path / "remote.git"
        git(tmp_path, "init", "-q", "--bare", str(bare))
        git(git_repo, "remote", "add", "origin", str(bare))
        git(git_repo, "push", "-q", "origin", "main")
        git(git_repo, "fetch", "-q", "origin")
        git(git_repo, "remote", "set-head", "origin", "main")
        (git_repo / "README.md").write_text("work in progress\n")
        git(git_repo, "stash", "-q")
        repo = GitRepository(str(git_repo))
        refs = repo.list_refs()
        assert "refs/remotes/origin/main" in refs
        assert "refs/stash" in refs
        assert "refs/remotes/origin/HEAD" not in refs

        result = HistoryPurgeEngine(repo).purge(PurgeSpec.for_paths(["secret.env"]))

        assert "refs/remotes/origin/main" in result.ref_updates
        assert "refs/stash" in result.ref_updates
        assert git(git_repo, "log", "--all", "--format=%H", "--", "secret.env") == ""
        assert VerificationProbe(repo).confirm_absent("secret.env")
        assert git(git_repo, "symbolic-ref", "refs/remotes/origin/HEAD") == "refs/remotes/origin/main"

    def test_non_utf8_message_survives_rewrite(self, git_repo, tmp_path):
        message_file = tmp_path / "message.txt"
        message_file.write_bytes("Café crème\n".encode("latin-1"))
        (git_repo / "notes.txt").write_text("notes\n")
        git(git_repo, "add", "notes.txt")
        git(git_repo, "-c", "i18n.commitEncoding=ISO-8859-1", "commit", "-q", "-F", str(message_file))
        repo = GitRepository(str(git_repo))
        assert repo.get_revision(repo.resolve_ref("HEAD")).encoding == "ISO-8859-1"

        HistoryPurgeEngine(repo).purge(PurgeSpec.for_paths(["secret.env"]))

        raw = subprocess.run(["git", "cat-file", "commit", "HEAD"], cwd=str(git_repo),
                             capture_output=True, check=True).stdout
        assert b"\nencoding ISO-8859-1\n" in raw
        assert raw.endswith(b"\n\n" + "Café crème\n".encode("latin-1"))
        assert "secret.env" not in repo.get_revision(repo.resolve_ref("HEAD")).tree

    def test_rollback_restores_refs(self, git_repo):
        repo = GitRepository(str(git_repo))
        before = repo.resolve_ref("HEAD")
        engine = HistoryPurgeEngine(repo)
        result = engine.purge(PurgeSpec.for_paths(["secret.env"]))

        engine.rollback(result)

        assert repo.resolve_ref("HEAD") == before
        assert not repo.is_dirty()


@requires_git
class TestPushAndFetch:

    @pytest.fixture
    def bare(self, tmp_path):
        path = tmp_path / "remote.git"
        git(tmp_path, "init", "-q", "--bare", str(path))
        return path

    def test_push_then_fetch(self, git_repo, bare):
        repo = GitRepository(str(git_repo))
        repo.set_remote("origin", str(bare))
        tip = repo.resolve_ref("refs/heads/main")

        outcome = repo.push("origin", "refs/heads/main")

        assert outcome.ok
        assert outcome.new_tip == tip
        assert repo.fetch("origin")["refs/heads/main"] == tip

    def test_rewritten_history_needs_force(self, git_repo, bare):
        repo = GitRepository(str(git_repo))
        repo.set_remote("origin", str(bare))
        old_tip = repo.resolve_ref("refs/heads/main")
        assert repo.push("origin", "refs/heads/main").ok

        HistoryPurgeEngine(repo).purge(PurgeSpec.for_paths(["secret.env"]))
        new_tip = repo.resolve_ref("refs/heads/main")

        rejected = repo.push("origin", "refs/heads/main")
        assert not rejected.ok
        assert rejected.rejected
        assert repo.fetch("origin")["refs/heads/main"] == old_tip

        stale = repo.push("origin", "refs/heads/main", force=True, expected_remote="1" * 40)
        assert not stale.ok

        forced = repo.push("origin", "refs/heads/main", force=True, expected_remote=old_tip)
        assert forced.ok
        assert forced.forced
        assert repo.fetch("origin")["refs/heads/main"] == new_tip


@requires_git
class TestOrchestratorWithGit:

    def test_failed_ignore_commit_leaves_nothing_staged(self, git_repo, config, monkeypatch):
        repo = GitRepository(str(git_repo))
        before = repo.resolve_ref("HEAD")
        real_run = repo._run

        def run(args, **kwargs):
            if args[0] == "commit":
                raise GitCommandError(["git"] + args, 128, "Author identity unknown")
            return real_run(args, **kwargs)

        monkeypatch.setattr(repo, "_run", run)
        orchestrator = DeploymentOrchestrator(repo, config=config)

        report = orchestrator.execute(orchestrator.plan_purge(PurgeSpec.for_paths(["secret.env"])))

        assert report.failed_step == "ignore-update"
        assert report.exit_code == exit_codes.FATAL
        assert report.rollback_order == ["ignore-update", "purge"]
        assert repo.resolve_ref("HEAD") == before
        assert not (git_repo / ".gitignore").exists()
        assert git(git_repo, "diff", "--cached", "--name-only") == ""
        assert not repo.is_dirty()
