"""
Tests for the verification probe.
"""

import pytest

from histguard.domain.purge import PredicateKind, PurgeSpec
from histguard.domain.remote import RemoteEndpoint, RetargetRecord
from histguard.exceptions import NetworkTimeout
from histguard.services.purge_service import HistoryPurgeEngine
from histguard.services.verification import VerificationProbe

from .conftest import MIRROR_URL, ORIGIN_URL


class TestConfirmAbsent:

    def test_present_in_history_not_just_tip(self, repo, history):
        # The tip no longer has secret.env, revision 2 still does
        assert "secret.env" not in repo.head_tree()
        assert not VerificationProbe(repo).confirm_absent("secret.env")

    def test_directory_prefix(self, repo):
        repo.commit({"config/prod/secrets.env": b"x"}, "Add")
        probe = VerificationProbe(repo)
        assert not probe.confirm_absent("config")
        assert probe.confirm_absent("conf")

    def test_spec_reports_remaining_paths(self, repo):
        repo.commit({"a.pem": b"1", "b/c.pem": b"2", "d.txt": b"3"}, "Add")
        spec = PurgeSpec(patterns=("*.pem",), kind=PredicateKind.GLOB)
        probe = VerificationProbe(repo)
        assert probe.confirm_absent_spec(spec) == ["a.pem", "b/c.pem"]
        HistoryPurgeEngine(repo).purge(spec)
        assert probe.confirm_absent_spec(spec) == []

    def test_confirm_rewrite(self, repo, history):
        result = HistoryPurgeEngine(repo).purge(PurgeSpec.for_paths(["secret.env"]))
        probe = VerificationProbe(repo)
        assert probe.confirm_rewrite(result)

        # A later commit on top still counts
        repo.commit({"more.txt": b"m"}, "More")
        assert probe.confirm_rewrite(result)

        # A ref pointing elsewhere does not
        repo.refs["refs/heads/main"] = history[0].id
        assert not probe.confirm_rewrite(result)


class TestRemoteChecks:

    def test_confirm_remote_matches(self, repo, origin, history):
        probe = VerificationProbe(repo, sleep=lambda s: None)
        endpoint = RemoteEndpoint("origin", ORIGIN_URL)
        assert probe.confirm_remote_matches(endpoint, history[2].id, "refs/heads/main")
        assert not probe.confirm_remote_matches(endpoint, history[1].id, "refs/heads/main")
        assert probe.last_observed == history[2].id

    def test_default_ref_is_checked_out_branch(self, repo, origin, history):
        probe = VerificationProbe(repo, sleep=lambda s: None)
        assert probe.observe_remote(RemoteEndpoint("origin", ORIGIN_URL)) == history[2].id

    def test_transient_fetch_failures_retried_with_backoff(self, repo, origin, history):
        delays = []
        probe = VerificationProbe(repo, retries=3, backoff_seconds=0.5, sleep=delays.append)
        origin.fail_fetches = 2
        assert probe.confirm_remote_matches(RemoteEndpoint("origin", ORIGIN_URL), history[2].id)
        assert delays == [0.5, 1.0]
        assert origin.fetch_attempts == 3

    def test_retries_exhausted(self, repo, origin):
        probe = VerificationProbe(repo, retries=2, backoff_seconds=0, sleep=lambda s: None)
        origin.fail_fetches = 5
        with pytest.raises(NetworkTimeout):
            probe.observe_remote(RemoteEndpoint("origin", ORIGIN_URL))
        assert origin.fetch_attempts == 2

    def test_confirm_retarget(self, repo):
        repo.set_remote("origin", MIRROR_URL)
        probe = VerificationProbe(repo)
        assert probe.confirm_retarget(RetargetRecord("origin", ORIGIN_URL, MIRROR_URL))
        assert not probe.confirm_retarget(RetargetRecord("origin", MIRROR_URL, ORIGIN_URL))
