"""
Tests for the remote registry.
"""

import json

import pytest

from histguard.domain.remote import AuthBinding, RemoteRole
from histguard.exceptions import CredentialInUrl, DuplicateName, RoleConflict, UnknownRemote
from histguard.services.remote_registry import REGISTRY_FILENAME, RemoteRegistry

from .conftest import MIRROR_URL, ORIGIN_URL


@pytest.fixture
def registry(repo):
    return RemoteRegistry(repo)


class TestRegister:

    def test_register_sets_alias_and_persists(self, repo, registry):
        registry.register("origin", ORIGIN_URL, role=RemoteRole.PRIMARY)
        assert repo.get_remote("origin") == ORIGIN_URL
        assert registry.primary().name == "origin"

        # A fresh registry reads the same file
        again = RemoteRegistry(repo)
        assert again.resolve("origin").url == ORIGIN_URL

    def test_auth_reference_persisted_never_token(self, repo, registry):
        registry.register("mirror", MIRROR_URL, auth=AuthBinding("env:MIRROR_TOKEN"))
        stored = json.loads((repo.metadata_dir / REGISTRY_FILENAME).read_text())
        assert stored["version"] == 1
        assert stored["records"]["mirror"]["auth"]["reference"] == "env:MIRROR_TOKEN"

    def test_duplicate_name(self, registry):
        registry.register("origin", ORIGIN_URL)
        with pytest.raises(DuplicateName):
            registry.register("origin", MIRROR_URL)

    def test_second_primary_conflicts(self, registry):
        registry.register("origin", ORIGIN_URL, role=RemoteRole.PRIMARY)
        with pytest.raises(RoleConflict) as exc_info:
            registry.register("mirror", MIRROR_URL, role=RemoteRole.PRIMARY)
        assert exc_info.value.current_primary == "origin"
        assert registry.find("mirror") is None

    def test_takeover_demotes_current_primary(self, registry):
        registry.register("origin", ORIGIN_URL, role=RemoteRole.PRIMARY)
        registry.register("mirror", MIRROR_URL, role=RemoteRole.PRIMARY, takeover=True)
        assert registry.primary().name == "mirror"
        assert registry.resolve("origin").role == RemoteRole.SECONDARY
        assert sum(1 for e in registry.endpoints() if e.is_primary) == 1

    def test_url_with_token_refused(self, repo, registry):
        with pytest.raises(CredentialInUrl):
            registry.register("origin", "https://ghp_abc123@github.com/me/app.git")
        assert repo.get_remote("origin") is None


class TestRetarget:

    def test_retarget_keeps_role_and_auth(self, repo, registry):
        registry.register("origin", ORIGIN_URL, auth=AuthBinding("env:T"), role=RemoteRole.PRIMARY)
        record = registry.retarget("origin", MIRROR_URL)
        assert record.old_url == ORIGIN_URL
        assert record.new_url == MIRROR_URL
        endpoint = registry.resolve("origin")
        assert endpoint.role == RemoteRole.PRIMARY
        assert endpoint.auth == AuthBinding("env:T")
        assert repo.get_remote("origin") == MIRROR_URL

    def test_retarget_unknown(self, registry):
        with pytest.raises(UnknownRemote):
            registry.retarget("nope", MIRROR_URL)

    def test_retarget_to_credential_url_refused(self, repo, registry):
        registry.register("origin", ORIGIN_URL)
        with pytest.raises(CredentialInUrl):
            registry.retarget("origin", "https://user:pw@example.com/a.git")
        assert repo.get_remote("origin") == ORIGIN_URL


class TestSync:

    def test_sync_imports_origin_as_primary(self, repo, registry):
        repo.set_remote("backup", MIRROR_URL)
        repo.set_remote("origin", ORIGIN_URL)
        imported = registry.sync_from_handle()
        assert [e.name for e in imported] == ["origin", "backup"]
        assert registry.primary().name == "origin"
        assert registry.resolve("backup").role == RemoteRole.SECONDARY

    def test_sync_skips_credential_urls(self, repo, registry):
        repo.set_remote("leaky", "https://user:pw@example.com/a.git")
        assert registry.sync_from_handle() == []
        assert registry.find("leaky") is None

    def test_unregister(self, repo, registry):
        registry.register("mirror", MIRROR_URL)
        registry.unregister("mirror")
        assert registry.find("mirror") is None
        assert repo.get_remote("mirror") is None
        with pytest.raises(UnknownRemote):
            registry.unregister("mirror")
