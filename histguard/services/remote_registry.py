"""
Remote registry service for histguard.

Tracks named endpoints with their role and auth binding, and keeps the
repository's own remote configuration in step with them. Endpoint
metadata is persisted in a FileStore; credentials never are.
"""

import logging
from typing import List, Optional

from ..domain.remote import AuthBinding, RemoteEndpoint, RemoteRole, RetargetRecord, url_has_credentials
from ..exceptions import CredentialInUrl, DuplicateName, RoleConflict, UnknownRemote
from ..infra.file_store import FileStore
from ..infra.repository import RepositoryHandle

logger = logging.getLogger(__name__)

REGISTRY_FILENAME = "remotes.json"


class RemoteRegistry:
    """
    Named remote endpoints for one repository.

    Invariant: at most one endpoint holds the primary role.

    Example:
        registry = RemoteRegistry(repo)
        registry.register("origin", "https://github.com/me/app.git", role=RemoteRole.PRIMARY)
        registry.register("mirror", "https://gitlab.com/me/app.git",
                          auth=AuthBinding("env:GITLAB_TOKEN"),
                          role=RemoteRole.DEPLOYMENT_TARGET)
    """

    def __init__(self, handle: RepositoryHandle, store: Optional[FileStore] = None):
        self.handle = handle
        self.store = store if store is not None else FileStore(handle.metadata_dir / REGISTRY_FILENAME)

    def _save(self, endpoint: RemoteEndpoint) -> None:
        self.store.set(endpoint.name, endpoint.to_dict())

    def endpoints(self) -> List[RemoteEndpoint]:
        return [RemoteEndpoint.from_dict(data) for _, data in sorted(self.store.read().items())]

    def find(self, name: str) -> Optional[RemoteEndpoint]:
        data = self.store.get(name)
        return RemoteEndpoint.from_dict(data) if data else None

    def resolve(self, name: str) -> RemoteEndpoint:
        """
        Look up an endpoint by name.

        Raises:
            UnknownRemote: no endpoint with that name
        """
        endpoint = self.find(name)
        if endpoint is None:
            raise UnknownRemote(name)
        return endpoint

    def primary(self) -> RemoteEndpoint:
        for endpoint in self.endpoints():
            if endpoint.is_primary:
                return endpoint
        raise UnknownRemote("<primary>")

    def _current_primary(self) -> Optional[RemoteEndpoint]:
        for endpoint in self.endpoints():
            if endpoint.is_primary:
                return endpoint
        return None

    def register(
        self,
        name: str,
        url: str,
        auth: Optional[AuthBinding] = None,
        role: RemoteRole = RemoteRole.SECONDARY,
        takeover: bool = False,
    ) -> RemoteEndpoint:
        """
        Register a new endpoint and configure it in the repository.

        Args:
            name: Unique endpoint name
            url: Credential-free URL
            auth: Token reference used at push time
            role: Endpoint role
            takeover: Demote the current primary to secondary instead of failing

        Raises:
            DuplicateName: the name is taken
            RoleConflict: another endpoint is primary and takeover is False
            CredentialInUrl: the URL embeds a secret
        """
        if url_has_credentials(url):
            raise CredentialInUrl(name)

        endpoint = RemoteEndpoint(name=name, url=url, auth=auth, role=role)
        # Demotion and registration land in one write
        with self.store.transaction() as records:
            if name in records:
                raise DuplicateName(name)
            if role == RemoteRole.PRIMARY:
                current = next((RemoteEndpoint.from_dict(data) for data in records.values()
                                if data.get('role') == RemoteRole.PRIMARY.value), None)
                if current is not None:
                    if not takeover:
                        raise RoleConflict(name, current.name)
                    records[current.name] = current.with_role(RemoteRole.SECONDARY).to_dict()
                    logger.info(f"Remote '{current.name}' demoted to secondary; '{name}' takes primary")
            records[name] = endpoint.to_dict()

        if self.handle.get_remote(name) != url:
            self.handle.set_remote(name, url)
        logger.info(f"Registered remote '{name}' ({role.value})")
        return endpoint

    def unregister(self, name: str, remove_alias: bool = True) -> RemoteEndpoint:
        """Forget an endpoint. The remote repository itself is untouched."""
        endpoint = self.resolve(name)
        self.store.delete(name)
        if remove_alias:
            self.handle.remove_remote(name)
        logger.info(f"Unregistered remote '{name}'")
        return endpoint

    def retarget(self, name: str, new_url: str) -> RetargetRecord:
        """
        Point an existing alias at a new URL.

        Role and auth binding are preserved. Only the local alias changes;
        nothing on either remote is deleted.

        Raises:
            UnknownRemote: no endpoint with that name
            CredentialInUrl: the new URL embeds a secret
        """
        endpoint = self.resolve(name)
        if url_has_credentials(new_url):
            raise CredentialInUrl(name)
        old_url = self.handle.get_remote(name) or endpoint.url
        self._save(endpoint.with_url(new_url))
        self.handle.set_remote(name, new_url)
        record = RetargetRecord(name=name, old_url=old_url, new_url=new_url)
        logger.info(f"Retargeted remote '{name}'")
        return record

    def sync_from_handle(self) -> List[RemoteEndpoint]:
        """
        Import remotes the repository knows that the registry does not.

        The first imported remote becomes primary when none exists yet,
        preferring 'origin'. URLs with embedded credentials are skipped.
        """
        imported = []
        remotes = self.handle.list_remotes()
        names = sorted(remotes, key=lambda n: (n != 'origin', n))
        for name in names:
            if name in self.store:
                continue
            url = remotes[name]
            if url_has_credentials(url):
                logger.warning(f"Skipping remote '{name}': its URL embeds credentials")
                continue
            role = RemoteRole.PRIMARY if self._current_primary() is None else RemoteRole.SECONDARY
            endpoint = RemoteEndpoint(name=name, url=url, role=role)
            self._save(endpoint)
            imported.append(endpoint)
        return imported
