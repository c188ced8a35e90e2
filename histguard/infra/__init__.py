"""
Infrastructure layer for histguard.

Contains abstractions for external systems:
- RepositoryHandle: What the services need from a version-control repository
- GitRepository: RepositoryHandle backed by the git command line
- InMemoryRepository: RepositoryHandle held in dictionaries, for tests
- CredentialResolver: Push-time token lookup with log redaction
- AdvisoryLock: One operation per repository
- FileStore / AuditLog: JSON persistence and the append-only audit trail

These provide clean interfaces that can be swapped for testing.
"""

from .repository import PushOutcome, RepositoryHandle
from .git_client import GitRepository
from .memory_repo import InMemoryRemote, InMemoryRepository
from .credentials import Credential, CredentialResolver, RedactingFilter
from .lock import AdvisoryLock
from .file_store import FileStore
from .audit_log import AuditLog

__all__ = [
    'PushOutcome',
    'RepositoryHandle',
    'GitRepository',
    'InMemoryRemote',
    'InMemoryRepository',
    'Credential',
    'CredentialResolver',
    'RedactingFilter',
    'AdvisoryLock',
    'FileStore',
    'AuditLog',
]
