"""
Credential resolution for histguard.

Auth bindings name where a token lives (env:NAME, file:PATH). Tokens are
resolved only when a push or fetch needs them, cached in memory for the
life of the process, and never written to disk or to a log record.
"""

import base64
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Set

from ..domain.remote import AuthBinding
from ..exceptions import MissingCredential

logger = logging.getLogger(__name__)

REDACTED = "***"


@dataclass(frozen=True)
class Credential:
    """A resolved token. repr() never shows the secret."""
    username: str
    token: str = field(repr=False)

    def basic_auth_header(self) -> str:
        raw = f"{self.username}:{self.token}".encode('utf-8')
        return "Authorization: Basic " + base64.b64encode(raw).decode('ascii')

    def git_env(self) -> Dict[str, str]:
        """
        Environment that hands the token to git without argv or config files.
        """
        return {
            'GIT_TERMINAL_PROMPT': '0',
            'GIT_CONFIG_COUNT': '1',
            'GIT_CONFIG_KEY_0': 'http.extraHeader',
            'GIT_CONFIG_VALUE_0': self.basic_auth_header(),
        }

    def __str__(self) -> str:
        return f"Credential(username={self.username!r}, token={REDACTED})"


class RedactingFilter(logging.Filter):
    """Masks known secrets in log records."""

    def __init__(self, resolver: 'CredentialResolver'):
        super().__init__()
        self.resolver = resolver

    def filter(self, record: logging.LogRecord) -> bool:
        secrets = self.resolver.secrets()
        if not secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in secrets:
            redacted = redacted.replace(secret, REDACTED)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class CredentialResolver:
    """
    Lazily resolves and caches auth bindings.

    Reads are safe from multiple threads. Call invalidate() after rotating
    a credential.

    Example:
        resolver = CredentialResolver()
        cred = resolver.resolve(AuthBinding("env:GITHUB_TOKEN"))
    """

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self._environ = environ
        self._cache: Dict[str, Credential] = {}
        self._lock = threading.RLock()

    def _read(self, binding: AuthBinding) -> Optional[str]:
        if binding.scheme == 'env':
            environ = self._environ if self._environ is not None else os.environ
            return environ.get(binding.target) or None
        path = Path(binding.target).expanduser()
        try:
            lines = path.read_text().splitlines()
        except OSError:
            return None
        return lines[0].strip() if lines and lines[0].strip() else None

    def resolve(self, binding: AuthBinding) -> Credential:
        """
        Resolve a binding to a credential.

        Raises:
            MissingCredential: when the referenced token is not available
        """
        with self._lock:
            cached = self._cache.get(binding.reference)
            if cached is not None and cached.username == binding.username:
                return cached
            token = self._read(binding)
            if not token:
                raise MissingCredential(f"Auth binding {binding.reference} did not resolve to a token")
            cred = Credential(username=binding.username, token=token)
            self._cache[binding.reference] = cred
            logger.debug(f"Resolved auth binding {binding.reference}")
            return cred

    def invalidate(self, reference: Optional[str] = None) -> None:
        """Drop one cached credential, or all of them."""
        with self._lock:
            if reference is None:
                self._cache.clear()
            else:
                self._cache.pop(reference, None)

    def secrets(self) -> Set[str]:
        with self._lock:
            return {c.token for c in self._cache.values()}
