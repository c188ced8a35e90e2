"""
Exception taxonomy for histguard.

Every error raised by the services falls into one of five categories,
which decide how the CLI reports it and which exit code it gets:

- Policy: a refusable precondition (dirty state, non-fast-forward push
  without consent). Nothing was mutated.
- Conflict: a concurrent operation or a duplicate registration.
  Nothing was mutated.
- Transient: a network timeout. Only read-only probes retry these.
- Fatal: a step failed and rollback was attempted.
- Divergence: remote state does not match expectation after a push.
  Requires a human-directed re-run.
"""

from typing import Optional


class HistGuardError(Exception):
    """Base class for all histguard errors."""

    category = "fatal"

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.step = step


# Policy

class PolicyError(HistGuardError):
    category = "policy"


class DirtyWorkingState(PolicyError):
    """Repository has uncommitted local modifications."""

    def __init__(self, message: str = "Working tree has uncommitted changes; commit or stash them first"):
        super().__init__(message)


class NonFastForwardRejected(PolicyError):
    """Push would replace remote history and the plan did not allow it."""

    def __init__(self, remote: str, ref: str, remote_tip: Optional[str] = None):
        message = (
            f"Push of {ref} to {remote} is not a fast-forward; "
            f"re-run with --force to allow history rewrite"
        )
        super().__init__(message)
        self.remote = remote
        self.ref = ref
        self.remote_tip = remote_tip


class CredentialInUrl(PolicyError):
    """A remote URL carries an embedded password or token."""

    def __init__(self, name: str):
        super().__init__(
            f"URL for remote '{name}' embeds credentials; "
            f"use an auth binding such as env:GITHUB_TOKEN instead"
        )
        self.name = name


class MissingCredential(PolicyError):
    """An auth binding could not be resolved."""


# Conflict

class ConflictError(HistGuardError):
    category = "conflict"


class OperationInProgress(ConflictError):
    """Another histguard operation holds the repository lock."""

    def __init__(self, lock_path: str, owner: Optional[str] = None):
        detail = f" (held by {owner})" if owner else ""
        super().__init__(f"Another operation is in progress on this repository{detail}: {lock_path}")
        self.lock_path = lock_path
        self.owner = owner


class DuplicateName(ConflictError):
    def __init__(self, name: str):
        super().__init__(f"Remote '{name}' is already registered")
        self.name = name


class RoleConflict(ConflictError):
    def __init__(self, name: str, current_primary: str):
        super().__init__(
            f"Cannot make '{name}' primary: '{current_primary}' already holds the primary role "
            f"(use takeover to replace it)"
        )
        self.name = name
        self.current_primary = current_primary


class RewriteConflict(ConflictError):
    """Another history rewrite interleaved with this one."""


class UnknownRemote(HistGuardError):
    category = "conflict"

    def __init__(self, name: str):
        super().__init__(f"Unknown remote: '{name}'")
        self.name = name


# Transient

class TransientError(HistGuardError):
    category = "transient"


class NetworkTimeout(TransientError):
    def __init__(self, remote: str, timeout: float):
        super().__init__(f"Timed out after {timeout}s talking to remote '{remote}'")
        self.remote = remote
        self.timeout = timeout


# Fatal

class FatalError(HistGuardError):
    category = "fatal"


class GitCommandError(FatalError):
    """A git command exited non-zero."""

    def __init__(self, args, returncode: int, stderr: str = ""):
        command = " ".join(args) if isinstance(args, (list, tuple)) else str(args)
        super().__init__(f"git command failed ({returncode}): {command}: {stderr.strip()}")
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr


class PushFailed(FatalError):
    """Push failed and the remote is confirmed unchanged."""


class StepFailed(FatalError):
    """A plan step raised an unexpected error."""


# Divergence

class DivergenceError(HistGuardError):
    category = "divergence"


class PartialPushDivergence(DivergenceError):
    """The remote is in neither the pre-push nor the expected state."""

    def __init__(self, remote: str, ref: str, expected: Optional[str], observed: Optional[str]):
        super().__init__(
            f"Remote '{remote}' {ref} is at {observed or 'unknown'}, expected {expected}; "
            f"manual intervention required"
        )
        self.remote = remote
        self.ref = ref
        self.expected = expected
        self.observed = observed


class VerificationFailed(DivergenceError):
    """A post-operation check did not hold."""


# Warnings (reported, never raised by the purge engine)

class AmbiguousPredicate(HistGuardError):
    """A purge predicate matched nothing in any revision."""

    category = "warning"

    def __init__(self, patterns):
        joined = ", ".join(patterns)
        super().__init__(f"Purge predicate matched nothing in history: {joined}")
        self.patterns = tuple(patterns)
