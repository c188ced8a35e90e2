"""
Common CLI utilities for consistent command behavior.

- Session: config, repository and services for one invocation
- handle_errors: maps histguard exceptions to exit codes
- run_plan: runs a plan with progress output and exits with its code
"""

import json
import logging
import sys
from functools import wraps
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.markup import escape

from .config import configure_logging, load_config
from .domain.plan import DeploymentPlan
from .domain.purge import PredicateKind, PurgeMode, PurgeSpec
from .exceptions import HistGuardError
from .exit_codes import INTERRUPTED, CommandError, RefusedError, get_exit_code_for_exception
from .infra.credentials import CredentialResolver, RedactingFilter
from .infra.git_client import GitRepository
from .infra.repository import RepositoryHandle
from .output import emit_error, emit_report
from .services.orchestrator import DeploymentOrchestrator, open_audit_log
from .services.remote_registry import RemoteRegistry
from .services.verification import VerificationProbe

logger = logging.getLogger(__name__)


def install_redaction(credentials: CredentialResolver) -> None:
    """Mask resolved tokens in everything the root handlers emit."""
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RedactingFilter) for f in handler.filters):
            handler.addFilter(RedactingFilter(credentials))


class Session:
    """
    Everything a command needs for one invocation.

    The repository is opened lazily so that commands such as
    `config show` work outside a checkout. Tests pass a ready-made
    handle (for example an InMemoryRepository) instead of a path.
    """

    def __init__(
        self,
        repo_path: str = ".",
        config_path: Optional[str] = None,
        verbose: bool = False,
        handle: Optional[RepositoryHandle] = None,
        config: Optional[Dict[str, Any]] = None,
        credentials: Optional[CredentialResolver] = None,
    ):
        self.repo_path = repo_path
        self.config_path = config_path
        self.config = config if config is not None else load_config(config_path)
        configure_logging(self.config, verbose)
        self.credentials = credentials or CredentialResolver()
        install_redaction(self.credentials)
        self._handle = handle
        self._registry: Optional[RemoteRegistry] = None

    @property
    def handle(self) -> RepositoryHandle:
        if self._handle is None:
            repo = GitRepository(
                self.repo_path,
                metadata_dir_name=self.config['general'].get('metadata_dir_name', 'histguard'),
            )
            if not repo.is_git_repo():
                raise RefusedError(f"Not a git repository: {repo.path}")
            self._handle = repo
        return self._handle

    @property
    def registry(self) -> RemoteRegistry:
        if self._registry is None:
            self._registry = RemoteRegistry(self.handle)
        return self._registry

    def orchestrator(self) -> DeploymentOrchestrator:
        return DeploymentOrchestrator(
            self.handle,
            config=self.config,
            registry=self.registry,
            credentials=self.credentials,
        )

    def probe(self) -> VerificationProbe:
        network = self.config.get('network', {})
        return VerificationProbe(
            self.handle,
            credentials=self.credentials,
            retries=network.get('retries', 3),
            backoff_seconds=network.get('backoff_seconds', 1.0),
            timeout=network.get('timeout_seconds'),
        )

    def audit_log(self):
        return open_audit_log(self.config, self.handle, self.credentials)

    def purge_spec(
        self,
        paths,
        use_glob: bool = False,
        use_content: bool = False,
        keep_only: bool = False,
        prune_empty: Optional[bool] = None,
    ) -> PurgeSpec:
        """Build a PurgeSpec from command-line flags and the purge config section."""
        if use_glob and use_content:
            raise RefusedError("--glob and --content cannot be combined")
        purge_config = self.config.get('purge', {})
        kind = PredicateKind.EXACT
        if use_glob:
            kind = PredicateKind.GLOB
        elif use_content:
            kind = PredicateKind.CONTENT
        try:
            return PurgeSpec(
                patterns=tuple(paths),
                kind=kind,
                mode=PurgeMode.KEEP_ONLY if keep_only else PurgeMode.REMOVE_PATH,
                match_directories=purge_config.get('match_directories', True),
                prune_empty=purge_config.get('prune_empty', False) if prune_empty is None else prune_empty,
            )
        except ValueError as e:
            raise RefusedError(f"Invalid purge pattern: {e}")


pass_session = click.make_pass_decorator(Session)


def handle_errors(func):
    """
    Run a command body and turn errors into exit codes.

    Errors are printed to stderr as JSON when the command was given --json,
    otherwise as a one-line message.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        output_json = kwargs.get('output_json', False)
        try:
            return func(*args, **kwargs)
        except click.ClickException:
            raise
        except KeyboardInterrupt:
            _report_error("Interrupted by user", "KeyboardInterrupt", INTERRUPTED, output_json)
            sys.exit(INTERRUPTED)
        except (HistGuardError, CommandError) as e:
            code = get_exit_code_for_exception(e)
            _report_error(str(e), type(e).__name__, code, output_json)
            sys.exit(code)

    return wrapper


def _report_error(message: str, error_type: str, code: int, output_json: bool) -> None:
    if output_json:
        emit_error(message, type=error_type, context={'exit_code': code})
    else:
        Console(stderr=True).print(f"[red]Error:[/red] {escape(message)}")


def run_plan(orchestrator: DeploymentOrchestrator, plan: DeploymentPlan, output_json: bool = False) -> None:
    """Run a plan, stream its progress, print the report and exit with its code."""
    console = Console(stderr=True)
    for message in orchestrator.run(plan):
        if output_json:
            print(json.dumps({'progress': message}, ensure_ascii=False), flush=True)
        else:
            console.print(f"[dim]{escape(message)}[/dim]")

    report = orchestrator.last_report
    emit_report(report, output_json=output_json, console=console)
    sys.exit(report.exit_code)
