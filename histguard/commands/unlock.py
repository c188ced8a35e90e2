"""
Unlock command for histguard.

Removes operation and purge locks left behind by a process that died.
A lock whose owner is still running is never removed.
"""

import click

from ..cli_utils import Session, handle_errors, pass_session
from ..exit_codes import RefusedError
from ..infra.lock import AdvisoryLock
from ..services.orchestrator import OPERATION_LOCK_NAME
from ..services.purge_service import PURGE_LOCK_NAME


@click.command('unlock')
@pass_session
@handle_errors
def unlock_handler(session: Session):
    """Break stale repository locks."""
    metadata_dir = session.handle.metadata_dir
    removed = 0
    for name in (OPERATION_LOCK_NAME, PURGE_LOCK_NAME):
        lock = AdvisoryLock(metadata_dir / name, purpose=name)
        if not lock.path.exists():
            continue
        if lock.break_stale():
            click.echo(f"Removed stale lock {lock.path}")
            removed += 1
            continue
        owner = lock.owner() or {}
        raise RefusedError(
            f"Lock {lock.path} is held by running process {owner.get('pid')} ({owner.get('purpose', 'unknown')})"
        )
    if not removed:
        click.echo("No locks to remove")
