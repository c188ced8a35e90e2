"""
Deploy and revert-origin commands for histguard.

deploy runs the full plan: optional purge, ignore-file update, optional
retarget, push and verification. revert-origin points a remote alias back
at its original URL after a migration.
"""

import click

from ..cli_utils import Session, handle_errors, pass_session, run_plan
from ..services.orchestrator import DeployOptions


@click.command('deploy')
@click.option('--target', '-t', help='Remote to push to (default: the primary remote)')
@click.option('--force', is_flag=True, help='Allow history-replacing (non-fast-forward) pushes')
@click.option('--ref', 'refs', multiple=True, help='Ref to push (repeatable, default: current branch)')
@click.option('--purge-path', 'purge_paths', multiple=True, help='Purge this path before pushing (repeatable)')
@click.option('--glob', 'use_glob', is_flag=True, help='Treat --purge-path values as glob patterns')
@click.option('--retarget-url', help='Point the target alias at this URL before pushing')
@click.option('--no-ignore-update', is_flag=True, help='Do not add purged paths to the ignore file')
@click.option('--dry-run', is_flag=True, help='Show the plan without changing anything')
@click.option('--json', 'output_json', is_flag=True, help='Output as JSONL')
@pass_session
@handle_errors
def deploy_handler(session: Session, target, force, refs, purge_paths, use_glob, retarget_url,
                   no_ignore_update, dry_run, output_json):
    """
    Push to a remote, optionally purging and retargeting first.

    Without --force a push that is not a fast-forward is refused with
    exit code 1 and the remote is left untouched.

    Examples:

        histguard deploy --target mirror

        histguard deploy --target origin --force --purge-path secrets.env

        histguard deploy --target origin --retarget-url https://git.example.com/team/app.git
    """
    purge_config = session.config.get('purge', {})
    spec = session.purge_spec(purge_paths, use_glob=use_glob) if purge_paths else None

    options = DeployOptions(
        target=target or None,
        refs=tuple(refs),
        purge=spec,
        update_ignore=purge_config.get('update_ignore_file', True) and not no_ignore_update,
        ignore_file=purge_config.get('ignore_file', '.gitignore'),
        retarget_url=retarget_url,
        allow_history_rewrite=force,
        dry_run=dry_run,
    )
    orchestrator = session.orchestrator()
    plan = orchestrator.plan_deploy(options)
    run_plan(orchestrator, plan, output_json=output_json)


@click.command('revert-origin')
@click.option('--url', required=True, help='URL to point the remote back at')
@click.option('--remote', help='Remote alias to revert (default: the primary remote)')
@click.option('--json', 'output_json', is_flag=True, help='Output as JSONL')
@pass_session
@handle_errors
def revert_origin_handler(session: Session, url, remote, output_json):
    """
    Point the primary (or named) remote back at URL.

    Only the local alias changes; nothing is deleted on either remote.
    """
    orchestrator = session.orchestrator()
    plan = orchestrator.plan_revert_origin(url, remote=remote)
    run_plan(orchestrator, plan, output_json=output_json)
