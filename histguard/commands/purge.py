"""
Purge command for histguard.

Rewrites local history so the given paths are gone from every reachable
revision, then records them in the ignore file.
"""

import click

from ..cli_utils import Session, handle_errors, pass_session, run_plan


@click.command('purge')
@click.option('--path', 'paths', multiple=True, required=True,
              help='Path to purge (repeatable). With --glob a pattern, with --content a regex')
@click.option('--glob', 'use_glob', is_flag=True, help='Treat --path values as glob patterns')
@click.option('--content', 'use_content', is_flag=True, help='Treat --path values as content regexes')
@click.option('--keep-only', is_flag=True, help='Keep only the matched paths, purge everything else')
@click.option('--prune-empty/--keep-empty', default=None,
              help='Drop revisions whose only change was purged (default from config)')
@click.option('--no-ignore-update', is_flag=True, help='Do not add purged paths to the ignore file')
@click.option('--dry-run', is_flag=True, help='Show the plan without changing anything')
@click.option('--json', 'output_json', is_flag=True, help='Output as JSONL')
@pass_session
@handle_errors
def purge_handler(session: Session, paths, use_glob, use_content, keep_only, prune_empty,
                  no_ignore_update, dry_run, output_json):
    """
    Remove paths from the whole local history.

    Refuses to run on a dirty working tree. Revisions that never touched
    the purged paths keep their identifiers.

    Examples:

        histguard purge --path config/secrets.env

        histguard purge --glob --path '*.pem' --dry-run

        histguard purge --keep-only --path src --path README.md
    """
    spec = session.purge_spec(paths, use_glob=use_glob, use_content=use_content,
                              keep_only=keep_only, prune_empty=prune_empty)
    purge_config = session.config.get('purge', {})
    update_ignore = purge_config.get('update_ignore_file', True) and not no_ignore_update

    orchestrator = session.orchestrator()
    plan = orchestrator.plan_purge(
        spec,
        update_ignore=update_ignore,
        ignore_file=purge_config.get('ignore_file', '.gitignore'),
        dry_run=dry_run,
    )
    run_plan(orchestrator, plan, output_json=output_json)
