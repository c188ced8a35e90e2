"""
Audit log command for histguard.

Every plan run (including dry runs and refusals) appends one record.
"""

import click

from ..cli_utils import Session, handle_errors, pass_session
from ..output import emit


@click.command('log')
@click.option('--limit', '-n', type=int, default=20, show_default=True, help='Show only the newest N records')
@click.option('--failed', is_flag=True, help='Only runs that did not commit')
@click.option('--json', 'output_json', is_flag=True, help='Output as JSONL')
@pass_session
@handle_errors
def log_handler(session: Session, limit, failed, output_json):
    """Show recent plan runs from the audit log."""
    audit = session.audit_log()
    if audit is None:
        click.echo("Audit log is disabled (audit.enabled = false)", err=True)
        return

    records = audit.records(limit=None if failed else limit)
    if failed:
        records = [r for r in records if r.get('outcome') not in ('committed', 'dry_run')]
        records = records[-limit:] if limit else records

    if output_json:
        emit(records, output_json=True)
        return

    rows = []
    for record in records:
        rows.append({
            'timestamp': record.get('timestamp', ''),
            'plan': record.get('plan', ''),
            'outcome': record.get('outcome', ''),
            'exit_code': record.get('exit_code', ''),
            'steps': [s.get('step') for s in record.get('steps', [])],
            'failed_step': record.get('failed_step', ''),
            'rollback_order': record.get('rollback_order', []),
        })
    emit(rows, columns=['timestamp', 'plan', 'outcome', 'exit_code', 'steps', 'failed_step', 'rollback_order'],
         title='Audit log')
