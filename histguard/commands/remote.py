"""
Remote registry commands for histguard.

Endpoints carry a role and an optional auth binding (env:NAME or
file:PATH). The token itself is never stored; it is read at push time.
"""

import click

from ..cli_utils import Session, handle_errors, pass_session, run_plan
from ..domain.remote import AuthBinding, RemoteRole
from ..exit_codes import RefusedError
from ..output import emit

ROLE_CHOICES = [role.value for role in RemoteRole]


def _row(endpoint) -> dict:
    data = endpoint.to_dict()
    data['auth'] = endpoint.auth.reference if endpoint.auth else ''
    return data


@click.group('remote')
def remote_cmd():
    """Manage named remote endpoints."""
    pass


@remote_cmd.command('add')
@click.argument('name')
@click.argument('url')
@click.option('--auth', 'auth_ref', help='Credential reference, e.g. env:GITHUB_TOKEN or file:~/.tokens/gitlab')
@click.option('--username', default='x-access-token', show_default=True,
              help='Username sent with the token')
@click.option('--role', type=click.Choice(ROLE_CHOICES), default=RemoteRole.SECONDARY.value,
              show_default=True, help='Endpoint role')
@click.option('--takeover', is_flag=True, help='Demote the current primary instead of failing')
@click.option('--json', 'output_json', is_flag=True, help='Output as JSONL')
@pass_session
@handle_errors
def add_remote(session: Session, name, url, auth_ref, username, role, takeover, output_json):
    """Register remote NAME at URL."""
    auth = None
    if auth_ref:
        try:
            auth = AuthBinding(reference=auth_ref, username=username)
        except ValueError as e:
            raise RefusedError(str(e))
    session.registry.sync_from_handle()
    endpoint = session.registry.register(name, url, auth=auth, role=RemoteRole(role), takeover=takeover)
    emit([_row(endpoint)], output_json=output_json, columns=['name', 'role', 'url', 'auth'])


@remote_cmd.command('list')
@click.option('--json', 'output_json', is_flag=True, help='Output as JSONL')
@pass_session
@handle_errors
def list_remotes(session: Session, output_json):
    """List registered endpoints (importing any new git remotes first)."""
    session.registry.sync_from_handle()
    rows = [_row(e) for e in session.registry.endpoints()]
    emit(rows, output_json=output_json, columns=['name', 'role', 'url', 'auth'], title='Remotes')


@remote_cmd.command('remove')
@click.argument('name')
@click.option('--keep-alias', is_flag=True, help='Keep the git remote, only forget the endpoint')
@click.option('--json', 'output_json', is_flag=True, help='Output as JSONL')
@pass_session
@handle_errors
def remove_remote(session: Session, name, keep_alias, output_json):
    """Forget endpoint NAME. The remote repository itself is untouched."""
    session.registry.sync_from_handle()
    endpoint = session.registry.unregister(name, remove_alias=not keep_alias)
    emit([{'name': endpoint.name, 'removed': True}], output_json=output_json)


@remote_cmd.command('retarget')
@click.argument('name')
@click.argument('url')
@click.option('--json', 'output_json', is_flag=True, help='Output as JSONL')
@pass_session
@handle_errors
def retarget_remote(session: Session, name, url, output_json):
    """
    Point remote NAME at URL, keeping its role and auth binding.

    Runs as an audited plan: the alias is changed, then verified, and
    restored if verification fails.
    """
    orchestrator = session.orchestrator()
    orchestrator.registry.sync_from_handle()
    plan = orchestrator.builder("retarget").retarget(name, url).verify().build()
    run_plan(orchestrator, plan, output_json=output_json)
