"""
Verify command for histguard.

Read-only checks: a path is absent from every reachable revision, and a
remote ref is where it is expected to be.
"""

import sys

import click

from ..cli_utils import Session, handle_errors, pass_session
from ..exit_codes import DIVERGENCE, SUCCESS, RefusedError
from ..output import emit


@click.command('verify')
@click.option('--path', 'paths', multiple=True, help='Path that must be absent from history (repeatable)')
@click.option('--glob', 'use_glob', is_flag=True, help='Treat --path values as glob patterns')
@click.option('--remote', help='Remote whose tip to check against --expect')
@click.option('--expect', help='Expected revision (or local ref) for the remote tip')
@click.option('--ref', help='Remote ref to check (default: current branch)')
@click.option('--json', 'output_json', is_flag=True, help='Output as JSONL')
@pass_session
@handle_errors
def verify_handler(session: Session, paths, use_glob, remote, expect, ref, output_json):
    """
    Check that purged paths are gone and remotes match.

    Exits 0 when every check holds and 3 when any does not.

    Examples:

        histguard verify --path config/secrets.env

        histguard verify --remote mirror --expect main
    """
    if not paths and not remote:
        raise RefusedError("Nothing to verify: give --path and/or --remote")
    if bool(remote) != bool(expect):
        raise RefusedError("--remote and --expect must be given together")

    probe = session.probe()
    results = []

    if paths and use_glob:
        for pattern in paths:
            remaining = probe.confirm_absent_spec(session.purge_spec([pattern], use_glob=True))
            results.append({'check': 'absent', 'path': pattern, 'ok': not remaining,
                            'found': remaining})
    else:
        for path in paths:
            results.append({'check': 'absent', 'path': path, 'ok': probe.confirm_absent(path)})

    if remote:
        endpoint = session.registry.find(remote)
        if endpoint is None:
            session.registry.sync_from_handle()
            endpoint = session.registry.resolve(remote)
        expected = session.handle.resolve_ref(expect) or expect
        ref = ref or session.handle.head_ref()
        ok = probe.confirm_remote_matches(endpoint, expected, ref)
        results.append({'check': 'remote', 'path': f"{remote} {ref}", 'ok': ok,
                        'expected': expected, 'observed': probe.last_observed})

    emit(results, output_json=output_json, columns=['check', 'path', 'ok'], title='Verification')
    sys.exit(SUCCESS if all(r['ok'] for r in results) else DIVERGENCE)
