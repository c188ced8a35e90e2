#!/usr/bin/env python3

import click

from histguard.cli_utils import Session
from histguard.commands.audit import log_handler
from histguard.commands.config import config_cmd
from histguard.commands.deploy import deploy_handler, revert_origin_handler
from histguard.commands.purge import purge_handler
from histguard.commands.remote import remote_cmd
from histguard.commands.unlock import unlock_handler
from histguard.commands.verify import verify_handler


@click.group()
@click.version_option(package_name="histguard")
@click.option('--repo', '-C', 'repo_path', default='.', type=click.Path(file_okay=False),
              help='Repository to operate on (default: current directory)')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='Config file (default: $HISTGUARD_CONFIG or ~/.histguard/config.*)')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
@click.pass_context
def cli(ctx, repo_path, config_path, verbose):
    """histguard - Safe history rewrites and multi-remote deployment.

    Purges paths from git history, retargets remotes and pushes, with
    rollback on failure and an audit record for every run.

    Exit codes: 0 success, 1 refused, 2 failed and rolled back,
    3 remote divergence (manual intervention required).
    """
    if ctx.obj is None:
        ctx.obj = Session(repo_path=repo_path, config_path=config_path, verbose=verbose)


# History and deployment
cli.add_command(purge_handler)
cli.add_command(deploy_handler)
cli.add_command(revert_origin_handler)
cli.add_command(verify_handler)

# Registry and housekeeping
cli.add_command(remote_cmd)
cli.add_command(log_handler)
cli.add_command(config_cmd)
cli.add_command(unlock_handler)


def main():
    cli()

if __name__ == "__main__":
    main()
