import json

import click

from ..cli_utils import Session, handle_errors, pass_session
from ..config import get_config_path, get_default_config, save_config
from ..exit_codes import RefusedError


@click.group("config")
def config_cmd():
    """Configuration management commands."""
    pass


@config_cmd.command("show")
@click.option("--pretty", is_flag=True, help="Display as formatted JSON instead of single-line JSONL")
@click.option("--path", is_flag=True, help="Show the config file path being used")
@pass_session
def show_config(session: Session, pretty, path):
    """Show the current configuration with all merges applied.

    By default, outputs single-line JSON (JSONL format).
    Use --pretty for human-readable formatted output.
    Use --path to see which config file is being used.
    """
    if path:
        config_path = session.config_path or get_config_path()
        print(json.dumps({"config_path": str(config_path)}))
        return

    if pretty:
        print(json.dumps(session.config, indent=2, ensure_ascii=False))
    else:
        print(json.dumps(session.config, ensure_ascii=False))


@config_cmd.command("init")
@click.option("--output", "-o", type=click.Path(), help="Where to write (default: ~/.histguard/config.json)")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
@pass_session
@handle_errors
def init_config(session: Session, output, force):
    """Write the default configuration to a file (JSON, or YAML by suffix)."""
    from pathlib import Path

    target = Path(output) if output else (Path(session.config_path) if session.config_path else get_config_path())
    if target.exists() and not force:
        raise RefusedError(f"{target} already exists (use --force to overwrite)")
    written = save_config(get_default_config(), target)
    click.echo(f"Configuration written to {written}")
