#!/usr/bin/env python3

import os
import json
import tomllib
from pathlib import Path

import logging
import sys

import yaml

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stderr) # Default to stderr
    ]
)
logger = logging.getLogger("histguard")

CONFIG_FILENAMES = ['config.json', 'config.toml', 'config.yaml', 'config.yml']


def get_config_path():
    """Get the path to the configuration file.

    Checks in order:
    1. HISTGUARD_CONFIG environment variable
    2. ~/.histguard/ directory
    """
    if 'HISTGUARD_CONFIG' in os.environ:
        path = Path(os.environ['HISTGUARD_CONFIG'])
        if path.exists():
            return path

    histguard_dir = Path.home() / '.histguard'
    for filename in CONFIG_FILENAMES:
        path = histguard_dir / filename
        if path.exists() and path.stat().st_size > 10:  # Not empty/trivial
            return path

    # If no file exists, return default path for saving
    return histguard_dir / 'config.json'


def _read_config_file(config_path: Path) -> dict:
    suffix = config_path.suffix.lower()
    if suffix == '.toml':
        with open(config_path, 'rb') as f:
            return tomllib.load(f)
    if suffix in ('.yaml', '.yml'):
        with open(config_path, 'r') as f:
            return yaml.safe_load(f) or {}
    with open(config_path, 'r') as f:
        return json.load(f)


def load_config(config_path=None):
    """Load configuration from file.

    Args:
        config_path: Explicit config file; defaults to get_config_path()
    """
    config_path = Path(config_path) if config_path else get_config_path()

    # Start with default config
    config = get_default_config()

    if config_path.exists():
        try:
            file_config = _read_config_file(config_path)
            config = merge_configs(config, file_config)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Error loading config from {config_path}: {e}")

    # Apply environment variable overrides
    config = apply_env_overrides(config)

    return config


def save_config(config, config_path=None):
    """Save configuration to file (JSON or YAML, by suffix)."""
    config_path = Path(config_path) if config_path else get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    if config_path.suffix.lower() == '.toml':
        logger.warning("Saving TOML is not supported. Saving as JSON instead.")
        config_path = config_path.with_suffix('.json')

    if config_path.suffix.lower() in ['.yaml', '.yml']:
        with open(config_path, 'w') as f:
            yaml.safe_dump(config, f, default_flow_style=False)
    else:
        with open(config_path, 'w') as f:
            json.dump(config, f, indent=2)

    logger.info(f"Configuration saved to {config_path}")
    return config_path


def get_default_config():
    """Get default configuration."""
    return {
        "general": {
            "metadata_dir_name": "histguard",  # Created inside the repository's .git directory
            "default_remote": "origin",
            "default_branch": "",               # Empty means the checked-out branch
        },
        "network": {
            "timeout_seconds": 120,
            "retries": 3,                       # Read-only probes only (fetch/verify)
            "backoff_seconds": 1.0,
        },
        "purge": {
            "match_directories": True,          # A path pattern also covers everything below it
            "prune_empty": False,               # Also drop revisions whose only change was purged
            "update_ignore_file": True,
            "ignore_file": ".gitignore",
        },
        "audit": {
            "enabled": True,
            "path": "",                         # Empty means <metadata dir>/audit.jsonl
        },
        "logging": {
            "level": "INFO",
            "format": "%(levelname)s: %(message)s"
        },
    }


def merge_configs(base_config, override_config):
    """
    Recursively merge two configuration dictionaries.

    Args:
        base_config (dict): Base configuration
        override_config (dict): Configuration to merge/override with

    Returns:
        dict: Merged configuration
    """
    merged = base_config.copy()

    for key, value in override_config.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = value

    return merged


def _coerce_env_value(value: str):
    if value.lower() in ('true', 'yes', 'on'):
        return True
    if value.lower() in ('false', 'no', 'off'):
        return False
    if value.isdigit():
        return int(value)
    try:
        return float(value)
    except ValueError:
        return value


def apply_env_overrides(config):
    """
    Apply environment variable overrides to configuration.
    Environment variables follow the pattern: HISTGUARD_SECTION_KEY
    For example: HISTGUARD_NETWORK_TIMEOUT_SECONDS=30
    """
    env_prefix = "HISTGUARD_"

    for env_key, value in os.environ.items():
        if not env_key.startswith(env_prefix) or env_key == 'HISTGUARD_CONFIG':
            continue

        key_parts = env_key[len(env_prefix):].lower().split('_')
        typed_value = _coerce_env_value(value)

        current_level = config
        i = 0
        while i < len(key_parts):
            # Longest config key that is a prefix of the remaining parts
            best_match_len = 0
            matched_key = None

            for config_key in current_level.keys():
                config_key_parts = config_key.split('_')
                if key_parts[i : i + len(config_key_parts)] == config_key_parts:
                    if len(config_key_parts) > best_match_len:
                        best_match_len = len(config_key_parts)
                        matched_key = config_key

            if not matched_key:
                break

            if i + best_match_len == len(key_parts):
                current_level[matched_key] = typed_value
                break

            if isinstance(current_level[matched_key], dict):
                current_level = current_level[matched_key]
                i += best_match_len
            else:
                break

    return config


def configure_logging(config, verbose: bool = False):
    """Apply the logging section of the config to the histguard logger."""
    level_name = "DEBUG" if verbose else str(config.get("logging", {}).get("level", "INFO")).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    fmt = config.get("logging", {}).get("format")
    if fmt:
        for handler in logging.getLogger().handlers:
            handler.setFormatter(logging.Formatter(fmt))
