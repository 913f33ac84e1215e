"""Configuration system for PromptForge.

This module handles configuration loading, merging, and persistence. Supports
JSON and YAML formats with profile-based overrides and CLI-based
modifications.

Usage:
    config, config_file = load_config(
        config_path='promptforge.yaml',
        profile='fast',
        overrides={'generation.chunk_size': 5}
    )

Author:
    PromptForge Contributors
"""

import contextlib
import copy
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml

__author__ = 'PromptForge Contributors'
__all__ = [
    'DEFAULT_CONFIG',
    'merge_dicts',
    'find_config_file',
    'load_config_file',
    'save_config_file',
    'load_config',
    'parse_override_arg',
    'apply_key_path',
    'parse_set_string',
    'normalize_seconds',
    'get_api_key',
]

logger = logging.getLogger('promptforge')

DEFAULT_CONFIG: dict[str, Any] = {
    'models': {
        'text': 'gemini-2.5-flash',
        'image': 'gemini-3-pro-image-preview',
    },
    'generation': {
        'chunk_size': 10,
        'temperature': 1.0,
        'analysis_temperature': 0.2,
    },
    'repetition': {
        'window_items': 25,
        'window_chars': 80,
        'task_switch': 'carry',
    },
    'history': {
        'limit': 10,
    },
    'timeouts': {
        'prompts': 120,
        'media': 90,
        'sanitize': 60,
        'analysis': 120,
    },
    'media': {
        'provider': 'google',
        'aspect_ratio': '1:1',
        'resolution': '2k',
    },
    'api_keys': {
        'gemini': '',
        'wavespeed': '',
    },
    'storage': {
        'path': '~/.promptforge/state.yaml',
    },
}

API_KEY_ENV_VARS = {
    'gemini': 'GEMINI_API_KEY',
    'wavespeed': 'WAVESPEED_API_KEY',
}


def merge_dicts(base: dict, override: dict) -> dict:
    """Recursively merge two dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_dicts(result[key], value)
        else:
            result[key] = value

    return result


def find_config_file(custom_path: Optional[str] = None) -> Optional[Path]:
    """Find config file in order: custom, CWD promptforge.{json,yaml}, package promptforge.yaml."""
    if custom_path:
        path = Path(custom_path)
        if not path.exists():
            raise FileNotFoundError(f'Config file not found: {custom_path}')
        return path

    cwd = Path.cwd()
    if (json_config := cwd / 'promptforge.json').exists():
        return json_config

    if (yaml_config := cwd / 'promptforge.yaml').exists():
        return yaml_config

    script_dir = Path(__file__).parent
    if (package_config := script_dir / 'promptforge.yaml').exists():
        return package_config

    return None


def load_config_file(path: Path) -> dict:
    """Load config file (JSON or YAML)."""
    content = path.read_text(encoding='utf-8')

    if path.suffix in ['.json', '.JSON']:
        return json.loads(content)

    if path.suffix in ['.yaml', '.yml', '.YAML', '.YML']:
        return yaml.safe_load(content) or {}

    try:
        return yaml.safe_load(content) or {}
    except yaml.YAMLError:
        return json.loads(content)


def save_config_file(path: Path, config: dict) -> None:
    """Save config file (JSON or YAML)."""
    if path.suffix in ['.json', '.JSON']:
        content = json.dumps(config, indent=2)
    else:
        content = yaml.dump(config, default_flow_style=False, sort_keys=False)

    path.write_text(content, encoding='utf-8')


def load_config(
    config_path: Optional[str] = None,
    profile: Optional[str] = None,
    overrides: Optional[dict] = None,
    save_overrides: bool = False
) -> tuple[dict, Optional[Path]]:
    """Load configuration with optional profile and overrides."""
    default_config = copy.deepcopy(DEFAULT_CONFIG)

    config_file = find_config_file(config_path)

    if config_file:
        logger.info(f'Loading config: {config_file}')
        config = merge_dicts(default_config, load_config_file(config_file))
    else:
        logger.info('No config file found, using defaults')
        config = default_config
        config_file = None

    if profile:
        if 'profiles' in config and profile in config['profiles']:
            logger.info(f'Loading profile: {profile}')
            profile_config = config['profiles'][profile]
            base_config = {k: v for k, v in config.items() if k != 'profiles'}
            config = merge_dicts(base_config, profile_config)
        else:
            logger.warning(f'Profile "{profile}" not found in config')

    if overrides:
        logger.debug(f'Applying overrides: {overrides}')
        config = merge_dicts(config, overrides)

        if save_overrides and config_file:
            logger.info(f'Saving overrides to: {config_file}')
            save_config_file(config_file, config)

    return config, config_file


def parse_override_arg(arg: str) -> tuple[str, Any]:
    """Parse config override argument (key.path=value)."""
    if '=' not in arg:
        raise ValueError(f'Invalid override format (expected key=value): {arg}')

    key_path, value = arg.split('=', 1)

    with contextlib.suppress(json.JSONDecodeError, ValueError):
        value = json.loads(value)

    return key_path, value


def apply_key_path(config: dict, key_path: str, value: Any) -> dict:
    """Apply value to nested key path."""
    keys = key_path.split('.')
    current = config

    for key in keys[:-1]:
        if key not in current or not isinstance(current[key], dict):
            current[key] = {}
        current = current[key]

    current[keys[-1]] = value
    return config


def normalize_seconds(value: Any) -> float:
    """Normalize a timeout value ('90', '90s', '2m', 1.5) to seconds."""
    if isinstance(value, (int, float)):
        return float(value)

    match = re.fullmatch(r'\s*(\d+(?:\.\d+)?)\s*(ms|s|m)?\s*', str(value))
    if not match:
        raise ValueError(f'Invalid duration: {value}')

    number, unit = match.groups()
    seconds = float(number)
    if unit == 'ms':
        return seconds / 1000
    if unit == 'm':
        return seconds * 60
    return seconds


def parse_set_string(set_string: str) -> dict[str, Any]:
    """Parse space-separated key=value pairs with shorthand support.

    Shorthands:
        timeout=<duration>  sets every entry under ``timeouts``
        chunk=<n>           sets ``generation.chunk_size``
    """
    overrides = {}
    pairs = set_string.split()

    for pair in pairs:
        if '=' not in pair:
            continue

        key_path, value = pair.split('=', 1)

        with contextlib.suppress(json.JSONDecodeError, ValueError):
            value = json.loads(value)

        if key_path == 'timeout':
            for call in DEFAULT_CONFIG['timeouts']:
                overrides = apply_key_path(overrides, f'timeouts.{call}', normalize_seconds(value))
        elif key_path == 'chunk':
            overrides = apply_key_path(overrides, 'generation.chunk_size', int(value))
        elif key_path.startswith('timeouts.'):
            overrides = apply_key_path(overrides, key_path, normalize_seconds(value))
        else:
            overrides = apply_key_path(overrides, key_path, value)

    return overrides


def get_api_key(config: dict, service: str = 'gemini') -> Optional[str]:
    """Return an API key from the environment or config.

    Environment variables (GEMINI_API_KEY, WAVESPEED_API_KEY) win over config.
    """
    env_var = API_KEY_ENV_VARS.get(service)
    if env_var and (env_key := os.environ.get(env_var)):
        return env_key

    return (config.get('api_keys') or {}).get(service) or None
