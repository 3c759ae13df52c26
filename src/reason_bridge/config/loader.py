# File: reason_bridge/config/loader.py

"""Loads and manages the bridge configuration from multiple sources.

Settings are layered:
1. YAML defaults (`config.yml`), located via the `REASON_BRIDGE_CONFIG_FILE`
   environment variable, else by searching upwards for the project root
   marker (`pyproject.toml`), else in the current working directory.
2. A `.env` file loaded into the environment with python-dotenv.
3. Environment variable overrides for individual nested keys.

The editor may later push its own settings through
`workspace/didChangeConfiguration`; those are merged over the file defaults
with `merge_settings`. The loaded defaults are exposed as `APP_CONFIG`.
"""

import copy
import logging
import os
import pathlib
from typing import Any, Dict, List, Optional, Tuple, Type

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Default filenames
DEFAULT_CONFIG_FILENAME = "config.yml"
PROJECT_ROOT_MARKER = "pyproject.toml"

ENV_CONFIG_PATH = "REASON_BRIDGE_CONFIG_FILE"

DEFAULT_DEBOUNCE_LINTER_MS = 500
DEFAULT_MERLIN_PATH = "ocamlmerlin"
DEFAULT_LOG_LEVEL = "INFO"


def _optional_float(value: str) -> Optional[float]:
    """Converts an env string to float, treating 'none'/'' as no value."""
    if value.strip().lower() in ("", "none", "null"):
        return None
    return float(value)


# Format: (ENV_VARIABLE_NAME, [list, of, config, keys], target_type_for_conversion)
ENV_OVERRIDES: List[Tuple[str, List[str], Type]] = [
    ("REASON_DEBOUNCE_LINTER", ["reason", "debounce", "linter"], int),
    ("REASON_MERLIN_PATH", ["reason", "path", "ocamlmerlin"], str),
    ("REASON_MERLIN_TIMEOUT", ["reason", "merlin", "timeout"], _optional_float),
    ("REASON_BRIDGE_LOG_LEVEL", ["logging", "level"], str),
]


def _find_project_root(
    start_path: pathlib.Path, marker_filename: str = PROJECT_ROOT_MARKER
) -> Optional[pathlib.Path]:
    """Searches upward from start_path for a directory containing marker_filename.

    Args:
        start_path: The directory path to begin the search from.
        marker_filename: The filename to look for as the project root indicator.

    Returns:
        The Path of the directory containing the marker file, or None if the
        filesystem root is reached first.
    """
    current_path = start_path.resolve()
    while True:
        if (current_path / marker_filename).is_file():
            logger.debug(f"Found project root marker '{marker_filename}' at '{current_path}'")
            return current_path
        parent_path = current_path.parent
        if parent_path == current_path:
            logger.debug(
                f"Project root marker '{marker_filename}' not found searching from '{start_path}'."
            )
            return None
        current_path = parent_path


def _update_nested_dict(d: Dict[str, Any], keys: List[str], value: Any):
    """Sets a value in a nested dictionary, creating intermediate dicts.

    Logs an error and leaves `d` untouched at the conflicting level if a
    non-dict value sits where a dict is expected.
    """
    node = d
    for key in keys[:-1]:
        child = node.setdefault(key, {})
        if not isinstance(child, dict):
            logger.error(
                f"Config structure conflict: Expected dict at '{key}' "
                f"while setting path '{'.'.join(keys)}', but found type {type(child)}. "
                f"Cannot apply value '{value}'."
            )
            return
        node = child
    node[keys[-1]] = value


def _resolve_config_path() -> pathlib.Path:
    env_config_path_str = os.getenv(ENV_CONFIG_PATH)
    if env_config_path_str:
        logger.info(
            f"Using config path from environment variable {ENV_CONFIG_PATH}: '{env_config_path_str}'"
        )
        return pathlib.Path(env_config_path_str).resolve()

    project_root = _find_project_root(start_path=pathlib.Path(__file__).parent)
    if project_root:
        logger.debug(f"Determined project root: '{project_root}'")
        return (project_root / DEFAULT_CONFIG_FILENAME).resolve()

    logger.warning(
        f"Could not find project root marker '{PROJECT_ROOT_MARKER}'. "
        "Falling back to current working directory for config path."
    )
    return (pathlib.Path.cwd() / DEFAULT_CONFIG_FILENAME).resolve()


def load_configuration(
    config_path: Optional[pathlib.Path] = None,
    dotenv_path: Optional[str] = None,
    env_override_map: List[Tuple[str, List[str], Type]] = ENV_OVERRIDES,
) -> Dict[str, Any]:
    """Loads configuration layers: YAML defaults, .env, then env overrides.

    Args:
        config_path: Explicit path to the YAML file. If None, the path is
            resolved from the environment, the project root, or the CWD.
        dotenv_path: Explicit path to the .env file. If None, python-dotenv
            searches its standard locations.
        env_override_map: Which environment variables override which
            configuration keys, and the type to convert them to.

    Returns:
        The merged configuration dictionary. A missing YAML file yields an
        empty base; an unparsable one yields an empty dictionary.
    """
    config: Dict[str, Any] = {}
    effective_config_path = config_path or _resolve_config_path()

    try:
        with open(effective_config_path, encoding="utf-8") as f:
            loaded_yaml = yaml.safe_load(f)
            config = loaded_yaml if isinstance(loaded_yaml, dict) else {}
        logger.info(f"Loaded base config from '{effective_config_path}'.")
    except FileNotFoundError:
        logger.warning(f"Base config file '{effective_config_path}' not found.")
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML '{effective_config_path}': {e}", exc_info=True)
        return {}

    try:
        loaded_env = load_dotenv(dotenv_path=dotenv_path, override=False)
        if loaded_env:
            logger.info(".env file loaded into environment variables.")
        else:
            logger.debug(".env file not found or empty.")
    except OSError as e:
        logger.error(f"Error loading .env file: {e}", exc_info=True)

    override_count = 0
    for env_var, config_keys, target_type in env_override_map:
        env_value_str = os.getenv(env_var)
        if env_value_str is None:
            continue
        try:
            typed_value = target_type(env_value_str)
        except ValueError:
            logger.warning(
                f"Value override failed: Cannot convert env var '{env_var}' "
                f"value '{env_value_str}' to target type {target_type.__name__}."
            )
            continue
        _update_nested_dict(config, config_keys, typed_value)
        logger.info(
            f"Applied value override: '{'.'.join(config_keys)}' = '{typed_value}' "
            f"(from env '{env_var}')"
        )
        override_count += 1
    if override_count > 0:
        logger.info(f"Applied {override_count} environment variable value override(s).")

    return config


def merge_settings(base: Dict[str, Any], incoming: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Deep-merges editor-supplied settings over a base settings dictionary.

    Neither argument is mutated. Nested dictionaries are merged key by key;
    any other value in `incoming` replaces the base value.
    """
    merged = copy.deepcopy(base)
    if not isinstance(incoming, dict):
        return merged
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_settings(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _lookup(settings: Any, keys: List[str], default: Any = None) -> Any:
    """Reads a nested setting, returning `default` if any level is missing or not a dict."""
    node = settings
    for key in keys:
        if not isinstance(node, dict) or key not in node:
            return default
        node = node[key]
    return node


def get_debounce_delay(settings: Dict[str, Any]) -> float:
    """Returns the linter debounce delay in seconds.

    The setting `reason.debounce.linter` is expressed in milliseconds. Missing,
    non-numeric or negative values fall back to the default.
    """
    raw = _lookup(settings, ["reason", "debounce", "linter"], DEFAULT_DEBOUNCE_LINTER_MS)
    try:
        millis = float(raw)
    except (TypeError, ValueError):
        logger.warning(f"Invalid linter debounce '{raw}', using {DEFAULT_DEBOUNCE_LINTER_MS}ms.")
        millis = DEFAULT_DEBOUNCE_LINTER_MS
    if millis < 0:
        logger.warning(f"Negative linter debounce '{raw}', using {DEFAULT_DEBOUNCE_LINTER_MS}ms.")
        millis = DEFAULT_DEBOUNCE_LINTER_MS
    return millis / 1000.0


def get_merlin_path(settings: Dict[str, Any]) -> str:
    """Returns the configured ocamlmerlin executable."""
    path = _lookup(settings, ["reason", "path", "ocamlmerlin"])
    if not isinstance(path, str) or not path:
        return DEFAULT_MERLIN_PATH
    return path


def get_merlin_timeout(settings: Dict[str, Any]) -> Optional[float]:
    """Returns the transport timeout for one analyzer round-trip, or None."""
    timeout = _lookup(settings, ["reason", "merlin", "timeout"])
    if timeout is None:
        return None
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        logger.warning(f"Invalid merlin timeout '{timeout}', waiting indefinitely.")
        return None
    return float(timeout)


def get_log_level(settings: Dict[str, Any]) -> str:
    level = _lookup(settings, ["logging", "level"], DEFAULT_LOG_LEVEL)
    return level if isinstance(level, str) and level else DEFAULT_LOG_LEVEL


# Loaded once when this module is first imported.
APP_CONFIG: Dict[str, Any] = load_configuration()
