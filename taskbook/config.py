# taskbook/config.py
# Description: Configuration management for the taskbook application.
#
# Imports
import copy
import os
import tomllib
from pathlib import Path
from typing import Dict, Any, Optional
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
#
#######################################################################################################################
#
# Functions:

# --- Path to the configuration file ---
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "taskbook" / "config.toml"

BASE_DATA_DIR = Path.home() / ".local" / "share" / "taskbook"

CONFIG_TOML_CONTENT = """
# Configuration for taskbook
# This file is created automatically on first run. Edit values below to override the defaults.

[general]
log_level = "INFO" # DEBUG, INFO, WARNING, ERROR, CRITICAL

[api]
base_url = "https://api.todoist.com/api/v1"
# Prefer the environment variable over storing the token in this file.
token = ""
token_env_var = "TODOIST_API_TOKEN"
timeout_seconds = 15

[database]
cache_db_path = "~/.local/share/taskbook/taskbook_cache.db"

[sync]
# Cached resources older than this are revalidated in the background.
cache_ttl_seconds = 3600
# Periodic Fetch-then-Flush cycle.
interval_seconds = 300
# Submit queued mutations as one batched command request instead of one call each.
use_batch = false
batch_size = 20
# Number of projects refreshed at the same time during a sync cycle.
refresh_concurrency = 2

[logging]
log_filename = "taskbook_app.log"
file_log_level = "INFO"
log_max_bytes = 10485760 # 10 MB
log_backup_count = 5
"""

try:
    DEFAULT_CONFIG_FROM_TOML: Dict[str, Any] = tomllib.loads(CONFIG_TOML_CONTENT)
except tomllib.TOMLDecodeError as e:
    logger.critical(f"FATAL: Could not parse internal CONFIG_TOML_CONTENT: {e}. Application cannot start correctly.")
    DEFAULT_CONFIG_FROM_TOML = {}


# --- Helper for deep merging dictionaries ---
def deep_merge_dicts(base: Dict, update: Dict) -> Dict:
    """Recursively merges update_dict into base_dict."""
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = deep_merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


# --- Primary Configuration Loading Logic ---
_CONFIG_CACHE: Optional[Dict[str, Any]] = None


def load_settings(force_reload: bool = False, config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Loads settings from ~/.config/taskbook/config.toml (or `config_path`).
    If the file doesn't exist, it's created with default values.
    """
    global _CONFIG_CACHE
    if _CONFIG_CACHE is not None and not force_reload:
        return _CONFIG_CACHE

    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    loaded_config = copy.deepcopy(DEFAULT_CONFIG_FROM_TOML)

    if not path.exists():
        logger.info(f"Config file not found at {path}. Creating with default values.")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write(CONFIG_TOML_CONTENT)
            logger.info(f"Created default config file at {path}")
        except OSError as e:
            logger.error(f"Could not create default config file {path}: {e}. Using internal defaults.")
    else:
        logger.info(f"Attempting to load config from: {path}")
        try:
            with open(path, "rb") as f:
                user_config_from_file = tomllib.load(f)
            loaded_config = deep_merge_dicts(loaded_config, user_config_from_file)
            logger.info(f"Successfully loaded and merged config from {path}")
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Error decoding TOML config file {path}: {e}. Using internal defaults.")
        except OSError as e:
            logger.error(f"Could not read config file {path}: {e}. Using internal defaults.")

    _CONFIG_CACHE = loaded_config
    logger.debug(f"load_settings returning config with top-level keys: {list(loaded_config.keys())}")
    return _CONFIG_CACHE


# --- Setting Getter ---
def get_cli_setting(section: str, key: str, default: Any = None) -> Any:
    """Helper to get a specific setting from the loaded configuration."""
    config = load_settings()
    section_data = config.get(section)
    if isinstance(section_data, dict):
        return section_data.get(key, default)
    return default


def get_api_token() -> Optional[str]:
    """The environment variable named by [api].token_env_var wins over [api].token."""
    env_var = get_cli_setting("api", "token_env_var", "TODOIST_API_TOKEN")
    token = os.environ.get(env_var) if env_var else None
    if token:
        return token
    token = get_cli_setting("api", "token", "")
    if not token:
        logger.warning(f"No API token configured. Set ${env_var} or [api].token in {DEFAULT_CONFIG_PATH}.")
        return None
    return token


def get_sync_settings() -> Dict[str, Any]:
    """Returns the [sync] section with defaults filled in and values coerced to their types."""
    defaults = DEFAULT_CONFIG_FROM_TOML.get("sync", {})
    section = load_settings().get("sync", {})
    merged = deep_merge_dicts(defaults, section if isinstance(section, dict) else {})
    try:
        return {
            "cache_ttl_seconds": float(merged["cache_ttl_seconds"]),
            "interval_seconds": float(merged["interval_seconds"]),
            "use_batch": bool(merged["use_batch"]),
            "batch_size": max(1, int(merged["batch_size"])),
            "refresh_concurrency": max(1, int(merged["refresh_concurrency"])),
        }
    except (KeyError, TypeError, ValueError) as e:
        logger.error(f"Invalid [sync] settings ({e}). Falling back to defaults.")
        return {
            "cache_ttl_seconds": float(defaults.get("cache_ttl_seconds", 3600)),
            "interval_seconds": float(defaults.get("interval_seconds", 300)),
            "use_batch": bool(defaults.get("use_batch", False)),
            "batch_size": int(defaults.get("batch_size", 20)),
            "refresh_concurrency": int(defaults.get("refresh_concurrency", 2)),
        }


# --- Database and Log File Path Getters ---
def get_cache_db_path() -> Path:
    default_db_path_str = DEFAULT_CONFIG_FROM_TOML.get("database", {}).get("cache_db_path", str(BASE_DATA_DIR / "taskbook_cache.db"))
    db_path_str = get_cli_setting("database", "cache_db_path", default_db_path_str)
    return Path(db_path_str).expanduser().resolve()


def get_cli_log_file_path() -> Path:
    default_log_filename = DEFAULT_CONFIG_FROM_TOML.get("logging", {}).get("log_filename", "taskbook_app.log")
    log_filename = get_cli_setting("logging", "log_filename", default_log_filename)
    log_file_path = get_cache_db_path().parent / log_filename
    try:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Could not create log directory {log_file_path.parent}: {e}")
    return log_file_path

#
# End of config.py
#######################################################################################################################
