# Logging_Config.py
# Description: Logging setup. Loguru records are forwarded into the standard logging tree so that
#  the storage layer (stdlib logging) and the sync/service layers (loguru) end up in the same handlers.
#
# Imports
import logging
import logging.handlers
from pathlib import Path
from typing import Any, Dict, Optional
#
# 3rd-Party Imports
from loguru import logger as loguru_logger
from textual.logging import TextualHandler
#
# Local Imports
from taskbook.config import get_cli_log_file_path, get_cli_setting
#
########################################################################################################################
#
# Functions:

_LOG_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s:%(lineno)d - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LOGURU_TO_STD_LEVELS = {
    "TRACE": logging.DEBUG, "DEBUG": logging.DEBUG, "INFO": logging.INFO,
    "SUCCESS": logging.INFO, "WARNING": logging.WARNING, "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def sink_to_standard_logging(message) -> None:
    """Loguru sink that re-emits each record on the stdlib logger of the same name."""
    record = message.record
    std_level = _LOGURU_TO_STD_LEVELS.get(record["level"].name, logging.INFO)
    std_logger = logging.getLogger(record["name"])
    if record["exception"]:
        std_logger.log(std_level, record["message"], exc_info=record["exception"])
    else:
        std_logger.log(std_level, record["message"])


def _level_from_name(name: Any, default: int) -> int:
    return getattr(logging, str(name).upper(), default)


def configure_logging(app_config: Dict[str, Any], log_file_path: Optional[Path] = None) -> logging.Logger:
    """
    Sets up the root logger: loguru forwarding, a TextualHandler for the dev console and a
    RotatingFileHandler. Safe to call more than once; existing handlers are replaced.

    Args:
        app_config: The loaded settings dict (see `config.load_settings`).
        log_file_path: Overrides the configured log file location (used by tests).

    Returns:
        The configured root logger.
    """
    for noisy in ("httpx", "httpcore", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    loguru_logger.remove()
    loguru_logger.add(
        sink_to_standard_logging,
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}",
        level="TRACE",
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        try:
            handler.close()
        except OSError:
            pass

    root_level = _level_from_name(app_config.get("general", {}).get("log_level", "INFO"), logging.INFO)
    root_logger.setLevel(root_level)

    console_handler = TextualHandler()
    console_handler.setLevel(root_level)
    console_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
    root_logger.addHandler(console_handler)

    # --- File logging ---
    try:
        file_path = Path(log_file_path) if log_file_path else get_cli_log_file_path()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        logging_section = app_config.get("logging", {})
        max_bytes = int(logging_section.get("log_max_bytes", get_cli_setting("logging", "log_max_bytes", 10485760)))
        backup_count = int(logging_section.get("log_backup_count", get_cli_setting("logging", "log_backup_count", 5)))
        file_level = _level_from_name(logging_section.get("file_log_level", "INFO"), logging.INFO)

        file_handler = logging.handlers.RotatingFileHandler(
            file_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
        root_logger.addHandler(file_handler)
        logging.info(f"Logging to file '{file_path}' at level {logging.getLevelName(file_level)}.")
    except (OSError, ValueError) as e:
        logging.warning(f"File logging disabled: {e}")

    # Root must be at least as verbose as its most verbose handler.
    handler_levels = [h.level for h in root_logger.handlers if h.level > 0]
    if handler_levels and root_logger.level > min(handler_levels):
        root_logger.setLevel(min(handler_levels))

    loguru_logger.debug("Loguru forwarding to standard logging is active.")
    return root_logger

#
# End of Logging_Config.py
########################################################################################################################
