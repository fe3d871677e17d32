"""
Logging Configuration Module.

Centralized stdlib logging setup for WebPilot-AI.

Features:
- Console handler at the configured level, optional DEBUG file handler
- simple, detailed and json line formats
- Per-module levels; ``DEBUG_AGENT`` raises the agent core to DEBUG
"""

import logging
import os
from pathlib import Path
from typing import Dict, Optional


def _get_logging_config() -> Dict[str, object]:
    """Read logging options from the server settings.

    The settings import is deferred to avoid circular imports during module
    initialization; environment variables are used when the server package
    is not importable.
    """
    try:
        from webpilot_ai.server.core.config import settings

        return {
            "log_level": settings.log_level.upper(),
            "log_format": settings.log_format,
            "log_file_dir": settings.log_file_dir,
            "enable_file_logging": settings.enable_file_logging,
            "debug_agent": settings.debug_agent,
        }
    except ImportError:
        return {
            "log_level": os.getenv("WEBPILOT_AI_LOG_LEVEL", "INFO").upper(),
            "log_format": os.getenv("LOG_FORMAT", "detailed"),
            "log_file_dir": os.getenv("LOG_FILE_DIR", "logs"),
            "enable_file_logging": os.getenv("ENABLE_FILE_LOGGING", "true").lower() in ("true", "1", "yes"),
            "debug_agent": os.getenv("DEBUG_AGENT", "false").lower() in ("true", "1", "yes"),
        }


_config = _get_logging_config()
LOG_LEVEL = str(_config["log_level"])
LOG_FORMAT = str(_config["log_format"])
LOG_FILE_DIR = str(_config["log_file_dir"])
ENABLE_FILE_LOGGING = bool(_config["enable_file_logging"])
DEBUG_AGENT = bool(_config["debug_agent"])


SIMPLE_FORMAT = "%(levelname)s - %(name)s - %(message)s"

DETAILED_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(funcName)s() - %(message)s"

JSON_FORMAT = (
    '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", '
    '"module": "%(filename)s", "function": "%(funcName)s", "line": %(lineno)d, '
    '"message": "%(message)s"}'
)

_FORMATS = {"json": JSON_FORMAT, "simple": SIMPLE_FORMAT, "detailed": DETAILED_FORMAT}


def _module_levels(debug_agent: bool) -> Dict[str, str]:
    agent_level = "DEBUG" if debug_agent else "INFO"
    return {
        # Agent core
        "webpilot_ai.agent_core": agent_level,
        "webpilot_ai.agent_core.planning": agent_level,
        "webpilot_ai.agent_core.runtime": agent_level,
        "webpilot_ai.agent_core.memory": agent_level,
        "webpilot_ai.agent_core.gateway": "INFO",
        "webpilot_ai.agent_core.repos": "INFO",
        # Server
        "webpilot_ai.server": "INFO",
        "webpilot_ai.server.api": "DEBUG" if debug_agent else "INFO",
        "webpilot_ai.server.services": "INFO",
        # Third-party libraries (reduce noise)
        "sqlalchemy": "WARNING",
        "sqlalchemy.engine": "WARNING",
        "sqlalchemy.pool": "WARNING",
        "httpx": "WARNING",
        "httpcore": "WARNING",
        "asyncio": "WARNING",
        "uvicorn": "INFO",
        "uvicorn.access": "INFO",
    }


MODULE_LOG_LEVELS = _module_levels(DEBUG_AGENT)


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    enable_file: bool = True,
) -> None:
    """
    Configure logging for the application.

    Args:
        log_level: Override default log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Override default format (simple, detailed, json)
        enable_file: Whether to enable file logging
    """
    level = (log_level or LOG_LEVEL).upper()
    fmt = log_format or LOG_FORMAT
    formatter = logging.Formatter(_FORMATS.get(fmt, DETAILED_FORMAT), datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # filtered at handler level

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    file_logging = enable_file and ENABLE_FILE_LOGGING
    if file_logging:
        Path(LOG_FILE_DIR).mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(Path(LOG_FILE_DIR) / "webpilot_ai.log")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    for module_name, module_level in MODULE_LOG_LEVELS.items():
        logging.getLogger(module_name).setLevel(module_level)

    root_logger.info(f"Logging configured: level={level}, format={fmt}, file_logging={file_logging}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: The module name (typically __name__)

    Returns:
        A configured logger instance
    """
    return logging.getLogger(name)
