import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

LOG_FILE_NAME = "session.log"
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_cache_directory() -> str:
    """Directory that holds per-run session logs.

    A source checkout (pyproject.toml somewhere above this file) keeps logs in a
    ``cache`` folder next to it. Installed copies use %LOCALAPPDATA% on Windows and
    XDG_CACHE_HOME (or ~/.cache) elsewhere. The directory is created if missing.
    """
    for parent in Path(__file__).resolve().parents:
        if (parent / "pyproject.toml").is_file():
            cache_dir = parent / "cache"
            cache_dir.mkdir(exist_ok=True)
            return str(cache_dir)

    if os.name == "nt":
        cache_dir = os.path.join(os.environ.get("LOCALAPPDATA", os.path.expanduser("~")), "jarvis_voice", "cache")
    else:
        cache_dir = os.path.join(os.environ.get("XDG_CACHE_HOME", os.path.expanduser("~/.cache")), "jarvis_voice")
    os.makedirs(cache_dir, exist_ok=True)
    return cache_dir


def get_log_dir_for_run(base_dir: Optional[str] = None) -> str:
    """Create ``<base>/logs/<YYYYMMDD_HHMMSS>`` for this session and return it."""
    run_dir = os.path.join(base_dir or get_cache_directory(), "logs", datetime.now().strftime("%Y%m%d_%H%M%S"))
    os.makedirs(run_dir, exist_ok=True)
    return run_dir


class LoggingConfigModel(BaseModel):
    """Logging settings for a voice session.

    Attributes:
        level: Root log level.
        format: Record format passed to logging.Formatter.
        enable_logs: Master switch. When False nothing is logged anywhere.
        log_to_file: Also write a per-run session.log under the cache directory.
        log_dir: Base directory for run logs (defaults to the cache directory).
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO", description="Root log level")
    format: str = Field(default=DEFAULT_LOG_FORMAT, description="Log record format")
    enable_logs: bool = Field(default=True, description="Master switch for console and file logging")
    log_to_file: bool = Field(default=True, description="Write session.log for each run")
    log_dir: Optional[str] = Field(default=None, description="Base directory for run logs")


def setup_logging(config: LoggingConfigModel) -> Optional[str]:
    """Configure the root logger for a session run.

    Returns:
        Path of the session log file, or None when no file is written.
    """
    if not config.enable_logs:
        logging.basicConfig(level=logging.CRITICAL + 1, handlers=[logging.NullHandler()], force=True)
        return None

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file_path = None
    if config.log_to_file:
        log_file_path = os.path.join(get_log_dir_for_run(config.log_dir), LOG_FILE_NAME)
        handlers.append(logging.FileHandler(log_file_path, encoding="utf-8"))

    logging.basicConfig(level=config.level, format=config.format, handlers=handlers, force=True)
    logging.getLogger(__name__).debug(f"Logging configured: level={config.level}, file={log_file_path}")
    return log_file_path
