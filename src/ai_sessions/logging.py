"""Logging configuration for ai-sessions.

Provides centralized logging setup with file output to ~/.cache/ai-sessions/logs/.
"""

import logging
import sys
from pathlib import Path

# Default log directory
DEFAULT_LOG_DIR = Path.home() / ".cache" / "ai-sessions" / "logs"


def setup_logging(
    name: str,
    log_dir: Path | None = None,
    level: int = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    """Configure logging for an ai-sessions component.

    Creates a logger with both file and optional console handlers.
    Log files are written to <log_dir>/<name>.log.

    Args:
        name: Logger name (used for log filename)
        log_dir: Directory for log files (defaults to ~/.cache/ai-sessions/logs/)
        level: Logging level (defaults to INFO)
        console: Whether to also log to stderr (defaults to True)

    Returns:
        Configured logger instance
    """
    if log_dir is None:
        log_dir = DEFAULT_LOG_DIR

    log_dir.mkdir(parents=True, exist_ok=True)

    # Handlers live on the package logger so every module logger inherits them
    root = logging.getLogger("ai_sessions")
    root.setLevel(level)

    logger = logging.getLogger(f"ai_sessions.{name}")

    # Avoid adding duplicate handlers if already configured
    if root.handlers:
        return logger

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = logging.FileHandler(log_dir / f"{name}.log", encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger for an ai-sessions component.

    Args:
        name: Logger name (will be prefixed with 'ai_sessions.')

    Returns:
        Logger instance
    """
    return logging.getLogger(f"ai_sessions.{name}")
