"""
Logger - Utilities Module
Colourised console logging + rotating file log for the attendance engine.
"""

import logging
import logging.handlers
import os
import colorlog

LOG_DIR = os.environ.get("ATTENDANCE_LOG_DIR", "logs")
LOG_FILE = "attendance.log"


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create a colourised logger for a module."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(level)

    # Console handler with colour
    console = colorlog.StreamHandler()
    console.setLevel(level)
    console.setFormatter(colorlog.ColoredFormatter(
        "%(log_color)s%(asctime)s [%(levelname)-8s]%(reset)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        log_colors={
            "DEBUG":    "cyan",
            "INFO":     "green",
            "WARNING":  "yellow",
            "ERROR":    "red",
            "CRITICAL": "red,bg_white",
        }
    ))
    logger.addHandler(console)

    # File handler (rotating)
    os.makedirs(LOG_DIR, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(LOG_DIR, LOG_FILE),
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5,
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s"
    ))
    logger.addHandler(file_handler)

    return logger


def set_level(level: int):
    """Adjust the level of every logger created through setup_logger."""
    for name in list(logging.Logger.manager.loggerDict):
        if name == "src" or name.startswith("src.") or name == "__main__":
            lg = logging.getLogger(name)
            lg.setLevel(level)
            for handler in lg.handlers:
                if not isinstance(handler, logging.handlers.RotatingFileHandler):
                    handler.setLevel(level)
