"""
Logging configuration for the blast engine.
Provides consistent logging across all modules.
"""
import logging
import sys
import time
from functools import wraps
from typing import Any, Callable

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"


def setup_logging(level: str = "INFO", log_file: str = None):
    """
    Setup logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path to append logs to
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Don't stack handlers when called twice in one process
    for handler in list(root_logger.handlers):
        if getattr(handler, "_blast_handler", False):
            root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)
    console_handler._blast_handler = True
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setFormatter(formatter)
        file_handler.setLevel(log_level)
        file_handler._blast_handler = True
        root_logger.addHandler(file_handler)

    # pymongo heartbeats are noisy at DEBUG
    logging.getLogger("pymongo").setLevel(max(log_level, logging.INFO))

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the blast namespace."""
    if not name.startswith("blast"):
        name = f"blast.{name}"
    return logging.getLogger(name)


def is_rate_limit_error(e: Exception) -> bool:
    error_str = str(e).lower()
    return ("rate" in error_str and "limit" in error_str) or "429" in error_str


def retry_on_rate_limit(max_retries: int = 3, initial_delay: float = 5.0):
    """
    Retry decorator for LLM rate limit errors.

    Other exceptions propagate immediately. The delay doubles after each
    rate-limited attempt.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            delay = initial_delay
            logger = get_logger(func.__module__)

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not is_rate_limit_error(e) or attempt == max_retries:
                        raise

                    logger.warning(
                        f"Rate limit hit, retrying in {delay}s "
                        f"(attempt {attempt + 1}/{max_retries})"
                    )
                    time.sleep(delay)
                    delay *= 2

        return wrapper
    return decorator
