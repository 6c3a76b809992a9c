"""Shared utilities for the blast engine."""
from .logging_utils import (
    setup_logging,
    get_logger,
    retry_on_rate_limit,
)

__all__ = [
    'setup_logging',
    'get_logger',
    'retry_on_rate_limit',
]
