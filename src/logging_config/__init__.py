"""Structured logging for the approval engine.

JSON or console output, contextvar-bound operation context, and
performance timing for engine operations.
"""

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import LogContext, get_context_dict
from src.logging_config.performance import PerformanceTimer, log_performance
from src.logging_config.setup import configure_logging, get_logger

__all__ = [
    "LogContext",
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "PerformanceTimer",
    "configure_logging",
    "get_context_dict",
    "get_logger",
    "log_performance",
]
