"""Performance Logging.

Timing for engine operations. Slow calls log at WARNING, failures at
ERROR (the exception is re-raised), everything else at DEBUG.
"""

import functools
import logging
import time
from typing import Any, Callable, Optional, Tuple, Type

from src.logging_config.config import DEFAULT_LOGGING_CONFIG

logger = logging.getLogger(__name__)


def _emit(_logger: logging.Logger, name: str, duration_ms: float,
          threshold_ms: float, failure: Optional[BaseException],
          expected: Tuple[Type[BaseException], ...] = ()) -> None:
    extra = {"duration_ms": round(duration_ms, 2)}
    if failure is not None:
        _logger.log(
            logging.INFO if isinstance(failure, expected) else logging.ERROR,
            "%s failed after %.1fms: %s", name, duration_ms, type(failure).__name__,
            extra=extra,
        )
    elif duration_ms >= threshold_ms:
        _logger.warning("Slow operation: %s took %.1fms", name, duration_ms, extra=extra)
    else:
        _logger.debug("%s completed in %.1fms", name, duration_ms, extra=extra)


def log_performance(
    threshold_ms: Optional[float] = None,
    logger_name: Optional[str] = None,
    expected: Tuple[Type[BaseException], ...] = (),
) -> Callable:
    """Decorator that logs a function's execution time.

    Exceptions listed in *expected* (rejected caller input, say) are
    logged at INFO instead of ERROR.

    Example:
        @log_performance(threshold_ms=100)
        def decide(self, request_id, approver_id, decision):
            ...
    """
    if threshold_ms is None:
        threshold_ms = DEFAULT_LOGGING_CONFIG.slow_threshold_ms

    def decorator(func: Callable) -> Callable:
        _logger = logging.getLogger(logger_name or func.__module__)
        name = func.__qualname__

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            failure: Optional[BaseException] = None
            try:
                return func(*args, **kwargs)
            except Exception as exc:
                failure = exc
                raise
            finally:
                _emit(_logger, name, (time.perf_counter() - start) * 1000,
                      threshold_ms, failure, expected)

        return wrapper

    return decorator


class PerformanceTimer:
    """Context manager for timing a block.

    Example:
        with PerformanceTimer("evaluate_step") as timer:
            verdict = evaluator.evaluate(step, decisions, eligible)
    """

    def __init__(
        self,
        operation_name: str,
        threshold_ms: Optional[float] = None,
        expected: Tuple[Type[BaseException], ...] = (),
    ):
        self.operation_name = operation_name
        self.threshold_ms = threshold_ms or DEFAULT_LOGGING_CONFIG.slow_threshold_ms
        self.expected = expected
        self.start_time: float = 0
        self.duration_ms: float = 0

    def __enter__(self) -> "PerformanceTimer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000
        _emit(logger, self.operation_name, self.duration_ms, self.threshold_ms,
              exc_val, self.expected)
