"""Retry helpers for transient infrastructure failures, plus component health checks."""

import time
import random
from typing import Callable, Any, Optional, Dict, List, Type
from functools import wraps
from datetime import datetime

from .exceptions import WorkflowEngineError, TransientError, StorageError
from .logging import get_logger, ErrorRecoveryLogger


logger = get_logger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 5.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [TransientError, StorageError]

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if an exception should be retried."""
        if attempt >= self.max_attempts:
            return False

        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable and any(
                isinstance(exception, exc_type) for exc_type in self.retryable_exceptions
            )

        return any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator to add retry logic to functions."""
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return _execute_with_retry(func, config, *args, **kwargs)
        return wrapper

    return decorator


def _execute_with_retry(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Execute function with retry logic."""
    recovery_logger = ErrorRecoveryLogger(func.__name__)
    last_exception = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = func(*args, **kwargs)
            if attempt > 1:
                recovery_logger.log_recovery_success(func.__name__, attempt)
            return result
        except Exception as e:
            last_exception = e

            if not config.should_retry(e, attempt):
                recovery_logger.log_recovery_failure(func.__name__, e, attempt)
                raise

            delay = config.get_delay(attempt)
            recovery_logger.log_recovery_attempt(
                func.__name__, e, attempt, config.max_attempts
            )
            time.sleep(delay)

    recovery_logger.log_recovery_failure(
        func.__name__, last_exception, config.max_attempts
    )
    raise last_exception


class HealthChecker:
    """Health checker for system components."""

    def __init__(self):
        self.checks: Dict[str, Dict[str, Any]] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}
        self.logger = get_logger("taskflow.health")

    def register_check(self, name: str, check_func: Callable[[], Any]):
        """Register a health check function."""
        self.checks[name] = {"func": check_func}
        self.logger.info(f"Registered health check: {name}")

    def clear(self):
        self.checks.clear()
        self.last_results.clear()

    def run_check(self, name: str) -> Dict[str, Any]:
        """Run a specific health check."""
        if name not in self.checks:
            return {
                "status": "error",
                "message": f"Health check '{name}' not found",
                "timestamp": datetime.utcnow().isoformat()
            }

        check_info = self.checks[name]
        start_time = time.time()

        try:
            result = check_info["func"]()
            duration = time.time() - start_time

            check_result = {
                "status": "healthy",
                "message": result if isinstance(result, str) else "Check passed",
                "duration_ms": round(duration * 1000, 2),
                "timestamp": datetime.utcnow().isoformat()
            }

            if isinstance(result, dict):
                check_result.update(result)

        except Exception as e:
            duration = time.time() - start_time
            check_result = {
                "status": "unhealthy",
                "message": str(e),
                "error_type": type(e).__name__,
                "duration_ms": round(duration * 1000, 2),
                "timestamp": datetime.utcnow().isoformat()
            }

        self.last_results[name] = check_result
        return check_result

    def run_all_checks(self) -> Dict[str, Any]:
        """Run all registered health checks."""
        results = {}
        overall_status = "healthy"

        for name in list(self.checks):
            result = self.run_check(name)
            results[name] = result

            if result["status"] != "healthy":
                overall_status = "unhealthy"

        return {
            "overall_status": overall_status,
            "checks": results,
            "timestamp": datetime.utcnow().isoformat()
        }


# Global health checker instance
health_checker = HealthChecker()
