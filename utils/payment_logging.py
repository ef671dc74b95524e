"""
Payment operation tracking
Times async gateway/panel operations and feeds the order pipeline telemetry window
"""

import time
import logging
import functools
from typing import Any, Callable

from monitoring.production_logging import log_stage_timing

logger = logging.getLogger(__name__)


def track_payment_operation(operation_name: str) -> Callable:
    """
    Decorator for async payment/provisioning operations

    Records duration and success for every call. Exceptions are logged and
    re-raised unchanged so callers keep their own error handling.
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.time()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                duration_ms = (time.time() - start) * 1000
                logger.warning(f"⏱️ {operation_name} failed after {duration_ms:.0f}ms: {type(e).__name__}")
                log_stage_timing('payment_operations', operation_name, duration_ms, success=False)
                raise
            duration_ms = (time.time() - start) * 1000
            logger.debug(f"⏱️ {operation_name} completed in {duration_ms:.0f}ms")
            log_stage_timing('payment_operations', operation_name, duration_ms, success=True)
            return result
        return wrapper
    return decorator
