"""
Unified Error Handling

Exception hierarchy shared by the engine, plus timing helpers.
"""

import asyncio
import time
from functools import wraps
from typing import Callable, Any, Dict, List, Optional

from quotehub.core.logger import get_logger


def log_execution_time(logger=None):
    """
    Log how long the decorated callable ran

    Args:
        logger: logger to use, defaults to the global one
    """
    if logger is None:
        logger = get_logger()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.perf_counter()

            try:
                result = await func(*args, **kwargs)
                elapsed = time.perf_counter() - start_time
                logger.debug(f"{func.__name__} executed in {elapsed:.3f}s")
                return result
            except Exception as e:
                elapsed = time.perf_counter() - start_time
                logger.warning(f"{func.__name__} failed after {elapsed:.3f}s: {e}")
                raise

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            start_time = time.perf_counter()

            try:
                result = func(*args, **kwargs)
                elapsed = time.perf_counter() - start_time
                logger.debug(f"{func.__name__} executed in {elapsed:.3f}s")
                return result
            except Exception as e:
                elapsed = time.perf_counter() - start_time
                logger.warning(f"{func.__name__} failed after {elapsed:.3f}s: {e}")
                raise

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        else:
            return sync_wrapper
    return decorator


class QuoteHubError(Exception):
    """Base exception"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API and CLI output"""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ConfigError(QuoteHubError):
    """Configuration error"""
    pass


class DatabaseError(QuoteHubError):
    """Database error"""
    pass


class AuditError(DatabaseError):
    """Audit trail write rejected"""
    pass


class QuoteValidationError(QuoteHubError):
    """Quote criteria rejected before any provider is touched"""

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        self.fields = list(fields or [])
        super().__init__(message, {"fields": self.fields})


class NoEligibleProviders(QuoteHubError):
    """No active provider supports the requested coverage type"""

    def __init__(self, coverage_type: str):
        self.coverage_type = coverage_type
        super().__init__("no eligible providers", {"coverage_type": coverage_type})


class NoQuotesAvailable(QuoteHubError):
    """Every requested provider failed"""

    def __init__(self, request_id: str, summary: str, errors: Optional[Dict[str, str]] = None):
        self.request_id = request_id
        self.errors = dict(errors or {})
        super().__init__(summary, {"request_id": request_id, "errors": self.errors})


class ProviderNotFound(QuoteHubError):
    """Unknown provider id"""

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(f"Provider not found: {provider_id}", {"provider_id": provider_id})
