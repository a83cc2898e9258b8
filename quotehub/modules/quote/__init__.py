"""Quote aggregation module."""

from .aggregator import ResponseAggregator
from .audit import AuditRecorder
from .models import (
    ExternalQuoteRequest,
    ProviderResult,
    ProviderStats,
    Quote,
    QuoteCriteria,
    QuoteSearchResult,
    RequestStatus,
    parse_criteria,
)
from .health import CircuitBreaker, CircuitState, health_score
from .orchestrator import Orchestrator, build_orchestrator
from .providers import ADAPTERS, QuoteAdapter, create_adapter
from .rate_limiter import RateLimiter
from .registry import ProviderRegistry

__all__ = [
    "ADAPTERS",
    "AuditRecorder",
    "CircuitBreaker",
    "CircuitState",
    "ExternalQuoteRequest",
    "Orchestrator",
    "ProviderRegistry",
    "ProviderResult",
    "ProviderStats",
    "Quote",
    "QuoteAdapter",
    "QuoteCriteria",
    "QuoteSearchResult",
    "RateLimiter",
    "RequestStatus",
    "ResponseAggregator",
    "build_orchestrator",
    "create_adapter",
    "health_score",
    "parse_criteria",
]
