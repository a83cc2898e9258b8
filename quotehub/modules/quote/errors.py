"""Per-provider failure kinds."""

from __future__ import annotations

from typing import Any

from quotehub.core.error_handler import QuoteHubError


class ProviderError(QuoteHubError):
    """Failure of a single provider invocation."""

    kind = "provider_error"
    retryable = False

    def __init__(self, provider_id: str, message: str, details: dict[str, Any] | None = None):
        self.provider_id = provider_id
        super().__init__(message, {"provider_id": provider_id, "kind": self.kind, **(details or {})})


class ProviderTimeout(ProviderError):
    kind = "timeout"
    retryable = True


class ProviderRateLimited(ProviderError):
    """Deadline reached while waiting for a rate-limit token."""

    kind = "rate_limited"


class ProviderHttpError(ProviderError):
    kind = "http_error"

    def __init__(self, provider_id: str, code: int, message: str | None = None):
        self.code = int(code)
        super().__init__(provider_id, message or f"HTTP {code}", {"code": self.code})

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.code >= 500 or self.code == 429


class ProviderNetworkError(ProviderError):
    kind = "network_error"
    retryable = True


class ProviderMappingError(ProviderError):
    kind = "mapping_error"


class ProviderInactive(ProviderError):
    kind = "inactive"


class ProviderCircuitOpen(ProviderError):
    """Provider skipped because its circuit breaker is open."""

    kind = "circuit_open"


class RequestDeadlineExceeded(ProviderError):
    """Invocation cancelled because the overall request deadline elapsed."""

    kind = "deadline_exceeded"


# Labels used in the human-readable failure summary
KIND_LABELS: dict[str, tuple[str, str]] = {
    ProviderTimeout.kind: ("timeout", "timeouts"),
    ProviderRateLimited.kind: ("rate-limited", "rate-limited"),
    ProviderHttpError.kind: ("http error", "http errors"),
    ProviderNetworkError.kind: ("network error", "network errors"),
    ProviderMappingError.kind: ("malformed response", "malformed responses"),
    ProviderInactive.kind: ("inactive", "inactive"),
    RequestDeadlineExceeded.kind: ("deadline exceeded", "deadline exceeded"),
    ProviderCircuitOpen.kind: ("circuit open", "circuit open"),
    ProviderError.kind: ("provider error", "provider errors"),
}
