"""Provider registry: configs, eligibility, snapshots, rate limiters and circuit breakers."""

from __future__ import annotations

import os
import threading
import time
from typing import Any, Callable, Iterable

from pydantic import ValidationError

from quotehub.core.config_models import ProviderConfig
from quotehub.core.error_handler import ConfigError, ProviderNotFound, QuoteValidationError
from quotehub.core.logger import get_logger
from quotehub.modules.quote.health import CircuitBreaker
from quotehub.modules.quote.rate_limiter import RateLimiter


def default_provider_catalogue() -> list[dict[str, Any]]:
    """Built-in carriers; live only when their API key is present in the environment."""
    return [
        {
            "id": "jas_assure",
            "display_name": "JAS",
            "base_url": os.getenv("JASASSURE_API_URL", "http://api1.justaskshel.com:8700/web-api/v1"),
            "api_key": os.getenv("JASASSURE_API_KEY"),
            "auth_header": "X-API-Key",
            "adapter": "jas",
            "rate_limit": {"requests_per_second": 10, "burst_limit": 50},
            "timeout": 8000,
            "retry_config": {"max_retries": 3, "backoff_multiplier": 2, "initial_delay": 1000},
            "supported_coverage_types": ["life"],
            "priority": 1,
        },
        {
            "id": "life_secure",
            "display_name": "LifeSecure Insurance",
            "base_url": os.getenv("LIFESECURE_API_URL", "https://api.lifesecure.com/v1"),
            "api_key": os.getenv("LIFESECURE_API_KEY"),
            "auth_header": "X-API-Key",
            "adapter": "life_secure",
            "coverage_type_mapping": {"life": "term_life"},
            "rate_limit": {"requests_per_second": 10, "burst_limit": 50},
            "timeout": 8000,
            "retry_config": {"max_retries": 3, "backoff_multiplier": 2, "initial_delay": 1000},
            "supported_coverage_types": ["life", "term_life", "whole_life"],
            "priority": 1,
        },
        {
            "id": "health_plus",
            "display_name": "HealthPlus Coverage",
            "base_url": os.getenv("HEALTHPLUS_API_URL", "https://api.healthplus.com/quotes"),
            "api_key": os.getenv("HEALTHPLUS_API_KEY"),
            "auth_header": "Authorization",
            "adapter": "health_plus",
            "coverage_type_mapping": {"health": "medical"},
            "rate_limit": {"requests_per_second": 5, "burst_limit": 25},
            "timeout": 10000,
            "retry_config": {"max_retries": 2, "backoff_multiplier": 1.5, "initial_delay": 800},
            "supported_coverage_types": ["health", "hospital_indemnity"],
            "priority": 2,
        },
        {
            "id": "dental_care",
            "display_name": "DentalCare Pro",
            "base_url": os.getenv("DENTALCARE_API_URL", "https://api.dentalcare.com/v2"),
            "api_key": os.getenv("DENTALCARE_API_KEY"),
            "auth_header": "X-Auth-Token",
            "adapter": "dental_care",
            "rate_limit": {"requests_per_second": 8, "burst_limit": 40},
            "timeout": 6000,
            "retry_config": {"max_retries": 3, "backoff_multiplier": 2, "initial_delay": 500},
            "supported_coverage_types": ["dental", "orthodontic"],
            "priority": 3,
        },
        {
            "id": "vision_first",
            "display_name": "VisionFirst Insurance",
            "base_url": os.getenv("VISIONFIRST_API_URL", "https://api.visionfirst.com/quotes"),
            "api_key": os.getenv("VISIONFIRST_API_KEY"),
            "auth_header": "Bearer",
            "adapter": "vision_first",
            "rate_limit": {"requests_per_second": 12, "burst_limit": 60},
            "timeout": 5000,
            "retry_config": {"max_retries": 2, "backoff_multiplier": 1.8, "initial_delay": 600},
            "supported_coverage_types": ["vision", "eye_care"],
            "priority": 4,
        },
        {
            "id": "family_shield",
            "display_name": "FamilyShield Insurance",
            "base_url": os.getenv("FAMILYSHIELD_API_URL", "https://api.familyshield.com/v1/quotes"),
            "api_key": os.getenv("FAMILYSHIELD_API_KEY"),
            "auth_header": "X-Client-Key",
            "adapter": "family_shield",
            "rate_limit": {"requests_per_second": 6, "burst_limit": 30},
            "timeout": 9000,
            "retry_config": {"max_retries": 4, "backoff_multiplier": 2.5, "initial_delay": 1200},
            "supported_coverage_types": ["life", "health", "dental", "vision", "disability"],
            "priority": 5,
        },
    ]


def _validate(data: dict[str, Any]) -> ProviderConfig:
    try:
        return ProviderConfig.model_validate(data)
    except ValidationError as exc:
        fields = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
        raise QuoteValidationError(f"Invalid provider configuration: {exc}", fields) from exc


class ProviderRegistry:
    """In-process provider config store.

    Configs are immutable; updates swap in a new object, so a snapshot taken
    for one request never observes later edits. Rate limiters and circuit
    breakers live as long as the registry and are keyed by provider id.
    """

    def __init__(
        self,
        providers: Iterable[ProviderConfig | dict[str, Any]] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.logger = get_logger()
        self._lock = threading.Lock()
        self._providers: dict[str, ProviderConfig] = {}
        self._limiters: dict[str, RateLimiter] = {}
        self._breakers: dict[str, CircuitBreaker] = {}
        self._clock = clock

        items = list(providers) if providers is not None else default_provider_catalogue()
        for item in items:
            try:
                config = item if isinstance(item, ProviderConfig) else ProviderConfig.model_validate(item)
            except ValidationError as exc:
                raise ConfigError(f"Invalid provider configuration: {exc}") from exc
            if config.id in self._providers:
                raise ConfigError(f"Duplicate provider id: {config.id}")
            self._store(config)

    @classmethod
    def from_config(cls, config) -> "ProviderRegistry":
        """Build from a Config object; falls back to the built-in catalogue."""
        return cls(config.providers)

    def _store(self, config: ProviderConfig) -> None:
        self._providers[config.id] = config
        limiter = self._limiters.get(config.id)
        if limiter is None:
            self._limiters[config.id] = RateLimiter(
                config.id,
                config.rate_limit.requests_per_second,
                config.rate_limit.burst_limit,
            )
        elif (
            limiter.requests_per_second != config.rate_limit.requests_per_second
            or limiter.burst_limit != config.rate_limit.burst_limit
        ):
            limiter.reconfigure(config.rate_limit.requests_per_second, config.rate_limit.burst_limit)

        settings = config.circuit_breaker
        breaker = self._breakers.get(config.id)
        if breaker is None:
            self._breakers[config.id] = CircuitBreaker(
                config.id,
                settings.failure_threshold,
                settings.recovery_timeout / 1000.0,
                clock=self._clock,
            )
        else:
            breaker.reconfigure(settings.failure_threshold, settings.recovery_timeout / 1000.0)

    def all(self) -> list[ProviderConfig]:
        with self._lock:
            return sorted(self._providers.values(), key=lambda p: (p.priority, p.id))

    def active(self) -> list[ProviderConfig]:
        return [p for p in self.all() if p.is_active]

    def get(self, provider_id: str) -> ProviderConfig:
        with self._lock:
            config = self._providers.get(provider_id)
        if config is None:
            raise ProviderNotFound(provider_id)
        return config

    def coverage_types(self) -> set[str]:
        with self._lock:
            return {t for p in self._providers.values() for t in p.supported_coverage_types if t != "all"}

    def eligible(self, coverage_type: str) -> list[ProviderConfig]:
        """Active providers supporting the type, ordered by priority then id."""
        return [p for p in self.active() if p.supports(coverage_type)]

    def snapshot(self, coverage_type: str) -> tuple[ProviderConfig, ...]:
        """Value copies of the eligible configs, taken under one lock."""
        with self._lock:
            providers = sorted(self._providers.values(), key=lambda p: (p.priority, p.id))
            return tuple(
                p.model_copy(deep=True) for p in providers if p.is_active and p.supports(coverage_type)
            )

    def limiter(self, provider_id: str) -> RateLimiter:
        with self._lock:
            limiter = self._limiters.get(provider_id)
        if limiter is None:
            raise ProviderNotFound(provider_id)
        return limiter

    def breaker(self, provider_id: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(provider_id)
        if breaker is None:
            raise ProviderNotFound(provider_id)
        return breaker

    def upsert(self, data: dict[str, Any] | ProviderConfig) -> ProviderConfig:
        """Create or fully replace a provider config."""
        config = data if isinstance(data, ProviderConfig) else _validate(data)
        with self._lock:
            created = config.id not in self._providers
            self._store(config)
        self.logger.info(f"Provider {'created' if created else 'replaced'}: {config.id}")
        return config

    def update(self, provider_id: str, changes: dict[str, Any]) -> ProviderConfig:
        """Validated partial update; nested rate_limit, retry_config and circuit_breaker are merged."""
        with self._lock:
            current = self._providers.get(provider_id)
            if current is None:
                raise ProviderNotFound(provider_id)
            data = current.model_dump()
            for key, value in (changes or {}).items():
                if key == "id" and value != provider_id:
                    raise QuoteValidationError("Provider id cannot be changed", ["id"])
                if key in ("rate_limit", "retry_config", "circuit_breaker") and isinstance(value, dict):
                    data[key] = {**data[key], **value}
                else:
                    data[key] = value
            if "api_key" in (changes or {}) and "mock_mode" not in (changes or {}):
                data["mock_mode"] = None
            updated = _validate(data)
            self._store(updated)
        self.logger.info(f"Provider updated: {provider_id} ({', '.join(sorted(changes or {}))})")
        return updated
