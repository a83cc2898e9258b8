"""Carrier adapter layer."""

from __future__ import annotations

import asyncio
import hashlib
import math
import random
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from quotehub.core.config_models import ProviderConfig
from quotehub.core.logger import get_logger
from quotehub.modules.quote.coverage import map_coverage_type_for_provider
from quotehub.modules.quote.errors import (
    ProviderError,
    ProviderHttpError,
    ProviderInactive,
    ProviderMappingError,
    ProviderNetworkError,
    ProviderRateLimited,
    ProviderTimeout,
)
from quotehub.modules.quote.health import CircuitBreaker
from quotehub.modules.quote.models import ProviderRef, ProviderResult, Quote, QuoteCriteria
from quotehub.modules.quote.rate_limiter import RateLimiter

QUOTE_TTL = timedelta(days=7)

MOCK_COMMON_FEATURES = ("24/7 Customer Support", "Online Account Management")
MOCK_TYPE_FEATURES: dict[str, tuple[str, ...]] = {
    "life": ("Accelerated Death Benefit", "Waiver of Premium", "Terminal Illness Rider"),
    "health": ("Prescription Drug Coverage", "Preventive Care", "Specialist Referrals"),
    "dental": ("Preventive Care Covered 100%", "Orthodontic Coverage", "Annual Maximum Benefit"),
    "vision": ("Annual Eye Exam", "Frame Allowance", "Contact Lens Coverage"),
}


def _first(item: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_float(value: Any, field_name: str, provider_id: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ProviderMappingError(provider_id, f"{field_name} is not numeric")
    try:
        number = float(str(value).replace(",", "").replace("$", "")) if isinstance(value, str) else float(value)
    except (OverflowError, TypeError, ValueError) as exc:
        raise ProviderMappingError(provider_id, f"{field_name} is not numeric: {value!r}") from exc
    if not math.isfinite(number):
        raise ProviderMappingError(provider_id, f"{field_name} is not finite: {value!r}")
    return number


def _features(item: dict[str, Any]) -> tuple[str, ...]:
    raw = _first(item, "features", "benefits", "coverage_details")
    if isinstance(raw, list):
        names = []
        for feature in raw:
            if isinstance(feature, dict):
                feature = feature.get("name") or feature.get("description") or feature
            names.append(str(feature))
        return tuple(names)
    if isinstance(raw, dict):
        return tuple(key.replace("_", " ").title() for key, value in raw.items() if value)
    return ()


def _expiry(now: datetime | None = None) -> str:
    return ((now or datetime.now(timezone.utc)) + QUOTE_TTL).isoformat()


class QuoteAdapter(ABC):
    """Talks to one carrier.

    Subclasses describe the wire format (``build_request`` / ``map_response``);
    this base class owns mock mode, the circuit breaker, rate limiting,
    retries, error classification and the per-invocation time budget.
    """

    name = "generic"

    def __init__(
        self,
        config: ProviderConfig,
        client: httpx.AsyncClient,
        limiter: RateLimiter | None = None,
        *,
        breaker: CircuitBreaker | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.client = client
        self.limiter = limiter
        self.breaker = breaker
        self.logger = get_logger().bind(provider_id=config.id)
        self._clock = clock
        self._sleep = sleep

    @abstractmethod
    def build_request(self, criteria: QuoteCriteria) -> dict[str, Any]:
        pass

    @abstractmethod
    def map_response(self, payload: Any, criteria: QuoteCriteria) -> list[Quote]:
        pass

    @property
    def provider_ref(self) -> ProviderRef:
        return ProviderRef(id=self.config.id, display_name=self.config.display_name, rating=self.config.rating)

    @property
    def quote_url(self) -> str:
        return f"{self.config.base_url}{self.config.quote_path}"

    def coverage_code(self, criteria: QuoteCriteria) -> str:
        return map_coverage_type_for_provider(self.config, criteria.coverage_type)

    def headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        key = self.config.api_key
        if key:
            header = (self.config.auth_header or "Authorization").strip()
            if header.lower() == "bearer":
                headers["Authorization"] = f"Bearer {key}"
            else:
                headers[header] = key
        return headers

    async def get_quote(self, criteria: QuoteCriteria, deadline: float | None = None) -> ProviderResult:
        """Run one invocation and fold its outcome into a ProviderResult.

        Args:
            criteria: validated criteria
            deadline: request deadline on the adapter clock, None for no limit

        Returns:
            ProviderResult holding either the chosen quote or the provider error.
            Cancellation is propagated, every other failure is captured.
        """
        started = self._clock()
        budget_end = started + self.config.timeout / 1000.0
        if deadline is not None:
            budget_end = min(budget_end, deadline)

        state = {"attempts": 0, "queued": False}
        quote: Quote | None = None
        error: ProviderError | None = None
        admitted = False
        try:
            if not self.config.is_active:
                raise ProviderInactive(self.config.id, f"Provider {self.config.id} is inactive")
            if self.config.mock_mode:
                quote = self.mock_quote(criteria)
            else:
                if self.breaker is not None:
                    self.breaker.allow()
                    admitted = True
                remaining = budget_end - self._clock()
                if remaining <= 0:
                    raise ProviderTimeout(self.config.id, f"No time budget left for {self.config.id}")
                quote = await asyncio.wait_for(self._fetch(criteria, budget_end, state), timeout=remaining)
        except asyncio.CancelledError:
            if admitted:
                self.breaker.release()
            raise
        except asyncio.TimeoutError:
            if state["queued"]:
                error = ProviderRateLimited(
                    self.config.id, f"Deadline reached waiting for a rate-limit token for {self.config.id}"
                )
            else:
                error = ProviderTimeout(
                    self.config.id,
                    f"Provider {self.config.id} timed out after {int((self._clock() - started) * 1000)}ms",
                    {"timeout_ms": self.config.timeout},
                )
        except ProviderError as exc:
            error = exc

        if admitted:
            self._settle_breaker(error)
        elapsed_ms = int((self._clock() - started) * 1000)
        if error is not None:
            self.logger.warning(f"Provider {self.config.id} failed ({error.kind}) after {elapsed_ms}ms: {error.message}")
        else:
            self.logger.debug(f"Provider {self.config.id} quoted {quote.monthly_premium:.2f}/mo in {elapsed_ms}ms")
        return ProviderResult(
            provider_id=self.config.id,
            quote=quote,
            error=error,
            attempts=state["attempts"],
            elapsed_ms=elapsed_ms,
        )

    def _settle_breaker(self, error: ProviderError | None) -> None:
        if error is None:
            self.breaker.record_success()
        elif isinstance(error, ProviderRateLimited):
            # queued locally, the provider was never judged
            self.breaker.release()
        elif self.breaker.record_failure():
            self.logger.warning(
                f"Circuit for {self.config.id} opened after {error.kind}; "
                f"retry in {self.breaker.recovery_seconds:.0f}s"
            )

    async def _fetch(self, criteria: QuoteCriteria, budget_end: float, state: dict[str, Any]) -> Quote:
        retry = self.config.retry_config
        body = self.build_request(criteria)
        attempt = 0
        while True:
            if self.limiter is not None:
                state["queued"] = True
                await self.limiter.acquire(budget_end)
                state["queued"] = False
            state["attempts"] += 1
            try:
                return await self._attempt(body, criteria, budget_end)
            except ProviderError as exc:
                if not exc.retryable or attempt >= retry.max_retries:
                    raise
                delay = retry.initial_delay * retry.backoff_multiplier ** attempt / 1000.0
                if self._clock() + delay >= budget_end:
                    self.logger.warning(
                        f"Provider {self.config.id}: no budget for retry {attempt + 1} after {exc.kind}"
                    )
                    raise
                self.logger.warning(
                    f"Provider {self.config.id} {exc.kind}, retry {attempt + 1}/{retry.max_retries} in {delay:.3f}s"
                )
                await self._sleep(delay)
                attempt += 1

    async def _attempt(self, body: dict[str, Any], criteria: QuoteCriteria, budget_end: float) -> Quote:
        remaining = budget_end - self._clock()
        if remaining <= 0:
            raise ProviderTimeout(self.config.id, f"No time budget left for {self.config.id}")
        try:
            response = await self.client.post(self.quote_url, json=body, headers=self.headers(), timeout=remaining)
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(self.config.id, f"Request to {self.config.id} timed out") from exc
        except httpx.TransportError as exc:
            raise ProviderNetworkError(self.config.id, f"Network error calling {self.config.id}: {exc}") from exc

        if response.status_code >= 400:
            raise ProviderHttpError(self.config.id, response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderMappingError(self.config.id, f"Invalid JSON from {self.config.id}") from exc

        try:
            quotes = self.map_response(payload, criteria)
        except ProviderMappingError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ProviderMappingError(self.config.id, f"Unexpected response shape from {self.config.id}: {exc}") from exc
        if not quotes:
            raise ProviderMappingError(self.config.id, f"No quotes in response from {self.config.id}")
        # one quote per provider: keep the cheapest
        return min(quotes, key=lambda q: q.monthly_premium)

    def mock_quote(self, criteria: QuoteCriteria) -> Quote:
        """Deterministic synthetic quote for (provider, criteria)."""
        digest = hashlib.sha256(f"{self.config.id}|{criteria.cache_key()}".encode("utf-8")).hexdigest()
        rng = random.Random(int(digest[:16], 16))

        base = rng.randint(50, 249)
        monthly = round(base * (1 + (rng.random() - 0.5) * 0.4), 2)
        family = "health" if "health" in criteria.coverage_type else criteria.coverage_type.split("_")[-1]
        features = MOCK_COMMON_FEATURES + MOCK_TYPE_FEATURES.get(family, ())
        rating = self.config.rating or round(rng.uniform(3.0, 5.0), 1)
        return Quote(
            quote_id=f"{self.config.id}_mock_{digest[:12]}",
            provider=ProviderRef(id=self.config.id, display_name=self.config.display_name, rating=rating),
            type=criteria.coverage_type,
            monthly_premium=monthly,
            annual_premium=round(monthly * 12, 2),
            coverage_amount=criteria.coverage_amount,
            term_length=criteria.term_length,
            deductible=float(rng.randint(500, 5499)) if family == "health" else 0.0,
            medical_exam_required=rng.random() > 0.7,
            conversion_option=rng.random() > 0.6,
            features=features,
            expires_at=_expiry(),
            application_url=f"https://demo.{self.config.id}.com/apply?quote={digest[:12]}",
            mock=True,
        )

    async def check_connection(self) -> dict[str, Any]:
        """Best-effort connectivity check against the health endpoint."""
        if self.config.mock_mode:
            return {"success": True, "provider_id": self.config.id, "mock": True, "response_time_ms": 0}

        started = self._clock()
        url = f"{self.config.base_url}{self.config.health_path}"
        try:
            response = await self.client.get(url, headers=self.headers(), timeout=self.config.timeout / 1000.0)
        except httpx.HTTPError as exc:
            return {
                "success": False,
                "provider_id": self.config.id,
                "mock": False,
                "response_time_ms": int((self._clock() - started) * 1000),
                "error": f"{type(exc).__name__}: {exc}",
            }
        result: dict[str, Any] = {
            "success": response.status_code < 400,
            "provider_id": self.config.id,
            "mock": False,
            "status_code": response.status_code,
            "response_time_ms": int((self._clock() - started) * 1000),
        }
        if response.status_code >= 400:
            result["error"] = f"HTTP {response.status_code}"
        return result

    # Shared response helpers

    @staticmethod
    def extract_items(payload: Any) -> list[dict[str, Any]]:
        if isinstance(payload, list):
            items = payload
        elif isinstance(payload, dict):
            for key in ("quotes", "results", "plans"):
                if isinstance(payload.get(key), list):
                    items = payload[key]
                    break
            else:
                if isinstance(payload.get("Data"), list):
                    items = [item for group in payload["Data"] for item in (group or {}).get("items") or []]
                else:
                    items = [payload]
        else:
            raise TypeError(f"expected object or list, got {type(payload).__name__}")
        return [item for item in items if isinstance(item, dict)]

    def normalize_item(self, item: dict[str, Any], criteria: QuoteCriteria) -> Quote:
        pid = self.config.id
        monthly = _as_float(_first(item, "monthly_premium", "monthlyPremium", "premium_monthly", "monthly_cost"), "monthly_premium", pid)
        annual = _as_float(_first(item, "annual_premium", "annualPremium", "yearly_cost"), "annual_premium", pid)
        if monthly is None and annual is not None:
            monthly = annual / 12
        if monthly is None or monthly <= 0:
            raise ProviderMappingError(pid, f"Quote from {pid} has no monthly premium")
        if annual is None:
            annual = monthly * 12

        coverage = _as_float(_first(item, "coverage_amount", "coverageAmount", "benefit_amount"), "coverage_amount", pid)
        deductible = _as_float(_first(item, "deductible", "deductible_amount"), "deductible", pid)
        term = _first(item, "term_length", "termLength", "term")
        rating = _as_float(_first(item, "rating", "provider_rating", "score"), "rating", pid)
        return Quote(
            quote_id=str(_first(item, "id", "quote_id", "quoteId") or f"{pid}_{uuid.uuid4().hex[:12]}"),
            provider=ProviderRef(id=pid, display_name=self.config.display_name, rating=rating or self.config.rating),
            type=criteria.coverage_type,
            monthly_premium=monthly,
            annual_premium=annual,
            coverage_amount=coverage if coverage is not None else criteria.coverage_amount,
            term_length=int(term) if term is not None else criteria.term_length,
            deductible=deductible if deductible is not None else 0.0,
            medical_exam_required=bool(_first(item, "medical_exam_required", "medicalExam", "exam_required")),
            conversion_option=bool(_first(item, "conversion_option", "convertible")),
            features=_features(item),
            expires_at=str(_first(item, "expires_at", "expirationDate") or _expiry()),
            application_url=_first(item, "application_url", "applyUrl"),
        )

    def base_request(self, criteria: QuoteCriteria) -> dict[str, Any]:
        applicant: dict[str, Any] = {"age": criteria.applicant_age, "zip_code": criteria.zip_code}
        if criteria.spouse_age is not None:
            applicant["spouse"] = {"age": criteria.spouse_age}
        if criteria.children_ages:
            applicant["children"] = [{"age": age} for age in criteria.children_ages]
        return {
            "coverage_type": self.coverage_code(criteria),
            "applicant": applicant,
            "coverage": {
                "amount": criteria.coverage_amount,
                "term_length": criteria.term_length,
                "payment_frequency": criteria.payment_mode,
            },
            "effective_date": criteria.effective_date,
        }


class GenericAdapter(QuoteAdapter):
    """Plain request body, tolerant response mapping."""

    def build_request(self, criteria: QuoteCriteria) -> dict[str, Any]:
        return self.base_request(criteria)

    def map_response(self, payload: Any, criteria: QuoteCriteria) -> list[Quote]:
        return [self.normalize_item(item, criteria) for item in self.extract_items(payload)]


class LifeSecureAdapter(GenericAdapter):
    name = "life_secure"

    def build_request(self, criteria: QuoteCriteria) -> dict[str, Any]:
        body = self.base_request(criteria)
        body.update(
            product_type=body["coverage_type"],
            client_info=body["applicant"],
            coverage_details=body["coverage"],
        )
        return body


class HealthPlusAdapter(GenericAdapter):
    name = "health_plus"

    def build_request(self, criteria: QuoteCriteria) -> dict[str, Any]:
        body = self.base_request(criteria)
        body.update(
            plan_type=body["coverage_type"],
            member_info=body["applicant"],
            benefit_details=body["coverage"],
        )
        return body


class DentalCareAdapter(GenericAdapter):
    name = "dental_care"

    def build_request(self, criteria: QuoteCriteria) -> dict[str, Any]:
        body = self.base_request(criteria)
        body.update(
            service_type=body["coverage_type"],
            patient_info=body["applicant"],
            plan_options=body["coverage"],
        )
        return body


class VisionFirstAdapter(GenericAdapter):
    name = "vision_first"

    def build_request(self, criteria: QuoteCriteria) -> dict[str, Any]:
        body = self.base_request(criteria)
        body.update(
            vision_plan=body["coverage_type"],
            subscriber=body["applicant"],
            benefits=body["coverage"],
        )
        return body


class FamilyShieldAdapter(GenericAdapter):
    name = "family_shield"


class JasAdapter(QuoteAdapter):
    """Nested ``quoteCriteria`` request, ``Data[].items[]`` response."""

    name = "jas"

    def build_request(self, criteria: QuoteCriteria) -> dict[str, Any]:
        applicant: dict[str, Any] = {
            "dateOfBirth": criteria.date_of_birth,
            "gender": criteria.gender,
            "tobacco": criteria.tobacco,
        }
        if criteria.date_of_birth is None:
            applicant["age"] = criteria.applicant_age
        return {
            "isLifeInsuranceRequest": self.coverage_code(criteria) in ("life", "term_life", "whole_life"),
            "subCategoryFilter": [],
            "quoteCriteria": {
                "coverageAmount": criteria.coverage_amount,
                "state": criteria.state,
                "zipCode": criteria.zip_code,
                "county": criteria.county,
                "applicant": applicant,
                "paymentMode": criteria.payment_mode,
                "effectiveDate": criteria.effective_date,
                "termLength": criteria.term_length or 0,
            },
        }

    def map_response(self, payload: Any, criteria: QuoteCriteria) -> list[Quote]:
        if not isinstance(payload, dict) or not isinstance(payload.get("Data"), list):
            raise ProviderMappingError(self.config.id, "Response has no Data list")
        return [self.normalize_item(item, criteria) for item in self.extract_items(payload)]


ADAPTERS: dict[str, type[QuoteAdapter]] = {
    "generic": GenericAdapter,
    "life_secure": LifeSecureAdapter,
    "health_plus": HealthPlusAdapter,
    "dental_care": DentalCareAdapter,
    "vision_first": VisionFirstAdapter,
    "family_shield": FamilyShieldAdapter,
    "jas": JasAdapter,
}


def create_adapter(
    config: ProviderConfig,
    client: httpx.AsyncClient,
    limiter: RateLimiter | None = None,
    **kwargs: Any,
) -> QuoteAdapter:
    """Instantiate the adapter named by ``config.adapter`` (generic when unknown)."""
    adapter_cls = ADAPTERS.get(config.adapter)
    if adapter_cls is None:
        get_logger().warning(f"Unknown adapter {config.adapter!r} for {config.id}, using generic")
        adapter_cls = GenericAdapter
    return adapter_cls(config, client, limiter, **kwargs)
