"""Quote search orchestrator: validate, snapshot, fan out, aggregate, audit."""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import Counter
from typing import Any, Callable, Iterable

import httpx

from quotehub.core.config_models import EngineConfig
from quotehub.core.error_handler import (
    AuditError,
    NoEligibleProviders,
    NoQuotesAvailable,
    QuoteHubError,
    QuoteValidationError,
    log_execution_time,
)
from quotehub.core.logger import get_logger
from quotehub.modules.quote.aggregator import ResponseAggregator
from quotehub.modules.quote.audit import AuditRecorder
from quotehub.modules.quote.errors import (
    KIND_LABELS,
    ProviderCircuitOpen,
    ProviderError,
    ProviderHttpError,
    RequestDeadlineExceeded,
)
from quotehub.modules.quote.health import health_score
from quotehub.modules.quote.models import (
    ExternalQuoteRequest,
    ProviderResult,
    QuoteSearchResult,
    RequestStatus,
    parse_criteria,
)
from quotehub.modules.quote.providers import QuoteAdapter, create_adapter
from quotehub.modules.quote.registry import ProviderRegistry

# minimal request sent by provider health checks
HEALTH_CHECK_CRITERIA = {
    "coverage_amount": 100000,
    "applicant_age": 30,
    "zip_code": "10001",
    "payment_mode": "monthly",
}


def describe_error(error: ProviderError) -> str:
    """Normalized, caller-safe error label."""
    if isinstance(error, ProviderHttpError):
        return f"{error.kind} ({error.code})"
    return error.kind


def failure_summary(results: Iterable[ProviderResult]) -> str:
    """e.g. ``"3/3 providers failed: 2 timeouts, 1 rate-limited"``"""
    results = list(results)
    failed = [r for r in results if not r.ok]
    counts = Counter(r.error_kind or ProviderError.kind for r in failed)
    parts = []
    for kind, n in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])):
        singular, plural = KIND_LABELS.get(kind, KIND_LABELS[ProviderError.kind])
        parts.append(f"{n} {singular if n == 1 else plural}")
    return f"{len(failed)}/{len(results)} providers failed: {', '.join(parts)}"


class Orchestrator:
    """Runs one quote search per ``execute`` call.

    Lifecycle of a request: validate and snapshot eligible providers, write
    the pending audit row, fan out one task per provider under a single
    request deadline, cancel stragglers, aggregate, write the terminal row.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        audit: AuditRecorder,
        engine: EngineConfig | dict[str, Any] | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.audit = audit
        self.engine = engine if isinstance(engine, EngineConfig) else EngineConfig(**(engine or {}))
        self.aggregator = ResponseAggregator()
        self.logger = get_logger()
        self._clock = clock
        self.last_health: dict[str, dict[str, Any]] = {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            transport=transport,
            headers={"User-Agent": self.engine.user_agent},
            follow_redirects=False,
        )

    def adapter_for(self, config) -> QuoteAdapter:
        return create_adapter(
            config,
            self._client,
            self.registry.limiter(config.id),
            breaker=self.registry.breaker(config.id),
            clock=self._clock,
        )

    @log_execution_time()
    async def execute(self, raw_criteria: dict[str, Any], user_id: str | None = None) -> QuoteSearchResult:
        """
        Run a quote search

        Args:
            raw_criteria: caller criteria, snake_case or camelCase
            user_id: optional caller identity recorded in the audit row

        Returns:
            QuoteSearchResult with the ranked quotes (status success)

        Raises:
            QuoteValidationError: criteria rejected, nothing persisted
            NoEligibleProviders: no active provider supports the type, nothing persisted
            NoQuotesAvailable: every provider failed; the audit row is in error
        """
        criteria = parse_criteria(raw_criteria, self.registry.coverage_types())
        configs = self.registry.snapshot(criteria.coverage_type)
        if not configs:
            self.logger.warning(f"No eligible providers for coverage type {criteria.coverage_type}")
            raise NoEligibleProviders(criteria.coverage_type)

        requested = [c.id for c in configs]
        record = ExternalQuoteRequest(
            request_id=uuid.uuid4().hex,
            request_data=criteria.to_dict(),
            providers_requested=requested,
            user_id=user_id,
        )
        await self.audit.create_pending(record)
        with self.logger.request_context(record.request_id):
            return await self._collect(record.request_id, criteria, configs)

    async def _collect(self, request_id: str, criteria, configs) -> QuoteSearchResult:
        requested = [c.id for c in configs]
        self.logger.info(f"Quote request {request_id} ({criteria.coverage_type}) dispatched to {', '.join(requested)}")

        results = await self._fan_out(criteria, configs)

        quotes = self.aggregator.merge(results.values(), {c.id: c for c in configs})
        responded = [pid for pid in requested if results[pid].ok]
        errors = {pid: describe_error(r.error) for pid, r in results.items() if r.error is not None}

        if quotes:
            response_data = [q.to_dict() for q in quotes]
            await self._finalize(request_id, RequestStatus.SUCCESS, response_data, responded, None)
            self.logger.info(
                f"Quote request {request_id} succeeded: {len(responded)}/{len(requested)} providers responded"
            )
            return QuoteSearchResult(
                request_id=request_id,
                status=RequestStatus.SUCCESS,
                quotes=quotes,
                providers_requested=requested,
                providers_responded=responded,
                errors=errors,
                summary=self.aggregator.summarize(quotes),
            )

        summary = failure_summary(results.values())
        await self._finalize(request_id, RequestStatus.ERROR, None, [], summary)
        self.logger.info(f"Quote request {request_id} failed: {summary}")
        raise NoQuotesAvailable(request_id, summary, errors)

    async def _fan_out(self, criteria, configs) -> dict[str, ProviderResult]:
        deadline = self._clock() + self.engine.max_request_seconds
        tasks: dict[asyncio.Task, str] = {}
        for config in configs:
            adapter = self.adapter_for(config)
            task = asyncio.create_task(adapter.get_quote(criteria, deadline), name=f"quote:{config.id}")
            tasks[task] = config.id

        results: dict[str, ProviderResult] = {}
        pending = set(tasks)
        try:
            while pending:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    result = self._task_result(task, tasks[task])
                    results[result.provider_id] = result
                    await self._record_outcome(result)
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for task in pending:
            provider_id = tasks[task]
            self.logger.warning(f"Provider {provider_id} cancelled at request deadline")
            result = ProviderResult(
                provider_id=provider_id,
                error=RequestDeadlineExceeded(
                    provider_id,
                    f"Request deadline of {self.engine.max_request_seconds}s elapsed",
                ),
            )
            results[provider_id] = result
            await self._record_outcome(result)

        return {c.id: results[c.id] for c in configs}

    def _task_result(self, task: asyncio.Task, provider_id: str) -> ProviderResult:
        exc = task.exception()
        if exc is None:
            return task.result()
        # adapters fold provider failures into results; anything else is a bug
        self.logger.error(f"Provider {provider_id} invocation crashed: {type(exc).__name__}: {exc}")
        return ProviderResult(provider_id=provider_id, error=ProviderError(provider_id, f"internal error: {type(exc).__name__}"))

    async def _record_outcome(self, result: ProviderResult) -> None:
        try:
            await self.audit.record_provider_outcome(result.provider_id, result.ok)
        except AuditError as exc:
            self.logger.error(f"Stats update lost for {result.provider_id}: {exc}")

    async def _finalize(self, request_id: str, status: RequestStatus, response_data, responded, error_message) -> None:
        try:
            await self.audit.finalize(request_id, status, response_data, responded, error_message)
        except AuditError as exc:
            # row stays pending and is reported as stuck later
            self.logger.error(f"Terminal write failed for {request_id}: {exc}")

    async def _score(self, provider_id: str, ok: bool, response_time_ms: float) -> int:
        stats = await self.audit.get_provider_stats(provider_id)
        rate = stats.success_rate if stats.total_requests else (1.0 if ok else 0.0)
        return health_score(rate, response_time_ms, ok)

    async def test_provider(self, provider_id: str) -> dict[str, Any]:
        """Connectivity check for one provider; no audit row, no stats."""
        config = self.registry.get(provider_id)
        result = await self.adapter_for(config).check_connection()
        result["health_score"] = await self._score(provider_id, result["success"], result["response_time_ms"])
        result["circuit"] = self.registry.breaker(provider_id).snapshot()
        self.logger.info(f"Provider test {provider_id}: {'ok' if result.get('success') else result.get('error')}")
        return result

    async def _check_one(self, config) -> dict[str, Any]:
        breaker = self.registry.breaker(config.id)
        adapter = self.adapter_for(config)
        entry: dict[str, Any] = {"provider_id": config.id, "checked_at": time.time(), "skipped": False}
        if config.supports(self.engine.health_check_coverage_type):
            # a small real quote, judged by the breaker like any other invocation
            criteria = parse_criteria(dict(HEALTH_CHECK_CRITERIA, coverage_type=self.engine.health_check_coverage_type))
            result = await adapter.get_quote(criteria, self._clock() + self.engine.max_request_seconds)
            ok, elapsed_ms = result.ok, result.elapsed_ms
            entry["check"] = "quote"
            if result.error is not None:
                entry["error"] = describe_error(result.error)
                entry["skipped"] = isinstance(result.error, ProviderCircuitOpen)
        else:
            entry["check"] = "connection"
            ok, elapsed_ms = await self._check_connection(adapter, breaker, entry)
        entry.update(
            success=ok,
            response_time_ms=elapsed_ms,
            health_score=await self._score(config.id, ok, elapsed_ms),
            circuit=breaker.snapshot(),
        )
        return entry

    async def _check_connection(self, adapter: QuoteAdapter, breaker, entry: dict[str, Any]) -> tuple[bool, int]:
        if adapter.config.mock_mode:
            outcome = await adapter.check_connection()
            return outcome["success"], outcome["response_time_ms"]
        try:
            breaker.allow()
        except ProviderCircuitOpen as exc:
            entry.update(error=exc.kind, skipped=True)
            return False, 0
        outcome = await adapter.check_connection()
        if outcome["success"]:
            breaker.record_success()
        else:
            breaker.record_failure()
            entry["error"] = outcome.get("error")
        return outcome["success"], outcome["response_time_ms"]

    async def check_providers(self) -> list[dict[str, Any]]:
        """Health check every active provider concurrently; no audit rows, no stats."""
        entries = await asyncio.gather(*(self._check_one(config) for config in self.registry.active()))
        for entry in entries:
            self.last_health[entry["provider_id"]] = entry
        unhealthy = [e["provider_id"] for e in entries if not e["success"]]
        if unhealthy:
            self.logger.warning(f"Health check: {len(unhealthy)}/{len(entries)} providers unhealthy: {', '.join(unhealthy)}")
        else:
            self.logger.info(f"Health check: all {len(entries)} providers healthy")
        return list(entries)

    async def run_health_checks(self, interval_seconds: float) -> None:
        """Check providers every ``interval_seconds`` until cancelled."""
        while True:
            try:
                await self.check_providers()
            except QuoteHubError as exc:
                self.logger.error(f"Health check round failed: {exc}")
            await asyncio.sleep(interval_seconds)

    async def quote_from_provider(self, provider_id: str, raw_criteria: dict[str, Any]) -> ProviderResult:
        """Single-provider quote without audit, for diagnostics."""
        config = self.registry.get(provider_id)
        criteria = parse_criteria(raw_criteria, self.registry.coverage_types())
        if not config.supports(criteria.coverage_type):
            raise QuoteValidationError(
                f"Provider {provider_id} does not support {criteria.coverage_type}", ["coverage_type"]
            )
        deadline = self._clock() + self.engine.max_request_seconds
        return await self.adapter_for(config).get_quote(criteria, deadline)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_orchestrator(config=None, **kwargs: Any) -> Orchestrator:
    """Wire registry, audit store and engine settings from the app config."""
    if config is None:
        from quotehub.core.config import get_config

        config = get_config()
    registry = ProviderRegistry.from_config(config)
    audit = AuditRecorder.from_config(config)
    return Orchestrator(registry, audit, EngineConfig(**config.engine), **kwargs)
