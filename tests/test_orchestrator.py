"""Quote search orchestration tests."""

import asyncio
import time

import httpx
import pytest

from quotehub.core.error_handler import NoEligibleProviders, NoQuotesAvailable, QuoteValidationError
from quotehub.modules.quote.models import ProviderResult, RequestStatus
from quotehub.modules.quote.orchestrator import failure_summary
from quotehub.modules.quote.errors import ProviderRateLimited, ProviderTimeout
from tests.conftest import make_provider


@pytest.mark.asyncio
async def test_mock_providers_with_one_inactive(build_orchestrator, audit, criteria) -> None:
    engine = build_orchestrator(
        [
            make_provider("alpha", priority=1),
            make_provider("bravo", priority=2),
            make_provider("charlie", priority=3, is_active=False),
        ]
    )

    result = await engine.execute(criteria, user_id="u-1")

    assert result.status == RequestStatus.SUCCESS
    assert result.providers_requested == ["alpha", "bravo"]
    assert sorted(result.providers_responded) == ["alpha", "bravo"]
    assert len(result.quotes) == 2
    premiums = [q.monthly_premium for q in result.quotes]
    assert premiums == sorted(premiums)

    row = await audit.get_request(result.request_id)
    assert row.status == RequestStatus.SUCCESS
    assert row.user_id == "u-1"
    assert row.providers_requested == ["alpha", "bravo"]
    # what was persisted is exactly what the caller received
    assert row.response_data == [q.to_dict() for q in result.quotes]


@pytest.mark.asyncio
async def test_all_providers_time_out(build_orchestrator, audit, criteria) -> None:
    calls = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        await asyncio.sleep(5)
        return httpx.Response(200, json={"monthly_premium": 10})

    providers = [make_provider(pid, api_key="k", timeout=1) for pid in ("alpha", "bravo", "charlie")]
    engine = build_orchestrator(providers, handler)

    started = time.monotonic()
    with pytest.raises(NoQuotesAvailable) as exc_info:
        await engine.execute(criteria)
    assert time.monotonic() - started < 2.0

    error = exc_info.value
    assert "3/3 providers failed" in error.message
    assert "timeouts" in error.message
    assert set(error.errors.values()) == {"timeout"}

    row = await audit.get_request(error.request_id)
    assert row.status == RequestStatus.ERROR
    assert row.providers_responded == []
    assert row.error_message == error.message

    for pid in ("alpha", "bravo", "charlie"):
        stats = await audit.get_provider_stats(pid)
        assert stats.failed_requests == 1
        assert stats.successful_requests == 0
        assert stats.total_requests == 1


@pytest.mark.asyncio
async def test_missing_coverage_amount_is_rejected_before_dispatch(build_orchestrator, audit, criteria) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"monthly_premium": 10})

    engine = build_orchestrator([make_provider("alpha", api_key="k")], handler)
    criteria.pop("coverage_amount")

    with pytest.raises(QuoteValidationError) as exc_info:
        await engine.execute(criteria)

    assert "coverage_amount" in exc_info.value.fields
    assert await audit.count_requests() == 0
    assert calls == []
    assert (await audit.get_provider_stats("alpha")).total_requests == 0


@pytest.mark.asyncio
async def test_partial_success_is_success(build_orchestrator, audit, criteria) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "good.test":
            return httpx.Response(200, json={"monthly_premium": 31.5})
        return httpx.Response(500)

    engine = build_orchestrator(
        [
            make_provider("good", api_key="k", base_url="https://good.test"),
            make_provider("bad", api_key="k", base_url="https://bad.test"),
        ],
        handler,
    )

    result = await engine.execute(criteria)

    assert result.status == RequestStatus.SUCCESS
    assert result.providers_responded == ["good"]
    assert set(result.providers_responded) <= set(result.providers_requested)
    assert result.errors == {"bad": "http_error (500)"}
    assert [q.provider.id for q in result.quotes] == ["good"]
    assert result.summary["total_quotes"] == 1

    good = await audit.get_provider_stats("good")
    bad = await audit.get_provider_stats("bad")
    assert (good.successful_requests, good.failed_requests) == (1, 0)
    assert (bad.successful_requests, bad.failed_requests) == (0, 1)


@pytest.mark.asyncio
async def test_eligibility_filter(build_orchestrator, criteria) -> None:
    engine = build_orchestrator(
        [
            make_provider("life_only", supported_coverage_types=["life"]),
            make_provider("dental_only", supported_coverage_types=["dental"]),
            make_provider("anything", supported_coverage_types=["all"], priority=1),
            make_provider("off", supported_coverage_types=["life"], is_active=False),
        ]
    )

    result = await engine.execute(criteria)

    assert result.providers_requested == ["anything", "life_only"]


@pytest.mark.asyncio
async def test_no_eligible_providers_writes_nothing(build_orchestrator, audit, criteria) -> None:
    engine = build_orchestrator([make_provider("dental_only", supported_coverage_types=["dental"])])

    with pytest.raises(NoEligibleProviders) as exc_info:
        await engine.execute(criteria)

    assert exc_info.value.message == "no eligible providers"
    assert await audit.count_requests() == 0


@pytest.mark.asyncio
async def test_request_deadline_cancels_slow_providers(build_orchestrator, audit, criteria) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(3)
        return httpx.Response(200, json={"monthly_premium": 10})

    engine = build_orchestrator(
        [make_provider("slow", api_key="k", timeout=30000), make_provider("fast")],
        handler,
        max_request_seconds=0.2,
    )

    started = time.monotonic()
    result = await engine.execute(criteria)

    assert time.monotonic() - started < 1.5
    assert result.providers_responded == ["fast"]
    assert result.errors["slow"] in ("timeout", "deadline_exceeded")
    assert (await audit.get_provider_stats("slow")).failed_requests == 1


@pytest.mark.asyncio
async def test_stragglers_are_recorded_as_deadline_exceeded(build_orchestrator, audit, criteria) -> None:
    engine = build_orchestrator([make_provider("stuck"), make_provider("fine")], max_request_seconds=0.1)

    class Stubborn:
        async def get_quote(self, criteria, deadline=None):
            await asyncio.sleep(10)

    original = engine.adapter_for
    engine.adapter_for = lambda config: Stubborn() if config.id == "stuck" else original(config)

    result = await engine.execute(criteria)

    assert result.providers_responded == ["fine"]
    assert result.errors == {"stuck": "deadline_exceeded"}
    stats = await audit.get_provider_stats("stuck")
    assert (stats.failed_requests, stats.total_requests) == (1, 1)


@pytest.mark.asyncio
async def test_config_edits_do_not_reach_dispatched_request(build_orchestrator, criteria) -> None:
    release = asyncio.Event()
    entered = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        entered.set()
        await release.wait()
        return httpx.Response(200, json={"monthly_premium": 12})

    engine = build_orchestrator([make_provider("alpha", api_key="k", display_name="Before")], handler)

    task = asyncio.create_task(engine.execute(criteria))
    await asyncio.wait_for(entered.wait(), timeout=2)
    engine.registry.update("alpha", {"display_name": "After"})
    release.set()
    result = await task

    assert result.quotes[0].provider.display_name == "Before"
    assert engine.registry.get("alpha").display_name == "After"


@pytest.mark.asyncio
async def test_quote_from_provider_skips_audit(build_orchestrator, audit, criteria) -> None:
    engine = build_orchestrator([make_provider("alpha")])

    result = await engine.quote_from_provider("alpha", criteria)

    assert result.ok
    assert await audit.count_requests() == 0
    assert (await audit.get_provider_stats("alpha")).total_requests == 0


@pytest.mark.asyncio
async def test_test_provider_uses_health_endpoint(build_orchestrator) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        return httpx.Response(200)

    engine = build_orchestrator([make_provider("alpha", api_key="k")], handler)

    result = await engine.test_provider("alpha")

    assert result["success"] is True
    assert result["status_code"] == 200


@pytest.mark.asyncio
async def test_open_circuit_skips_provider_on_next_request(build_orchestrator, audit, criteria) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        return httpx.Response(502)

    breaker_settings = {"failure_threshold": 2, "recovery_timeout": 60000}
    engine = build_orchestrator([make_provider("alpha", api_key="k", circuit_breaker=breaker_settings)], handler)

    for _ in range(2):
        with pytest.raises(NoQuotesAvailable):
            await engine.execute(criteria)
    assert engine.registry.breaker("alpha").state.value == "open"

    with pytest.raises(NoQuotesAvailable) as exc_info:
        await engine.execute(criteria)

    assert len(calls) == 2
    assert exc_info.value.message == "1/1 providers failed: 1 circuit open"
    assert exc_info.value.errors == {"alpha": "circuit_open"}
    stats = await audit.get_provider_stats("alpha")
    assert (stats.failed_requests, stats.total_requests) == (3, 3)


@pytest.mark.asyncio
async def test_check_providers_scores_each_active_provider(build_orchestrator, audit) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        if request.url.host == "broken.test":
            return httpx.Response(503)
        return httpx.Response(200)

    engine = build_orchestrator(
        [
            make_provider("alpha"),
            make_provider("teeth", api_key="k", supported_coverage_types=["dental"]),
            make_provider(
                "broken",
                api_key="k",
                base_url="https://broken.test",
                supported_coverage_types=["vision"],
                circuit_breaker={"failure_threshold": 1, "recovery_timeout": 60000},
            ),
            make_provider("idle", is_active=False),
        ],
        handler,
    )

    entries = {e["provider_id"]: e for e in await engine.check_providers()}

    assert set(entries) == {"alpha", "teeth", "broken"}
    assert entries["alpha"]["check"] == "quote"
    assert entries["alpha"]["success"] is True
    assert entries["alpha"]["health_score"] >= 99
    assert entries["teeth"]["check"] == "connection"
    assert entries["teeth"]["success"] is True
    assert entries["broken"]["success"] is False
    assert entries["broken"]["health_score"] == 0
    assert entries["broken"]["circuit"]["state"] == "open"
    assert engine.last_health["teeth"] is entries["teeth"]
    # health checks leave the audit trail alone
    assert await audit.count_requests() == 0
    assert (await audit.get_provider_stats("alpha")).total_requests == 0

    again = {e["provider_id"]: e for e in await engine.check_providers()}
    assert again["broken"]["skipped"] is True
    assert again["broken"]["error"] == "circuit_open"


@pytest.mark.asyncio
async def test_test_provider_reports_health_score_and_circuit(build_orchestrator) -> None:
    engine = build_orchestrator([make_provider("alpha")])

    result = await engine.test_provider("alpha")

    assert result["health_score"] == 100
    assert result["circuit"]["state"] == "closed"
    assert result["circuit"]["provider_id"] == "alpha"


@pytest.mark.asyncio
async def test_logs_carry_request_and_provider_ids(build_orchestrator, criteria) -> None:
    from loguru import logger

    engine = build_orchestrator([make_provider("alpha"), make_provider("bravo")])
    records = []
    sink_id = logger.add(lambda message: records.append(dict(message.record["extra"])), level="DEBUG")
    try:
        result = await engine.execute(criteria)
    finally:
        logger.remove(sink_id)

    tagged = {(r.get("request_id"), r.get("provider_id")) for r in records}
    assert (result.request_id, "alpha") in tagged
    assert (result.request_id, "bravo") in tagged


def test_failure_summary_wording() -> None:
    results = [
        ProviderResult("a", error=ProviderTimeout("a", "t")),
        ProviderResult("b", error=ProviderTimeout("b", "t")),
        ProviderResult("c", error=ProviderRateLimited("c", "r")),
    ]

    assert failure_summary(results) == "3/3 providers failed: 2 timeouts, 1 rate-limited"
