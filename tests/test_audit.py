"""
Audit Recorder Tests
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from quotehub.core.error_handler import AuditError
from quotehub.modules.quote.audit import ABANDONED_MESSAGE, AuditRecorder
from quotehub.modules.quote.models import ExternalQuoteRequest, RequestStatus


class WallClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _request(request_id: str = "req-1") -> ExternalQuoteRequest:
    return ExternalQuoteRequest(
        request_id=request_id,
        request_data={"coverage_type": "life", "coverage_amount": 100000},
        providers_requested=["alpha", "bravo"],
        user_id="u-1",
    )


@pytest.mark.asyncio
async def test_pending_then_success(audit) -> None:
    created = await audit.create_pending(_request())
    assert created.id is not None
    assert created.status == RequestStatus.PENDING

    await audit.finalize(
        "req-1",
        RequestStatus.SUCCESS,
        response_data=[{"quote_id": "q1", "monthly_premium": 10.0}],
        providers_responded=["alpha"],
    )

    row = await audit.get_request("req-1")
    assert row.status == RequestStatus.SUCCESS
    assert row.is_terminal
    assert row.providers_requested == ["alpha", "bravo"]
    assert row.providers_responded == ["alpha"]
    assert row.response_data == [{"quote_id": "q1", "monthly_premium": 10.0}]
    assert row.request_data["coverage_amount"] == 100000


@pytest.mark.asyncio
async def test_terminal_rows_are_immutable(audit) -> None:
    await audit.create_pending(_request())
    await audit.finalize("req-1", RequestStatus.ERROR, error_message="1/1 providers failed: 1 timeout")

    with pytest.raises(AuditError):
        await audit.finalize("req-1", RequestStatus.SUCCESS, response_data=[], providers_responded=["alpha"])

    row = await audit.get_request("req-1")
    assert row.status == RequestStatus.ERROR
    assert row.error_message == "1/1 providers failed: 1 timeout"


@pytest.mark.asyncio
async def test_finalize_rejects_unknown_and_pending(audit) -> None:
    with pytest.raises(AuditError):
        await audit.finalize("missing", RequestStatus.SUCCESS)

    await audit.create_pending(_request())
    with pytest.raises(AuditError):
        await audit.finalize("req-1", RequestStatus.PENDING)


@pytest.mark.asyncio
async def test_duplicate_request_id_rejected(audit) -> None:
    await audit.create_pending(_request())
    with pytest.raises(AuditError):
        await audit.create_pending(_request())


@pytest.mark.asyncio
async def test_concurrent_outcomes_are_counted_exactly(audit) -> None:
    outcomes = [True] * 12 + [False] * 8

    await asyncio.gather(*(audit.record_provider_outcome("alpha", ok) for ok in outcomes))

    stats = await audit.get_provider_stats("alpha")
    assert stats.total_requests == 20
    assert stats.successful_requests == 12
    assert stats.failed_requests == 8
    assert stats.success_rate == pytest.approx(0.6)
    assert stats.to_dict()["success_rate"] == 0.6


@pytest.mark.asyncio
async def test_stats_for_unknown_provider_are_zero(audit) -> None:
    stats = await audit.get_provider_stats("never")
    assert stats.total_requests == 0
    assert stats.success_rate == 0.0
    assert await audit.get_stats() == []


@pytest.mark.asyncio
async def test_list_requests_paginates_newest_first(temp_dir) -> None:
    clock = WallClock()
    audit = AuditRecorder(str(temp_dir / "paged.db"), now=clock)
    for i in range(5):
        await audit.create_pending(_request(f"req-{i}"))
        clock.advance(1)
    await audit.finalize("req-0", RequestStatus.SUCCESS, response_data=[], providers_responded=["alpha"])

    first = await audit.list_requests(page=1, limit=2)
    last = await audit.list_requests(page=3, limit=2)
    only_success = await audit.list_requests(status="success")

    assert [r.request_id for r in first["requests"]] == ["req-4", "req-3"]
    assert first["pagination"] == {"page": 1, "limit": 2, "total": 5, "total_pages": 3}
    assert [r.request_id for r in last["requests"]] == ["req-0"]
    assert [r.request_id for r in only_success["requests"]] == ["req-0"]
    assert await audit.count_requests("pending") == 4


@pytest.mark.asyncio
async def test_stuck_pending_rows_are_reported_and_reconciled(temp_dir) -> None:
    clock = WallClock()
    audit = AuditRecorder(str(temp_dir / "stuck.db"), now=clock)
    await audit.create_pending(_request("old"))
    await audit.create_pending(_request("done"))
    await audit.finalize("done", RequestStatus.SUCCESS, response_data=[], providers_responded=["alpha"])
    clock.advance(120)
    await audit.create_pending(_request("fresh"))

    stuck = await audit.list_stuck_requests(60)
    assert [r.request_id for r in stuck] == ["old"]

    reconciled = await audit.reconcile_stuck_requests(60)
    assert reconciled == ["old"]

    row = await audit.get_request("old")
    assert row.status == RequestStatus.ERROR
    assert row.error_message == ABANDONED_MESSAGE
    assert (await audit.get_request("fresh")).status == RequestStatus.PENDING
    assert await audit.list_stuck_requests(60) == []
