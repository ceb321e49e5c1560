"""Tests for OutreachScheduler and the scheduler cron endpoint."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

from sqlalchemy import select

from outreach_engine.agents.lead_nurture_agent import LeadNurtureAgent
from outreach_engine.agents.review_request_agent import ReviewRequestAgent
from outreach_engine.domain.contracts import DeliveryResult
from outreach_engine.domain.enums import NurtureTrigger
from outreach_engine.domain.models import LeadNurtureSequence, ReviewRequest, utcnow
from outreach_engine.domain.schemas import LeadNurtureInput, ReviewRequestInput
from outreach_engine.services.scheduler import OutreachScheduler


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _seed_due_work(db_session, transport_mock, rule_cache, tenant_id: str):
    """One due review follow-up and one due nurture step for ``tenant_id``."""
    review_agent = ReviewRequestAgent(db_session, tenant_id, transport=transport_mock, rule_cache=rule_cache)
    request = await review_agent.create_review_request(
        ReviewRequestInput(
            customer_id=f"{tenant_id}-cust",
            customer_name="Ada",
            customer_phone="+15550001111",
            job_type="HVAC repair",
        )
    )
    nurture_agent = LeadNurtureAgent(db_session, tenant_id, transport=transport_mock, rule_cache=rule_cache)
    sequence = await nurture_agent.start_nurture_sequence(
        LeadNurtureInput(
            lead_id=f"{tenant_id}-lead",
            lead_name="Jordan",
            lead_phone="+15550002222",
            trigger_type=NurtureTrigger.ABANDONED_QUOTE,
        )
    )
    past = utcnow() - timedelta(minutes=1)
    request.next_follow_up_at = past
    sequence.next_action_at = past
    await db_session.flush()
    return request, sequence


def _raise_on_call(transport_mock, call_number: int, error: str) -> list[str]:
    """Swap the transport's send for one that raises on the ``call_number``-th call."""
    calls = []

    async def _send(to, text, method):
        calls.append(to)
        if len(calls) == call_number:
            raise RuntimeError(error)
        return DeliveryResult(success=True, provider_message_id=f"msg-{len(calls)}")

    transport_mock.send = AsyncMock(side_effect=_send)
    return calls


async def _seed_due_review_requests(db_session, transport_mock, rule_cache, phones: list[str]):
    agent = ReviewRequestAgent(db_session, "tenant-1", transport=transport_mock, rule_cache=rule_cache)
    for i, phone in enumerate(phones):
        request = await agent.create_review_request(
            ReviewRequestInput(customer_id=f"cust-{i}", customer_name="Ada", customer_phone=phone)
        )
        # oldest first, so the batch order follows ``phones``
        request.next_follow_up_at = utcnow() - timedelta(minutes=10 - i)
    await db_session.commit()


async def _seed_due_sequences(db_session, transport_mock, rule_cache, phones: list[str]):
    agent = LeadNurtureAgent(db_session, "tenant-1", transport=transport_mock, rule_cache=rule_cache)
    for i, phone in enumerate(phones):
        sequence = await agent.start_nurture_sequence(
            LeadNurtureInput(
                lead_id=f"lead-{i}",
                lead_phone=phone,
                trigger_type=NurtureTrigger.MISSED_CALL,
            )
        )
        sequence.next_action_at = utcnow() - timedelta(minutes=10 - i)
    await db_session.commit()


# ---------------------------------------------------------------------------
# OutreachScheduler.tick
# ---------------------------------------------------------------------------


async def test_tick_runs_every_tenant(db_session, transport_mock, rule_cache):
    await _seed_due_work(db_session, transport_mock, rule_cache, "tenant-1")
    await _seed_due_work(db_session, transport_mock, rule_cache, "tenant-2")
    sent_before = len(transport_mock.sent)

    results = await OutreachScheduler(db_session, transport=transport_mock, rule_cache=rule_cache).tick()

    assert results["followups_sent"] == 2
    assert results["nurture_steps_sent"] == 2
    assert results["nurture_completed"] == 0
    assert "followups_error" not in results
    assert len(transport_mock.sent) == sent_before + 4


async def test_tick_with_nothing_due(db_session, transport_mock, rule_cache):
    results = await OutreachScheduler(db_session, transport=transport_mock, rule_cache=rule_cache).tick()

    assert results["followups_sent"] == 0
    assert results["nurture_steps_sent"] == 0
    transport_mock.send.assert_not_called()


async def test_second_tick_sends_nothing(db_session, transport_mock, rule_cache):
    await _seed_due_work(db_session, transport_mock, rule_cache, "tenant-1")
    scheduler = OutreachScheduler(db_session, transport=transport_mock, rule_cache=rule_cache)

    await scheduler.tick()
    sent_after_first = len(transport_mock.sent)
    results = await scheduler.tick()

    assert results["followups_sent"] == 0
    assert results["nurture_steps_sent"] == 0
    assert len(transport_mock.sent) == sent_after_first


async def test_failing_batch_is_isolated(db_session, transport_mock, rule_cache):
    """If one batch raises, the other still runs and the error is reported."""
    await _seed_due_work(db_session, transport_mock, rule_cache, "tenant-1")
    await db_session.commit()

    with patch.object(
        ReviewRequestAgent, "run_followup_sequence", AsyncMock(side_effect=RuntimeError("boom"))
    ):
        results = await OutreachScheduler(
            db_session, transport=transport_mock, rule_cache=rule_cache
        ).tick()

    assert results["followups_error"] == {"tenant-1": "boom"}
    assert results["nurture_steps_sent"] == 1

    step = (await db_session.execute(select(LeadNurtureSequence.sequence_step))).scalar_one()
    assert step == 2
    review_step = (await db_session.execute(select(ReviewRequest.sequence_step))).scalar_one()
    assert review_step == 1


async def test_followup_exception_mid_batch_keeps_earlier_sends(db_session, transport_mock, rule_cache):
    """A raising send only fails its own record; the next tick retries just that one."""
    await _seed_due_review_requests(
        db_session, transport_mock, rule_cache, ["+15550000001", "+15550000002"]
    )
    calls = _raise_on_call(transport_mock, 2, "provider socket reset")
    scheduler = OutreachScheduler(db_session, transport=transport_mock, rule_cache=rule_cache)

    first = await scheduler.tick()
    second = await scheduler.tick()

    assert first["followups_sent"] == 1
    assert first["followups_failed"] == 1
    assert "followups_error" not in first
    assert second["followups_sent"] == 1
    assert calls == ["+15550000001", "+15550000002", "+15550000002"]

    rows = await db_session.execute(select(ReviewRequest.contact_address, ReviewRequest.sequence_step))
    assert dict(rows.all()) == {"+15550000001": 2, "+15550000002": 2}


async def test_nurture_exception_mid_batch_keeps_earlier_sends(db_session, transport_mock, rule_cache):
    await _seed_due_sequences(db_session, transport_mock, rule_cache, ["+15550000001", "+15550000002"])
    calls = _raise_on_call(transport_mock, 2, "provider socket reset")
    scheduler = OutreachScheduler(db_session, transport=transport_mock, rule_cache=rule_cache)

    first = await scheduler.tick()
    second = await scheduler.tick()

    assert first["nurture_steps_sent"] == 1
    assert first["nurture_steps_failed"] == 1
    assert "nurture_error" not in first
    assert second["nurture_steps_sent"] == 1
    assert calls == ["+15550000001", "+15550000002", "+15550000002"]

    rows = await db_session.execute(
        select(LeadNurtureSequence.contact_address, LeadNurtureSequence.sequence_step)
    )
    assert dict(rows.all()) == {"+15550000001": 2, "+15550000002": 2}


# ---------------------------------------------------------------------------
# Cron endpoint
# ---------------------------------------------------------------------------


async def test_scheduler_tick_endpoint(api_client, internal_headers, db_session, transport_mock, rule_cache):
    """POST /api/internal/scheduler/tick should return 200 with results dict."""
    await _seed_due_work(db_session, transport_mock, rule_cache, "tenant-1")

    resp = await api_client.post("/api/internal/scheduler/tick", headers=internal_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["results"]["followups_sent"] == 1
    assert body["results"]["nurture_steps_sent"] == 1


async def test_scheduler_tick_rejects_bad_token(api_client):
    resp = await api_client.post(
        "/api/internal/scheduler/tick", headers={"X-Internal-Token": "wrong"}
    )

    assert resp.status_code == 401
