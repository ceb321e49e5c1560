"""Tests for LeadNurtureAgent — sequences, inbound branching, handoffs and conversion."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from outreach_engine.agents import fallback_templates as fallback
from outreach_engine.agents.lead_nurture_agent import LeadNurtureAgent
from outreach_engine.domain.enums import (
    AgentType,
    DeliveryMethod,
    HandoffUrgency,
    MessageDirection,
    MessageIntent,
    NurtureStatus,
    NurtureTrigger,
    SafetyAction,
)
from outreach_engine.domain.errors import (
    AlreadyActive,
    DeliveryFailed,
    NoActiveSequence,
    RateLimitExceeded,
    SafetyBlocked,
)
from outreach_engine.domain.models import (
    HumanHandoff,
    LeadNurtureMessage,
    LeadNurtureSequence,
    utcnow,
)
from outreach_engine.domain.schemas import LeadNurtureInput
from outreach_engine.services.handoff_queue import HandoffQueue
from outreach_engine.services.outreach_state_machine import InvalidTransitionError
from outreach_engine.services.rate_limiter import RateLimitEngine

TENANT_ID = "tenant-1"
LEAD_ID = "lead-1"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _agent(db_session, transport_mock, rule_cache) -> LeadNurtureAgent:
    return LeadNurtureAgent(db_session, TENANT_ID, transport=transport_mock, rule_cache=rule_cache)


def _input(**overrides) -> LeadNurtureInput:
    values = {
        "lead_id": LEAD_ID,
        "lead_name": "Jordan",
        "lead_phone": "+15550002222",
        "trigger_type": NurtureTrigger.MISSED_CALL,
    }
    values.update(overrides)
    return LeadNurtureInput(**values)


async def _make_due(db_session, sequence: LeadNurtureSequence) -> None:
    sequence.next_action_at = utcnow() - timedelta(minutes=1)
    await db_session.flush()


async def _count(db_session, model) -> int:
    result = await db_session.execute(select(func.count()).select_from(model))
    return result.scalar_one()


async def _messages(agent, sequence) -> list[LeadNurtureMessage]:
    return await agent.get_conversation(sequence.id)


# ---------------------------------------------------------------------------
# start_nurture_sequence
# ---------------------------------------------------------------------------


class TestStartSequence:
    async def test_sends_opening_message(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)

        sequence = await agent.start_nurture_sequence(_input())

        assert sequence.status == NurtureStatus.ACTIVE.value
        assert sequence.sequence_step == 1
        assert sequence.current_template == "missed_call_step_1"
        assert sequence.next_action_at > utcnow() + timedelta(hours=23)
        assert sequence.message_count == 1

        to, text, method = transport_mock.sent[0]
        assert to == "+15550002222"
        assert method == DeliveryMethod.SMS
        assert text.startswith("Hi Jordan! I noticed you called us earlier.")
        assert text.endswith(fallback.OPT_OUT_NOTICE)

        messages = await _messages(agent, sequence)
        assert len(messages) == 1
        assert messages[0].direction == MessageDirection.OUTBOUND.value
        assert messages[0].delivery_status == "sent"
        assert messages[0].provider_message_id == "msg-1"

        limits = await RateLimitEngine(db_session, TENANT_ID).get_limits(LEAD_ID)
        assert limits.daily_count == 1

    async def test_trigger_specific_opening(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)

        await agent.start_nurture_sequence(
            _input(trigger_type=NurtureTrigger.COLD_LEAD, trigger_data={"service": "roof repair"})
        )

        assert "interested in roof repair" in transport_mock.sent[0][1]

    async def test_second_start_returns_existing(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        first = await agent.start_nurture_sequence(_input())

        with pytest.raises(AlreadyActive) as exc:
            await agent.start_nurture_sequence(_input(trigger_type=NurtureTrigger.ABANDONED_QUOTE))

        assert exc.value.existing.id == first.id
        assert exc.value.existing.trigger_type == NurtureTrigger.MISSED_CALL.value
        assert await _count(db_session, LeadNurtureSequence) == 1
        assert len(transport_mock.sent) == 1

    async def test_rate_limited_lead_rejected(self, db_session, transport_mock, rule_cache):
        await RateLimitEngine(db_session, TENANT_ID).opt_out(LEAD_ID)
        agent = _agent(db_session, transport_mock, rule_cache)

        with pytest.raises(RateLimitExceeded):
            await agent.start_nurture_sequence(_input())

        assert await _count(db_session, LeadNurtureSequence) == 0
        assert transport_mock.sent == []

    async def test_delivery_failure_marks_failed(self, db_session, transport_mock, rule_cache):
        transport_mock.fail = "http_500"
        agent = _agent(db_session, transport_mock, rule_cache)

        with pytest.raises(DeliveryFailed):
            await agent.start_nurture_sequence(_input())

        sequence = (await db_session.execute(select(LeadNurtureSequence))).scalar_one()
        assert sequence.status == NurtureStatus.FAILED.value
        messages = await _messages(agent, sequence)
        assert messages[0].delivery_status == "failed"

        # A failed sequence no longer blocks a new one
        transport_mock.fail = None
        retry = await agent.start_nurture_sequence(_input())
        assert retry.status == NurtureStatus.ACTIVE.value

    async def test_safety_block_marks_failed(self, db_session, transport_mock, rule_cache, make_rule):
        await make_rule(
            keywords=["called us earlier"],
            action=SafetyAction.BLOCK,
            applies_to_agents=[AgentType.SALES_NURTURER.value],
        )
        agent = _agent(db_session, transport_mock, rule_cache)

        with pytest.raises(SafetyBlocked):
            await agent.start_nurture_sequence(_input())

        sequence = (await db_session.execute(select(LeadNurtureSequence))).scalar_one()
        assert sequence.status == NurtureStatus.FAILED.value
        assert transport_mock.sent == []

    async def test_tenant_template_for_step(self, db_session, transport_mock, rule_cache, make_template):
        await make_template(
            "missed_call_step_1",
            "Sorry we missed you, {{leadName}}! {{businessName}} will call back.",
            agent_type=AgentType.SALES_NURTURER,
        )
        agent = _agent(db_session, transport_mock, rule_cache)

        await agent.start_nurture_sequence(_input())

        assert transport_mock.sent[0][1] == "Sorry we missed you, Jordan! our team will call back."


# ---------------------------------------------------------------------------
# process_incoming_message
# ---------------------------------------------------------------------------


class TestOptOut:
    @pytest.mark.parametrize("text", ["STOP", "stop", "  Stop "])
    async def test_stop_opts_out(self, db_session, transport_mock, rule_cache, text):
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())

        outcome = await agent.process_incoming_message(LEAD_ID, text)

        assert outcome.opted_out is True
        assert outcome.reply == fallback.OPT_OUT_CONFIRMATION
        assert sequence.status == NurtureStatus.OPTED_OUT.value
        assert sequence.next_action_at is None
        assert transport_mock.sent[-1][1] == fallback.OPT_OUT_CONFIRMATION

        check = await RateLimitEngine(db_session, TENANT_ID).check_limit(LEAD_ID)
        assert check.allowed is False
        assert check.reason == "Customer has opted out"

    async def test_no_scheduled_messages_after_stop(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())
        await agent.process_incoming_message(LEAD_ID, "STOP")
        sent_before = len(transport_mock.sent)
        sequence.next_action_at = utcnow() - timedelta(minutes=1)
        await db_session.flush()

        batch = await agent.run_scheduled_sequences()

        assert batch.processed == 0
        assert len(transport_mock.sent) == sent_before

    async def test_opt_out_wins_over_handoff_rules(
        self, db_session, transport_mock, rule_cache, make_rule
    ):
        await make_rule(keywords=["stop"], action=SafetyAction.HANDOFF)
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())

        outcome = await agent.process_incoming_message(LEAD_ID, "stop")

        assert outcome.opted_out is True
        assert outcome.handoff is False
        assert sequence.status == NurtureStatus.OPTED_OUT.value
        assert await _count(db_session, HumanHandoff) == 0

    async def test_no_active_sequence(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)

        with pytest.raises(NoActiveSequence):
            await agent.process_incoming_message(LEAD_ID, "Hello")


class TestHandoff:
    async def test_not_interested_opens_handoff(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())

        outcome = await agent.process_incoming_message(LEAD_ID, "I'm not interested")

        assert outcome.handoff is True
        assert outcome.reply == fallback.HANDOFF_ACK
        assert outcome.analysis.intent == MessageIntent.NOT_INTERESTED
        assert sequence.status == NurtureStatus.ACTIVE.value
        assert transport_mock.sent[-1][1] == fallback.HANDOFF_ACK

        handoff = (await db_session.execute(select(HumanHandoff))).scalar_one()
        assert handoff.id == outcome.handoff_id
        assert handoff.reason == "Lead not interested"
        assert handoff.urgency == HandoffUrgency.NORMAL.value
        assert handoff.conversation_id == sequence.id
        assert handoff.customer_id == LEAD_ID
        assert [h["role"] for h in handoff.conversation_history] == ["agent", "customer"]
        assert handoff.conversation_history[-1]["message"] == "I'm not interested"
        assert handoff.customer_context["intent"] == "not_interested"

        messages = await _messages(agent, sequence)
        inbound = [m for m in messages if m.direction == MessageDirection.INBOUND.value]
        assert inbound[0].needs_human_handoff is True
        assert inbound[0].delivery_status == "received"

    async def test_safety_handoff_with_negative_sentiment_is_high(
        self, seeded_session, transport_mock, rule_cache
    ):
        agent = _agent(seeded_session, transport_mock, rule_cache)
        await agent.start_nurture_sequence(_input())

        outcome = await agent.process_incoming_message(LEAD_ID, "This is the worst service")

        handoff = await HandoffQueue(seeded_session, TENANT_ID).get(outcome.handoff_id)
        assert handoff.urgency == HandoffUrgency.HIGH.value
        assert handoff.reason == "Safety rule triggered: Strong Negative Sentiment"

    async def test_request_for_human_hands_off(self, seeded_session, transport_mock, rule_cache):
        agent = _agent(seeded_session, transport_mock, rule_cache)
        await agent.start_nurture_sequence(_input())

        outcome = await agent.process_incoming_message(LEAD_ID, "Can I talk to a real person")

        assert outcome.handoff is True
        handoff = await HandoffQueue(seeded_session, TENANT_ID).get(outcome.handoff_id)
        assert handoff.urgency == HandoffUrgency.NORMAL.value

    async def test_open_handoff_silences_replies(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())
        first = await agent.process_incoming_message(LEAD_ID, "No thanks")
        sent_before = len(transport_mock.sent)

        second = await agent.process_incoming_message(LEAD_ID, "Yes actually, call me")

        assert second.handoff is True
        assert second.handoff_id == first.handoff_id
        assert second.reply is None
        assert len(transport_mock.sent) == sent_before
        assert await _count(db_session, HumanHandoff) == 1
        # Inbound still logged
        messages = await _messages(agent, sequence)
        assert messages[-1].message_text == "Yes actually, call me"

    async def test_open_handoff_pauses_scheduled_steps(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())
        outcome = await agent.process_incoming_message(LEAD_ID, "not now")
        await _make_due(db_session, sequence)

        paused = await agent.run_scheduled_sequences()
        assert paused.processed == 0
        assert sequence.sequence_step == 1

        await HandoffQueue(db_session, TENANT_ID).resolve(outcome.handoff_id, "Lead wants a call in May")
        resumed = await agent.run_scheduled_sequences()
        assert resumed.processed == 1
        assert sequence.sequence_step == 2


class TestReplies:
    async def test_ready_to_buy_qualifies_lead(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())

        outcome = await agent.process_incoming_message(LEAD_ID, "Yes, I'm ready")

        assert outcome.qualified is True
        assert outcome.handoff is False
        assert outcome.reply == fallback.REPLIES["affirmative"]
        assert sequence.lead_qualified is True
        assert sequence.status == NurtureStatus.ACTIVE.value
        assert sequence.last_message_received_at is not None
        assert transport_mock.sent[-1][1] == fallback.REPLIES["affirmative"]

    @pytest.mark.parametrize(
        "text,reply_key",
        [
            ("What areas do you cover?", "question"),
            ("How much would it cost", "pricing"),
            ("When are you available", "scheduling"),
            ("Hmm maybe later in the spring", "generic"),
        ],
    )
    async def test_keyword_replies(self, db_session, transport_mock, rule_cache, text, reply_key):
        agent = _agent(db_session, transport_mock, rule_cache)
        await agent.start_nurture_sequence(_input())

        outcome = await agent.process_incoming_message(LEAD_ID, text)

        assert outcome.reply == fallback.REPLIES[reply_key]
        assert outcome.qualified is False

    async def test_conversation_logged_both_directions(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())

        await agent.process_incoming_message(LEAD_ID, "What areas do you cover?")

        messages = await _messages(agent, sequence)
        assert [m.direction for m in messages] == ["outbound", "inbound", "outbound"]
        assert messages[1].detected_intent == "question"
        assert messages[2].template_used == "auto_response"
        assert sequence.message_count == 3

    async def test_reply_delivery_failure_raises(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())
        transport_mock.fail = "http_503"

        with pytest.raises(DeliveryFailed):
            await agent.process_incoming_message(LEAD_ID, "What areas do you cover?")

        assert sequence.status == NurtureStatus.ACTIVE.value

    async def test_replies_do_not_count_against_rate_limit(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        await agent.start_nurture_sequence(_input())

        await agent.process_incoming_message(LEAD_ID, "What areas do you cover?")

        limits = await RateLimitEngine(db_session, TENANT_ID).get_limits(LEAD_ID)
        assert limits.daily_count == 1


# ---------------------------------------------------------------------------
# run_scheduled_sequences
# ---------------------------------------------------------------------------


class TestScheduledSequences:
    async def test_due_sequence_sends_next_step(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())
        await _make_due(db_session, sequence)

        batch = await agent.run_scheduled_sequences()

        assert batch.processed == 1
        assert sequence.sequence_step == 2
        assert sequence.current_template == "missed_call_step_2"
        assert sequence.next_action_at > utcnow() + timedelta(hours=23)
        assert transport_mock.sent[-1][1].startswith("Just following up on your call.")

    async def test_immediate_rerun_sends_nothing(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())
        await _make_due(db_session, sequence)

        await agent.run_scheduled_sequences()
        second = await agent.run_scheduled_sequences()

        assert second.processed == 0
        assert len(transport_mock.sent) == 2

    async def test_exhausted_sequence_completes(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())
        sequence.sequence_step = sequence.max_steps
        await _make_due(db_session, sequence)

        batch = await agent.run_scheduled_sequences()

        assert batch.completed == 1
        assert batch.processed == 0
        assert sequence.status == NurtureStatus.COMPLETED.value
        assert sequence.next_action_at is None
        assert len(transport_mock.sent) == 1

    async def test_failed_send_does_not_advance(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())
        await _make_due(db_session, sequence)
        transport_mock.fail = "timeout"

        batch = await agent.run_scheduled_sequences()

        assert batch.failed == 1
        assert sequence.sequence_step == 1
        assert sequence.status == NurtureStatus.ACTIVE.value

    async def test_rate_limited_step_skipped(
        self, db_session, transport_mock, rule_cache, make_tenant_settings
    ):
        await make_tenant_settings(daily_limit=1)
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())
        await _make_due(db_session, sequence)

        batch = await agent.run_scheduled_sequences()

        assert batch.skipped == 1
        assert sequence.sequence_step == 1

    async def test_steps_past_message_bank_reuse_last_variant(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())
        sequence.sequence_step = 3
        await _make_due(db_session, sequence)

        await agent.run_scheduled_sequences()

        assert sequence.sequence_step == 4
        assert transport_mock.sent[-1][1].startswith("Still interested in our services?")

    async def test_other_tenant_untouched(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())
        await _make_due(db_session, sequence)
        other = LeadNurtureAgent(db_session, "tenant-2", transport=transport_mock, rule_cache=rule_cache)

        batch = await other.run_scheduled_sequences()

        assert batch.processed == 0
        assert sequence.sequence_step == 1


# ---------------------------------------------------------------------------
# schedule_appointment
# ---------------------------------------------------------------------------


class TestScheduleAppointment:
    async def test_converts_sequence(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())
        appointment = datetime(2026, 5, 4, 14, 30, tzinfo=timezone(timedelta(hours=-4)))

        converted = await agent.schedule_appointment(sequence.id, appointment, conversion_value=450.0)

        assert converted.status == NurtureStatus.CONVERTED.value
        assert converted.appointment_scheduled is True
        assert converted.appointment_at == datetime(2026, 5, 4, 18, 30)
        assert converted.converted_at is not None
        assert converted.conversion_value == 450.0
        assert converted.next_action_at is None

    async def test_converted_sequence_is_closed(self, db_session, transport_mock, rule_cache):
        agent = _agent(db_session, transport_mock, rule_cache)
        sequence = await agent.start_nurture_sequence(_input())
        await agent.schedule_appointment(sequence.id, datetime(2026, 5, 4, 14, 30))

        with pytest.raises(NoActiveSequence):
            await agent.process_incoming_message(LEAD_ID, "Yes")
        with pytest.raises(InvalidTransitionError):
            await agent.schedule_appointment(sequence.id, datetime(2026, 5, 5, 9, 0))
