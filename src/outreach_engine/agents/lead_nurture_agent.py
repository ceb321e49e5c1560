"""Lead Nurture Agent — re-engages leads after a missed call, abandoned quote
or silence, and answers their replies until a human or a terminal status
takes over.

Lifecycle: active -> completed | converted | opted_out | failed. Only an
active sequence sends or processes messages. A handoff never closes the
sequence; it only silences the automation until an operator resolves it.
"""

import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from outreach_engine.agents import fallback_templates as fallback
from outreach_engine.agents.base import OutreachAgent, contact_for
from outreach_engine.agents.classifier import (
    KeywordMessageClassifier,
    MessageClassifier,
    is_opt_out,
)
from outreach_engine.domain.contracts import (
    BatchResult,
    IncomingMessageOutcome,
    MessageAnalysis,
)
from outreach_engine.domain.enums import (
    AgentType,
    DeliveryMethod,
    DeliveryStatus,
    HandoffUrgency,
    MessageDirection,
    MessageIntent,
    MessageSentiment,
    NurtureStatus,
    SafetyAction,
)
from outreach_engine.domain.errors import (
    AlreadyActive,
    DeliveryFailed,
    NoActiveSequence,
    NotFound,
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
from outreach_engine.services.outreach_state_machine import (
    OPEN_HANDOFF_STATES,
    nurture_state_machine,
)

logger = logging.getLogger(__name__)

OPT_OUT_REASON = "Customer requested opt-out"
NOT_INTERESTED_REASON = "Lead not interested"

PRICING_RE = re.compile(r"\b(?:price|prices|pricing|cost|costs|how much)\b", re.IGNORECASE)
SCHEDULING_RE = re.compile(r"\b(?:available|availability|schedule|when)\b", re.IGNORECASE)
AFFIRMATIVE_RE = re.compile(r"\b(?:yes|interested)\b", re.IGNORECASE)


def choose_reply(text: str, analysis: MessageAnalysis) -> str:
    """Keyword-driven reply to an inbound lead message."""
    if "?" in text or analysis.intent == MessageIntent.QUESTION:
        return fallback.REPLIES["question"]
    if PRICING_RE.search(text):
        return fallback.REPLIES["pricing"]
    if SCHEDULING_RE.search(text):
        return fallback.REPLIES["scheduling"]
    if AFFIRMATIVE_RE.search(text) or analysis.intent == MessageIntent.READY_TO_BUY:
        return fallback.REPLIES["affirmative"]
    return fallback.REPLIES["generic"]


class LeadNurtureAgent(OutreachAgent):
    """Nurture sequences, inbound replies and appointment conversion."""

    agent_type = AgentType.SALES_NURTURER

    def __init__(
        self,
        db: AsyncSession,
        tenant_id: str,
        transport=None,
        rule_cache=None,
        classifier: Optional[MessageClassifier] = None,
    ):
        super().__init__(db, tenant_id, transport=transport, rule_cache=rule_cache)
        self.classifier = classifier or KeywordMessageClassifier()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_active_sequence(self, lead_id: str) -> Optional[LeadNurtureSequence]:
        result = await self.db.execute(
            select(LeadNurtureSequence).where(
                and_(
                    LeadNurtureSequence.tenant_id == self.tenant_id,
                    LeadNurtureSequence.lead_id == lead_id,
                    LeadNurtureSequence.status == NurtureStatus.ACTIVE.value,
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_sequence(self, sequence_id: str) -> LeadNurtureSequence:
        result = await self.db.execute(
            select(LeadNurtureSequence).where(
                and_(
                    LeadNurtureSequence.id == sequence_id,
                    LeadNurtureSequence.tenant_id == self.tenant_id,
                )
            )
        )
        sequence = result.scalar_one_or_none()
        if sequence is None:
            raise NotFound("LeadNurtureSequence", sequence_id)
        return sequence

    async def get_conversation(self, sequence_id: str) -> list[LeadNurtureMessage]:
        result = await self.db.execute(
            select(LeadNurtureMessage)
            .where(LeadNurtureMessage.sequence_id == sequence_id)
            .order_by(LeadNurtureMessage.created_at.asc())
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_nurture_sequence(self, data: LeadNurtureInput) -> LeadNurtureSequence:
        """Open a sequence and send its first message.

        Raises AlreadyActive (carrying the existing sequence) when the lead is
        already being nurtured; nothing is created in that case.
        """
        method = DeliveryMethod(data.preferred_method)
        contact = contact_for(method, data.lead_phone, data.lead_email)

        existing = await self.get_active_sequence(data.lead_id)
        if existing is not None:
            logger.info(
                "Lead %s already has active sequence %s (tenant %s)",
                data.lead_id, existing.id, self.tenant_id,
            )
            raise AlreadyActive(existing)

        settings = await self.settings()
        limiter = await self.rate_limiter()
        check = await limiter.check_limit(data.lead_id, data.lead_phone, data.lead_email)
        if not check.allowed:
            logger.info(
                "Nurture for lead %s (tenant %s) denied: %s", data.lead_id, self.tenant_id, check.reason
            )
            raise RateLimitExceeded(
                check.reason, window=check.window.value if check.window else None, limits=check.limits
            )

        sequence = LeadNurtureSequence(
            id=str(uuid.uuid4()),
            tenant_id=self.tenant_id,
            lead_id=data.lead_id,
            lead_name=data.lead_name,
            delivery_method=method.value,
            contact_address=contact,
            trigger_type=data.trigger_type.value,
            trigger_data=dict(data.trigger_data),
            sequence_step=1,
            max_steps=settings.nurture_max_steps,
            status=NurtureStatus.ACTIVE.value,
            message_count=0,
            lead_qualified=False,
            appointment_scheduled=False,
        )
        self.db.add(sequence)
        await self.db.flush()

        ref = f"nurture sequence {sequence.id}"
        message, template_name, template = await self._compose_step(sequence, 1)

        verdict = await self.check_outbound(message, ref)
        if verdict.action == SafetyAction.BLOCK:
            nurture_state_machine.apply(sequence, NurtureStatus.FAILED)
            await self.db.flush()
            raise SafetyBlocked(verdict.violations)
        message = verdict.final_text(message)

        delivery = await self._send(sequence, message, template_name)
        if template is not None:
            await self.templates.track_usage(template.id, delivery.success)
        if not delivery.success:
            nurture_state_machine.apply(sequence, NurtureStatus.FAILED)
            await self.db.flush()
            raise DeliveryFailed(delivery.error)

        sequence.current_template = template_name
        sequence.next_action_at = utcnow() + timedelta(hours=settings.nurture_step_interval_hours)
        await limiter.increment_count(data.lead_id)
        await self.db.flush()

        logger.info(
            "Started %s nurture sequence %s for lead %s (tenant %s)",
            sequence.trigger_type, sequence.id, data.lead_id, self.tenant_id,
        )
        return sequence

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def process_incoming_message(
        self, lead_id: str, text: str, method: DeliveryMethod | str = DeliveryMethod.SMS
    ) -> IncomingMessageOutcome:
        """Log, classify and answer one inbound message.

        Branch order: exact opt-out keyword, an already-open handoff (no
        automated reply), a new handoff (safety verdict or not interested),
        then a keyword-driven reply.
        """
        sequence = await self.get_active_sequence(lead_id)
        if sequence is None:
            raise NoActiveSequence(lead_id)

        now = utcnow()
        inbound = self._log_message(
            sequence, MessageDirection.INBOUND, text, DeliveryMethod(method), DeliveryStatus.RECEIVED
        )
        analysis = self.classifier.classify(text)
        inbound.detected_intent = analysis.intent.value
        inbound.sentiment = analysis.sentiment.value
        sequence.last_message_received_at = now
        sequence.message_count = (sequence.message_count or 0) + 1
        await self.db.flush()

        if is_opt_out(text):
            return await self._handle_opt_out(sequence, analysis)

        open_handoff = await self.handoffs.open_handoff_id(sequence.id)
        if open_handoff is not None:
            logger.info(
                "Sequence %s has open handoff %s, no automated reply", sequence.id, open_handoff
            )
            return IncomingMessageOutcome(handoff=True, handoff_id=open_handoff, analysis=analysis)

        verdict = await self.safety.check_message(
            text, self.agent_type, {"ref": f"nurture sequence {sequence.id}"}
        )
        if verdict.action == SafetyAction.HANDOFF or analysis.intent == MessageIntent.NOT_INTERESTED:
            if analysis.intent == MessageIntent.NOT_INTERESTED:
                reason = NOT_INTERESTED_REASON
            else:
                reason = "Safety rule triggered: " + ", ".join(v.rule_name for v in verdict.violations)
            inbound.needs_human_handoff = True
            handoff = await self._create_handoff(sequence, text, analysis, reason)
            await self._send(sequence, fallback.HANDOFF_ACK, None, raise_on_failure=False)
            return IncomingMessageOutcome(
                reply=fallback.HANDOFF_ACK,
                handoff=True,
                handoff_id=handoff.id,
                analysis=analysis,
            )

        if analysis.intent == MessageIntent.READY_TO_BUY and not sequence.lead_qualified:
            sequence.lead_qualified = True
            logger.info("Lead %s qualified on sequence %s", lead_id, sequence.id)

        reply = choose_reply(text, analysis)
        reply_verdict = await self.check_outbound(reply, f"nurture sequence {sequence.id}")
        if reply_verdict.action == SafetyAction.BLOCK:
            await self.db.flush()
            raise SafetyBlocked(reply_verdict.violations)
        reply = reply_verdict.final_text(reply)

        await self._send(sequence, reply, "auto_response", raise_on_failure=True)
        return IncomingMessageOutcome(
            reply=reply,
            qualified=bool(sequence.lead_qualified),
            analysis=analysis,
        )

    async def _handle_opt_out(
        self, sequence: LeadNurtureSequence, analysis: MessageAnalysis
    ) -> IncomingMessageOutcome:
        nurture_state_machine.apply(sequence, NurtureStatus.OPTED_OUT)
        sequence.next_action_at = None
        limiter = await self.rate_limiter()
        await limiter.opt_out(sequence.lead_id, OPT_OUT_REASON)
        await self._send(sequence, fallback.OPT_OUT_CONFIRMATION, None, raise_on_failure=False)
        logger.info("Lead %s opted out of sequence %s", sequence.lead_id, sequence.id)
        return IncomingMessageOutcome(
            reply=fallback.OPT_OUT_CONFIRMATION, opted_out=True, analysis=analysis
        )

    async def _create_handoff(
        self,
        sequence: LeadNurtureSequence,
        text: str,
        analysis: MessageAnalysis,
        reason: str,
    ) -> HumanHandoff:
        history = [
            {
                "role": "agent" if m.direction == MessageDirection.OUTBOUND.value else "customer",
                "message": m.message_text,
                "timestamp": m.created_at.isoformat() if m.created_at else None,
            }
            for m in await self.get_conversation(sequence.id)
        ]
        return await self.handoffs.create_handoff(
            agent_type=self.agent_type,
            conversation_id=sequence.id,
            customer_id=sequence.lead_id,
            reason=reason,
            urgency=(
                HandoffUrgency.HIGH
                if analysis.sentiment == MessageSentiment.NEGATIVE
                else HandoffUrgency.NORMAL
            ),
            conversation_history=history,
            customer_context={
                "triggerType": sequence.trigger_type,
                "leadQualified": bool(sequence.lead_qualified),
                "messageCount": sequence.message_count,
                "lastMessage": text,
                "intent": analysis.intent.value,
                "sentiment": analysis.sentiment.value,
            },
            suggested_actions=[
                "Review conversation history",
                "Address customer concerns",
                "Schedule appointment"
                if analysis.intent == MessageIntent.READY_TO_BUY
                else "Provide information",
                "Follow up within 4 hours",
            ],
        )

    # ------------------------------------------------------------------
    # Scheduled steps (scheduler)
    # ------------------------------------------------------------------

    async def run_scheduled_sequences(self) -> BatchResult:
        """Send the next scripted step of every due sequence.

        Each sequence commits on its own. Sequences with an open handoff are
        left alone. A sequence whose steps are used up is completed once its
        last step has had a full interval for the lead to answer.
        """
        settings = await self.settings()
        now = utcnow()
        open_handoff = exists().where(
            and_(
                HumanHandoff.conversation_id == LeadNurtureSequence.id,
                HumanHandoff.status.in_(OPEN_HANDOFF_STATES),
            )
        )
        result = await self.db.execute(
            select(LeadNurtureSequence.id)
            .where(
                and_(
                    LeadNurtureSequence.tenant_id == self.tenant_id,
                    LeadNurtureSequence.status == NurtureStatus.ACTIVE.value,
                    LeadNurtureSequence.next_action_at.is_not(None),
                    LeadNurtureSequence.next_action_at <= now,
                    ~open_handoff,
                )
            )
            .order_by(LeadNurtureSequence.next_action_at.asc())
            .limit(settings.batch_page_size)
        )
        sequence_ids = list(result.scalars().all())

        batch = BatchResult()
        for sequence_id in sequence_ids:
            # get() reloads the row if an earlier rollback expired it
            sequence = await self.db.get(LeadNurtureSequence, sequence_id)
            outcome = await self.run_isolated(
                f"nurture sequence {sequence_id}", lambda: self._advance_sequence(sequence)
            )
            batch.record(outcome)

        if sequence_ids:
            logger.info("Nurture steps for tenant %s: %s", self.tenant_id, batch.as_dict())
        return batch

    async def _advance_sequence(self, sequence: LeadNurtureSequence) -> str:
        if sequence.sequence_step >= sequence.max_steps:
            nurture_state_machine.apply(sequence, NurtureStatus.COMPLETED)
            sequence.next_action_at = None
            await self.db.flush()
            return "completed"
        return await self._send_scheduled_step(sequence)

    async def _send_scheduled_step(self, sequence: LeadNurtureSequence) -> str:
        settings = await self.settings()
        limiter = await self.rate_limiter()
        ref = f"nurture sequence {sequence.id}"

        check = await limiter.check_limit(sequence.lead_id)
        if not check.allowed:
            logger.info("Step for %s deferred: %s", ref, check.reason)
            return "skipped"

        next_step = sequence.sequence_step + 1
        message, template_name, template = await self._compose_step(sequence, next_step)

        verdict = await self.check_outbound(message, ref)
        if verdict.action == SafetyAction.BLOCK:
            nurture_state_machine.apply(sequence, NurtureStatus.FAILED)
            sequence.next_action_at = None
            await self.db.flush()
            logger.warning("Step %d for %s blocked by safety rules", next_step, ref)
            return "failed"
        message = verdict.final_text(message)

        delivery = await self._send(sequence, message, template_name)
        if template is not None:
            await self.templates.track_usage(template.id, delivery.success)
        if not delivery.success:
            # Step not advanced; retried on the next tick
            return "failed"

        sequence.sequence_step = next_step
        sequence.current_template = template_name
        sequence.next_action_at = utcnow() + timedelta(hours=settings.nurture_step_interval_hours)
        await limiter.increment_count(sequence.lead_id)
        await self.db.flush()
        return "sent"

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    async def schedule_appointment(
        self,
        sequence_id: str,
        appointment_time: datetime,
        conversion_value: Optional[float] = None,
    ) -> LeadNurtureSequence:
        """Mark the lead converted. Booking the calendar slot happens elsewhere."""
        sequence = await self.get_sequence(sequence_id)
        nurture_state_machine.apply(sequence, NurtureStatus.CONVERTED)
        if appointment_time.tzinfo is not None:
            appointment_time = appointment_time.astimezone(timezone.utc).replace(tzinfo=None)
        sequence.appointment_scheduled = True
        sequence.appointment_at = appointment_time
        sequence.converted_at = utcnow()
        sequence.conversion_value = conversion_value
        sequence.next_action_at = None
        await self.db.flush()
        logger.info("Sequence %s converted, appointment at %s", sequence.id, appointment_time)
        return sequence

    # ------------------------------------------------------------------
    # Messaging helpers
    # ------------------------------------------------------------------

    async def _compose_step(self, sequence: LeadNurtureSequence, step: int):
        """Message text, template name and the tenant template row (None on fallback)."""
        settings = await self.settings()
        trigger_data = sequence.trigger_data or {}
        template_name = f"{sequence.trigger_type}_step_{step}"
        message, template = await self.compose(
            template_name,
            {
                **trigger_data,
                "leadName": sequence.lead_name or "there",
                "businessName": settings.business_name or "our team",
            },
            fallback.get_nurture_message(
                sequence.trigger_type,
                step,
                lead_name=sequence.lead_name,
                service=trigger_data.get("service"),
            ),
        )
        return message, template_name, template

    def _log_message(
        self,
        sequence: LeadNurtureSequence,
        direction: MessageDirection,
        text: str,
        method: DeliveryMethod,
        status: DeliveryStatus,
        template_used: Optional[str] = None,
    ) -> LeadNurtureMessage:
        message = LeadNurtureMessage(
            id=str(uuid.uuid4()),
            sequence_id=sequence.id,
            tenant_id=self.tenant_id,
            direction=direction.value,
            message_text=text,
            delivery_method=method.value,
            delivery_status=status.value,
            template_used=template_used,
            needs_human_handoff=False,
            created_at=utcnow(),
        )
        self.db.add(message)
        return message

    async def _send(
        self,
        sequence: LeadNurtureSequence,
        text: str,
        template_used: Optional[str],
        raise_on_failure: bool = False,
    ):
        """Log an outbound message as pending, send it, attach the delivery result."""
        method = DeliveryMethod(sequence.delivery_method)
        message = self._log_message(
            sequence, MessageDirection.OUTBOUND, text, method, DeliveryStatus.PENDING, template_used
        )
        await self.db.flush()

        delivery = await self.deliver(
            sequence.contact_address, text, method, f"nurture sequence {sequence.id}"
        )
        if delivery.success:
            message.delivery_status = DeliveryStatus.SENT.value
            message.provider_message_id = delivery.provider_message_id
            message.sent_at = utcnow()
            sequence.last_message_sent_at = message.sent_at
            sequence.message_count = (sequence.message_count or 0) + 1
        else:
            message.delivery_status = DeliveryStatus.FAILED.value
        await self.db.flush()

        if not delivery.success and raise_on_failure:
            raise DeliveryFailed(delivery.error)
        return delivery
