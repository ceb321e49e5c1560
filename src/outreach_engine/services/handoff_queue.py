"""Handoff Queue — durable escalation records for human operators."""
import logging
import uuid
from typing import Optional

from sqlalchemy import and_, case, select
from sqlalchemy.ext.asyncio import AsyncSession

from outreach_engine.domain.enums import AgentType, HandoffStatus, HandoffUrgency, URGENCY_RANK
from outreach_engine.domain.errors import NotFound
from outreach_engine.domain.models import HumanHandoff, utcnow
from outreach_engine.services.outreach_state_machine import (
    OPEN_HANDOFF_STATES,
    handoff_state_machine,
)

logger = logging.getLogger(__name__)


class HandoffQueue:
    """Creates handoffs for the agents and moves them through operator states.

    Handoffs are never deleted and never closed automatically; only the
    operator-side ``resolve`` ends one.
    """

    def __init__(self, db: AsyncSession, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id

    async def create_handoff(
        self,
        agent_type: AgentType | str,
        conversation_id: str,
        customer_id: str,
        reason: str,
        urgency: HandoffUrgency = HandoffUrgency.NORMAL,
        conversation_history: Optional[list] = None,
        customer_context: Optional[dict] = None,
        suggested_actions: Optional[list[str]] = None,
    ) -> HumanHandoff:
        handoff = HumanHandoff(
            id=str(uuid.uuid4()),
            tenant_id=self.tenant_id,
            agent_type=agent_type.value if isinstance(agent_type, AgentType) else agent_type,
            conversation_id=conversation_id,
            customer_id=customer_id,
            reason=reason,
            urgency=HandoffUrgency(urgency).value,
            conversation_history=list(conversation_history or []),
            customer_context=dict(customer_context or {}),
            suggested_actions=list(suggested_actions or []),
            status=HandoffStatus.PENDING.value,
            created_at=utcnow(),
        )
        self.db.add(handoff)
        await self.db.flush()

        logger.info(
            "Created %s handoff %s for tenant %s conversation %s: %s",
            handoff.urgency, handoff.id, self.tenant_id, conversation_id, reason,
        )
        return handoff

    async def get(self, handoff_id: str) -> HumanHandoff:
        result = await self.db.execute(
            select(HumanHandoff).where(
                and_(HumanHandoff.id == handoff_id, HumanHandoff.tenant_id == self.tenant_id)
            )
        )
        handoff = result.scalar_one_or_none()
        if handoff is None:
            raise NotFound("Handoff", handoff_id)
        return handoff

    async def list_open(
        self, urgency: Optional[HandoffUrgency] = None, limit: int = 50
    ) -> list[HumanHandoff]:
        """Open handoffs, most urgent first, then oldest first."""
        rank = case(URGENCY_RANK, value=HumanHandoff.urgency, else_=len(URGENCY_RANK))
        query = select(HumanHandoff).where(
            and_(
                HumanHandoff.tenant_id == self.tenant_id,
                HumanHandoff.status.in_(OPEN_HANDOFF_STATES),
            )
        )
        if urgency is not None:
            query = query.where(HumanHandoff.urgency == HandoffUrgency(urgency).value)
        result = await self.db.execute(
            query.order_by(rank, HumanHandoff.created_at.asc()).limit(limit)
        )
        return list(result.scalars().all())

    async def open_handoff_id(self, conversation_id: str) -> Optional[str]:
        """Id of a pending/claimed/escalated handoff on the conversation, if any."""
        result = await self.db.execute(
            select(HumanHandoff.id).where(
                and_(
                    HumanHandoff.tenant_id == self.tenant_id,
                    HumanHandoff.conversation_id == conversation_id,
                    HumanHandoff.status.in_(OPEN_HANDOFF_STATES),
                )
            ).limit(1)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def claim(self, handoff_id: str, operator: str) -> HumanHandoff:
        handoff = await self.get(handoff_id)
        handoff_state_machine.apply(handoff, HandoffStatus.CLAIMED)
        handoff.claimed_by = operator
        handoff.claimed_at = utcnow()
        await self.db.flush()
        logger.info("Handoff %s claimed by %s", handoff_id, operator)
        return handoff

    async def escalate(self, handoff_id: str) -> HumanHandoff:
        handoff = await self.get(handoff_id)
        handoff_state_machine.apply(handoff, HandoffStatus.ESCALATED)
        handoff.urgency = HandoffUrgency.URGENT.value
        await self.db.flush()
        logger.warning("Handoff %s escalated", handoff_id)
        return handoff

    async def resolve(self, handoff_id: str, resolution_notes: Optional[str] = None) -> HumanHandoff:
        handoff = await self.get(handoff_id)
        handoff_state_machine.apply(handoff, HandoffStatus.RESOLVED)
        handoff.resolved_at = utcnow()
        handoff.resolution_notes = resolution_notes
        await self.db.flush()
        logger.info("Handoff %s resolved", handoff_id)
        return handoff
