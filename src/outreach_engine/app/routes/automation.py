"""Internal trigger endpoints for the outreach agents and the handoff queue.

Called by the job-management system (job completed, missed call, inbound
message webhook) and by the operator console. Every route is tenant-scoped
through the path and guarded by the internal token.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from outreach_engine.agents import LeadNurtureAgent, ReviewRequestAgent
from outreach_engine.app.dependencies import get_rule_cache, get_transport, verify_internal_token
from outreach_engine.domain.enums import HandoffUrgency
from outreach_engine.domain.errors import AutomationError
from outreach_engine.domain.schemas import (
    AppointmentRequest,
    HandoffClaimRequest,
    HandoffResolveRequest,
    HandoffResponse,
    IncomingMessageRequest,
    LeadNurtureInput,
    NurtureSequenceResponse,
    ReviewRequestInput,
    ReviewRequestResponse,
    ReviewResponseRequest,
)
from outreach_engine.infra.database import get_db
from outreach_engine.services.handoff_queue import HandoffQueue
from outreach_engine.services.outreach_state_machine import InvalidTransitionError
from outreach_engine.services.safety_rules import RuleCache

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/internal/tenants/{tenant_id}",
    tags=["outreach-automation"],
    dependencies=[Depends(verify_internal_token)],
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _fail(db: AsyncSession, exc: Exception):
    """Persist whatever the agent recorded (e.g. a failed status), then map to HTTP."""
    await db.commit()
    if isinstance(exc, AutomationError):
        detail = exc.to_dict()
    else:
        detail = {"error": type(exc).__name__, "detail": str(exc)}
    logger.info("Automation request failed (%s): %s", exc.status_code, detail["detail"])
    raise HTTPException(status_code=exc.status_code, detail=detail)


def _review_agent(db, tenant_id, transport, rule_cache) -> ReviewRequestAgent:
    return ReviewRequestAgent(db, tenant_id, transport=transport, rule_cache=rule_cache)


def _nurture_agent(db, tenant_id, transport, rule_cache) -> LeadNurtureAgent:
    return LeadNurtureAgent(db, tenant_id, transport=transport, rule_cache=rule_cache)


# ---------------------------------------------------------------------------
# Review requests
# ---------------------------------------------------------------------------


@router.post("/review-requests", status_code=201, response_model=ReviewRequestResponse)
async def create_review_request(
    tenant_id: str,
    body: ReviewRequestInput,
    db: AsyncSession = Depends(get_db),
    transport=Depends(get_transport),
    rule_cache: RuleCache = Depends(get_rule_cache),
):
    """Job completed: solicit a review from the customer."""
    agent = _review_agent(db, tenant_id, transport, rule_cache)
    try:
        request = await agent.create_review_request(body)
    except (AutomationError, InvalidTransitionError) as e:
        await _fail(db, e)
    await db.commit()
    return ReviewRequestResponse.model_validate(request)


@router.post("/review-requests/{request_id}/response")
async def record_review_response(
    tenant_id: str,
    request_id: str,
    body: ReviewResponseRequest,
    db: AsyncSession = Depends(get_db),
    transport=Depends(get_transport),
    rule_cache: RuleCache = Depends(get_rule_cache),
):
    """Customer submitted a rating from the review link."""
    agent = _review_agent(db, tenant_id, transport, rule_cache)
    try:
        outcome = await agent.process_review_response(
            request_id, body.rating, body.review_text, body.platform
        )
    except (AutomationError, InvalidTransitionError) as e:
        await _fail(db, e)
    await db.commit()
    return {
        "intercepted": outcome.intercepted,
        "message": outcome.message,
        "redirect_url": outcome.redirect_url,
        "handoff_id": outcome.handoff_id,
    }


@router.post("/review-requests/{request_id}/delivered", response_model=ReviewRequestResponse)
async def mark_review_delivered(
    tenant_id: str,
    request_id: str,
    db: AsyncSession = Depends(get_db),
    transport=Depends(get_transport),
    rule_cache: RuleCache = Depends(get_rule_cache),
):
    """Provider delivery callback."""
    agent = _review_agent(db, tenant_id, transport, rule_cache)
    try:
        request = await agent.mark_delivered(request_id)
    except (AutomationError, InvalidTransitionError) as e:
        await _fail(db, e)
    await db.commit()
    return ReviewRequestResponse.model_validate(request)


@router.post("/review-requests/{request_id}/clicked", response_model=ReviewRequestResponse)
async def mark_review_clicked(
    tenant_id: str,
    request_id: str,
    db: AsyncSession = Depends(get_db),
    transport=Depends(get_transport),
    rule_cache: RuleCache = Depends(get_rule_cache),
):
    agent = _review_agent(db, tenant_id, transport, rule_cache)
    try:
        request = await agent.mark_clicked(request_id)
    except (AutomationError, InvalidTransitionError) as e:
        await _fail(db, e)
    await db.commit()
    return ReviewRequestResponse.model_validate(request)


# ---------------------------------------------------------------------------
# Lead nurture
# ---------------------------------------------------------------------------


@router.post("/nurture-sequences", status_code=201, response_model=NurtureSequenceResponse)
async def start_nurture_sequence(
    tenant_id: str,
    body: LeadNurtureInput,
    db: AsyncSession = Depends(get_db),
    transport=Depends(get_transport),
    rule_cache: RuleCache = Depends(get_rule_cache),
):
    """Missed call / abandoned quote / cold lead: start a nurture sequence."""
    agent = _nurture_agent(db, tenant_id, transport, rule_cache)
    try:
        sequence = await agent.start_nurture_sequence(body)
    except (AutomationError, InvalidTransitionError) as e:
        await _fail(db, e)
    await db.commit()
    return NurtureSequenceResponse.model_validate(sequence)


@router.post("/nurture-sequences/inbound")
async def process_inbound_message(
    tenant_id: str,
    body: IncomingMessageRequest,
    db: AsyncSession = Depends(get_db),
    transport=Depends(get_transport),
    rule_cache: RuleCache = Depends(get_rule_cache),
):
    """Inbound lead message webhook."""
    agent = _nurture_agent(db, tenant_id, transport, rule_cache)
    try:
        outcome = await agent.process_incoming_message(body.lead_id, body.text, body.method)
    except (AutomationError, InvalidTransitionError) as e:
        await _fail(db, e)
    await db.commit()
    analysis = outcome.analysis
    return {
        "reply": outcome.reply,
        "handoff": outcome.handoff,
        "handoff_id": outcome.handoff_id,
        "opted_out": outcome.opted_out,
        "qualified": outcome.qualified,
        "intent": analysis.intent.value if analysis else None,
        "sentiment": analysis.sentiment.value if analysis else None,
    }


@router.post("/nurture-sequences/{sequence_id}/appointment", response_model=NurtureSequenceResponse)
async def schedule_appointment(
    tenant_id: str,
    sequence_id: str,
    body: AppointmentRequest,
    db: AsyncSession = Depends(get_db),
    transport=Depends(get_transport),
    rule_cache: RuleCache = Depends(get_rule_cache),
):
    agent = _nurture_agent(db, tenant_id, transport, rule_cache)
    try:
        sequence = await agent.schedule_appointment(
            sequence_id, body.appointment_time, body.conversion_value
        )
    except (AutomationError, InvalidTransitionError) as e:
        await _fail(db, e)
    await db.commit()
    return NurtureSequenceResponse.model_validate(sequence)


# ---------------------------------------------------------------------------
# Handoff queue (operator console)
# ---------------------------------------------------------------------------


@router.get("/handoffs", response_model=list[HandoffResponse])
async def list_open_handoffs(
    tenant_id: str,
    urgency: Optional[HandoffUrgency] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """Open handoffs, most urgent first."""
    handoffs = await HandoffQueue(db, tenant_id).list_open(urgency=urgency, limit=limit)
    return [HandoffResponse.model_validate(h) for h in handoffs]


@router.post("/handoffs/{handoff_id}/claim", response_model=HandoffResponse)
async def claim_handoff(
    tenant_id: str,
    handoff_id: str,
    body: HandoffClaimRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        handoff = await HandoffQueue(db, tenant_id).claim(handoff_id, body.operator)
    except (AutomationError, InvalidTransitionError) as e:
        await _fail(db, e)
    await db.commit()
    return HandoffResponse.model_validate(handoff)


@router.post("/handoffs/{handoff_id}/escalate", response_model=HandoffResponse)
async def escalate_handoff(
    tenant_id: str,
    handoff_id: str,
    db: AsyncSession = Depends(get_db),
):
    try:
        handoff = await HandoffQueue(db, tenant_id).escalate(handoff_id)
    except (AutomationError, InvalidTransitionError) as e:
        await _fail(db, e)
    await db.commit()
    return HandoffResponse.model_validate(handoff)


@router.post("/handoffs/{handoff_id}/resolve", response_model=HandoffResponse)
async def resolve_handoff(
    tenant_id: str,
    handoff_id: str,
    body: HandoffResolveRequest,
    db: AsyncSession = Depends(get_db),
):
    """Close a handoff; automation resumes on its conversation."""
    try:
        handoff = await HandoffQueue(db, tenant_id).resolve(handoff_id, body.resolution_notes)
    except (AutomationError, InvalidTransitionError) as e:
        await _fail(db, e)
    await db.commit()
    return HandoffResponse.model_validate(handoff)
