"""Outreach scheduler cron endpoint — called by an external cron (e.g. Cloud Scheduler)."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from outreach_engine.app.dependencies import get_rule_cache, get_transport, verify_internal_token
from outreach_engine.infra.database import get_db
from outreach_engine.services.safety_rules import RuleCache
from outreach_engine.services.scheduler import OutreachScheduler

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/internal/scheduler",
    tags=["outreach-scheduler"],
    dependencies=[Depends(verify_internal_token)],
)


@router.post("/tick")
async def scheduler_tick(
    db: AsyncSession = Depends(get_db),
    transport=Depends(get_transport),
    rule_cache: RuleCache = Depends(get_rule_cache),
):
    """Run one outreach scheduler tick. Returns summary of actions taken."""
    scheduler = OutreachScheduler(db, transport=transport, rule_cache=rule_cache)
    results = await scheduler.tick()
    logger.info("Outreach scheduler tick: %s", results)
    return {"ok": True, "results": results}
