"""Outreach Scheduler — periodic batch runs for review follow-ups and nurture steps."""
import logging

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from outreach_engine.domain.enums import NurtureStatus
from outreach_engine.domain.models import LeadNurtureSequence, ReviewRequest, utcnow
from outreach_engine.services.safety_rules import RuleCache

logger = logging.getLogger(__name__)


class OutreachScheduler:
    """Runs both batch operations for every tenant with due work.

    The batch runs commit after each record. A batch that raises outside
    its records (e.g. the due-record query) is rolled back and reported
    under ``*_error``, and the remaining tenants still run.
    """

    def __init__(self, db: AsyncSession, transport=None, rule_cache: RuleCache | None = None):
        self.db = db
        self.transport = transport
        self.rule_cache = rule_cache if rule_cache is not None else RuleCache()

    async def _tenants_with_due_followups(self) -> list[str]:
        from outreach_engine.agents.review_request_agent import FOLLOWUP_STATUSES

        now = utcnow()
        result = await self.db.execute(
            select(ReviewRequest.tenant_id)
            .where(
                and_(
                    ReviewRequest.status.in_(FOLLOWUP_STATUSES),
                    ReviewRequest.next_follow_up_at.is_not(None),
                    ReviewRequest.next_follow_up_at <= now,
                    ReviewRequest.sequence_step < ReviewRequest.max_sequences,
                )
            )
            .distinct()
        )
        return sorted(result.scalars().all())

    async def _tenants_with_due_sequences(self) -> list[str]:
        now = utcnow()
        result = await self.db.execute(
            select(LeadNurtureSequence.tenant_id)
            .where(
                and_(
                    LeadNurtureSequence.status == NurtureStatus.ACTIVE.value,
                    LeadNurtureSequence.next_action_at.is_not(None),
                    LeadNurtureSequence.next_action_at <= now,
                )
            )
            .distinct()
        )
        return sorted(result.scalars().all())

    async def tick(self) -> dict:
        """Run all scheduled outreach tasks. Called by cron endpoint.

        Returns summary of actions taken.
        """
        from outreach_engine.agents.lead_nurture_agent import LeadNurtureAgent
        from outreach_engine.agents.review_request_agent import ReviewRequestAgent

        results = {
            "followups_sent": 0,
            "followups_skipped": 0,
            "followups_failed": 0,
            "nurture_steps_sent": 0,
            "nurture_steps_skipped": 0,
            "nurture_steps_failed": 0,
            "nurture_completed": 0,
        }

        # 1. Review request follow-ups
        for tenant_id in await self._tenants_with_due_followups():
            try:
                agent = ReviewRequestAgent(
                    self.db, tenant_id, transport=self.transport, rule_cache=self.rule_cache
                )
                batch = await agent.run_followup_sequence()
                await self.db.commit()
                results["followups_sent"] += batch.processed
                results["followups_skipped"] += batch.skipped
                results["followups_failed"] += batch.failed
            except Exception as e:
                await self.db.rollback()
                logger.error("run_followup_sequence failed for tenant %s: %s", tenant_id, e)
                results.setdefault("followups_error", {})[tenant_id] = str(e)

        # 2. Lead nurture steps
        for tenant_id in await self._tenants_with_due_sequences():
            try:
                agent = LeadNurtureAgent(
                    self.db, tenant_id, transport=self.transport, rule_cache=self.rule_cache
                )
                batch = await agent.run_scheduled_sequences()
                await self.db.commit()
                results["nurture_steps_sent"] += batch.processed
                results["nurture_steps_skipped"] += batch.skipped
                results["nurture_steps_failed"] += batch.failed
                results["nurture_completed"] += batch.completed
            except Exception as e:
                await self.db.rollback()
                logger.error("run_scheduled_sequences failed for tenant %s: %s", tenant_id, e)
                results.setdefault("nurture_error", {})[tenant_id] = str(e)

        return results
