"""Base class for the outreach agents.

Both agents (Review Request, Lead Nurture) inherit from OutreachAgent,
which wires up the collaborators they share:

- Template Engine for tenant templates with a hard-coded fallback
- Safety Rules Engine for every outbound message
- Rate Limit Engine with the tenant's ceilings
- Handoff Queue for human escalation
- Message transport for delivery
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from outreach_engine.domain.contracts import DeliveryResult, SafetyCheckResult
from outreach_engine.domain.enums import AgentType, DeliveryMethod, SafetyAction
from outreach_engine.domain.errors import TriggerValidationError
from outreach_engine.domain.models import ResponseTemplate
from outreach_engine.services.handoff_queue import HandoffQueue
from outreach_engine.services.rate_limiter import RateLimitEngine
from outreach_engine.services.safety_rules import RuleCache, SafetyRulesEngine
from outreach_engine.services.template_engine import TemplateEngine
from outreach_engine.services.tenant_settings import TenantSettings, get_tenant_settings
from outreach_engine.services.transport import MessageTransport

logger = logging.getLogger(__name__)


def contact_for(method: DeliveryMethod, phone: Optional[str], email: Optional[str]) -> str:
    """Pick the address for the delivery method or raise TriggerValidationError."""
    if method == DeliveryMethod.EMAIL:
        if not email:
            raise TriggerValidationError("email", "required for email delivery")
        return email
    if not phone:
        raise TriggerValidationError("phone", f"required for {method.value} delivery")
    return phone


class OutreachAgent:
    """Shared plumbing for tenant-scoped outreach agents.

    Args:
        db: Session owned by the caller. Agents flush, callers commit; batch
            runs are the exception and commit after each record.
        tenant_id: Tenant on whose behalf every message is sent.
        transport: Anything with ``async send(to, text, method) -> DeliveryResult``.
        rule_cache: Safety rule cache to share across engine instances.
    """

    agent_type: AgentType

    def __init__(
        self,
        db: AsyncSession,
        tenant_id: str,
        transport=None,
        rule_cache: Optional[RuleCache] = None,
    ):
        self.db = db
        self.tenant_id = tenant_id
        self.transport = transport or MessageTransport()
        self.templates = TemplateEngine(db)
        self.safety = SafetyRulesEngine(db, tenant_id, cache=rule_cache)
        self.handoffs = HandoffQueue(db, tenant_id)
        self._settings: Optional[TenantSettings] = None
        self._rate_limiter: Optional[RateLimitEngine] = None

    async def settings(self) -> TenantSettings:
        if self._settings is None:
            self._settings = await get_tenant_settings(self.db, self.tenant_id)
        return self._settings

    async def rate_limiter(self) -> RateLimitEngine:
        if self._rate_limiter is None:
            settings = await self.settings()
            self._rate_limiter = RateLimitEngine(self.db, self.tenant_id, settings.ceilings)
        return self._rate_limiter

    async def compose(
        self, template_name: str, variables: dict[str, Any], fallback: str
    ) -> tuple[str, Optional[ResponseTemplate]]:
        """Render the tenant template if one is configured, else return ``fallback``."""
        template = await self.templates.get_template(
            self.tenant_id, self.agent_type.value, template_name
        )
        if template is None:
            return fallback, None
        return self.templates.render_template(template, variables), template

    async def check_outbound(self, text: str, ref: str) -> SafetyCheckResult:
        """Safety-check an outbound message. Non-blocking verdicts are logged only."""
        verdict = await self.safety.check_message(text, self.agent_type, {"ref": ref})
        if verdict.action in (SafetyAction.HANDOFF, SafetyAction.WARN):
            logger.warning(
                "Outbound message for %s flagged %s by %s, sending anyway",
                ref,
                verdict.action.value,
                ", ".join(v.rule_name for v in verdict.violations),
            )
        return verdict

    async def run_isolated(self, ref: str, step: Callable[[], Awaitable[str]]) -> str:
        """Run one batch record and commit it on its own.

        Batch runs own their unit of work per record: an exception rolls back
        only this record's uncommitted changes and counts as ``failed``, so
        records already sent keep their step and rate-limit progress.
        """
        try:
            outcome = await step()
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error("Batch step for %s failed (tenant %s): %s", ref, self.tenant_id, e)
            return "failed"
        return outcome

    async def deliver(self, to: str, text: str, method: DeliveryMethod | str, ref: str) -> DeliveryResult:
        result = await self.transport.send(to, text, DeliveryMethod(method))
        if not result.success:
            logger.error(
                "Delivery failed for tenant %s %s via %s: %s",
                self.tenant_id, ref, DeliveryMethod(method).value, result.error,
            )
        return result
