"""Safety Rules Engine — deterministic keyword / pattern evaluation of messages.

Rules are global (tenant_id NULL) or tenant-scoped. Every active rule that
applies to the calling agent is evaluated; each rule contributes at most
one violation, and the verdict is the highest-priority action across all
violations (block > handoff > warn > add_disclaimer).
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from outreach_engine.app.config import get_settings
from outreach_engine.domain.contracts import SafetyCheckResult, SafetyViolation
from outreach_engine.domain.enums import AgentType, SafetyAction, SafetyRuleType
from outreach_engine.domain.models import SafetyRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedRule:
    """Read-only snapshot of a SafetyRule row."""
    id: str
    tenant_id: Optional[str]
    rule_type: str
    rule_name: str
    keywords: tuple[str, ...]
    patterns: tuple[str, ...]
    action: SafetyAction
    action_metadata: dict
    applies_to_agents: frozenset[str]

    @classmethod
    def from_row(cls, row: SafetyRule) -> "CachedRule":
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            rule_type=row.rule_type,
            rule_name=row.rule_name,
            keywords=tuple(row.keywords or ()),
            patterns=tuple(row.patterns or ()),
            action=SafetyAction(row.action),
            action_metadata=dict(row.action_metadata or {}),
            applies_to_agents=frozenset(row.applies_to_agents or ()),
        )

    def applies_to(self, agent_type: str) -> bool:
        # An empty agent list means the rule applies to every agent
        return not self.applies_to_agents or agent_type in self.applies_to_agents


class RuleCache:
    """Per-tenant rule snapshots with a bounded TTL.

    Each entry holds the tenant's own rules followed by the global rules.
    One instance is shared by the engines of a process (or of a scheduler
    tick); tests create their own so nothing leaks between them.
    """

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else get_settings().rule_cache_ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, list[CachedRule]]] = {}

    def get(self, tenant_id: str) -> Optional[list[CachedRule]]:
        entry = self._entries.get(tenant_id)
        if entry and (self._clock() - entry[0]) < self.ttl_seconds:
            return entry[1]
        return None

    def set(self, tenant_id: str, rules: list[CachedRule]) -> None:
        self._entries[tenant_id] = (self._clock(), rules)

    def invalidate(self, tenant_id: Optional[str] = None) -> None:
        """Drop one tenant's entry, or everything when tenant_id is None."""
        if tenant_id is None:
            self._entries.clear()
        else:
            self._entries.pop(tenant_id, None)


class SafetyRulesEngine:
    """Evaluates candidate messages against global + tenant rules."""

    def __init__(self, db: AsyncSession, tenant_id: str, cache: Optional[RuleCache] = None):
        self.db = db
        self.tenant_id = tenant_id
        self.cache = cache if cache is not None else RuleCache()

    async def load_rules(self) -> list[CachedRule]:
        """Active tenant rules first, then global rules. Served from cache when fresh."""
        cached = self.cache.get(self.tenant_id)
        if cached is not None:
            return cached

        result = await self.db.execute(
            select(SafetyRule).where(
                SafetyRule.is_active.is_(True),
                or_(SafetyRule.tenant_id == self.tenant_id, SafetyRule.tenant_id.is_(None)),
            )
        )
        rows = list(result.scalars().all())
        rows.sort(key=lambda r: (r.tenant_id is None, r.id))

        rules = []
        for row in rows:
            try:
                rules.append(CachedRule.from_row(row))
            except ValueError:
                logger.error("Safety rule %s has unknown action %r, skipping", row.id, row.action)
        self.cache.set(self.tenant_id, rules)
        return rules

    async def check_message(
        self, text: str, agent_type: AgentType | str, context: Optional[dict] = None
    ) -> SafetyCheckResult:
        """Return the verdict for ``text`` sent (or received) by ``agent_type``."""
        agent = agent_type.value if isinstance(agent_type, AgentType) else agent_type
        rules = [r for r in await self.load_rules() if r.applies_to(agent)]

        violations = []
        for rule in rules:
            violation = _evaluate_rule(rule, text)
            if violation is not None:
                violations.append(violation)

        if not violations:
            return SafetyCheckResult(safe=True)

        action = max((v.action for v in violations), key=lambda a: a.priority)

        modified_message = None
        if action == SafetyAction.ADD_DISCLAIMER:
            disclaimers = [
                v.metadata["disclaimer"]
                for v in violations
                if v.action == SafetyAction.ADD_DISCLAIMER and v.metadata.get("disclaimer")
            ]
            if disclaimers:
                modified_message = text + "\n\n" + "\n\n".join(disclaimers)

        if action in (SafetyAction.BLOCK, SafetyAction.HANDOFF):
            logger.info(
                "Safety %s for tenant %s (%s): %s",
                action.value,
                self.tenant_id,
                (context or {}).get("ref", agent),
                ", ".join(v.rule_name for v in violations),
            )

        return SafetyCheckResult(
            safe=action != SafetyAction.BLOCK,
            action=action,
            violations=violations,
            modified_message=modified_message,
        )


def _evaluate_rule(rule: CachedRule, text: str) -> Optional[SafetyViolation]:
    """First keyword hit wins, then first pattern hit. None if the rule does not fire."""
    lowered = text.lower()
    for keyword in rule.keywords:
        if keyword and keyword.lower() in lowered:
            return _violation(rule, keyword)

    for pattern in rule.patterns:
        try:
            if re.search(pattern, text, re.IGNORECASE):
                return _violation(rule, pattern)
        except re.error as e:
            logger.error("Invalid pattern %r in safety rule %s: %s", pattern, rule.id, e)
    return None


def _violation(rule: CachedRule, triggered_by: str) -> SafetyViolation:
    return SafetyViolation(
        rule_id=rule.id,
        rule_name=rule.rule_name,
        rule_type=rule.rule_type,
        triggered_by=triggered_by,
        action=rule.action,
        metadata=rule.action_metadata,
    )


# ---------------------------------------------------------------------------
# Platform-level rules, seeded once per database
# ---------------------------------------------------------------------------

_BOTH_AGENTS = [AgentType.REPUTATION_MANAGER.value, AgentType.SALES_NURTURER.value]

DEFAULT_GLOBAL_RULES: list[dict] = [
    {
        "id": "global-001",
        "rule_type": SafetyRuleType.PROHIBITED_TOPIC.value,
        "rule_name": "No Legal Advice",
        "rule_description": "Prevent automated legal advice",
        "keywords": ["legal advice", "lawsuit", "sue", "attorney", "lawyer", "litigation", "court"],
        "action": SafetyAction.HANDOFF.value,
    },
    {
        "id": "global-002",
        "rule_type": SafetyRuleType.PROHIBITED_TOPIC.value,
        "rule_name": "No Medical Advice",
        "rule_description": "Prevent automated medical advice",
        "keywords": ["medical advice", "diagnosis", "prescription", "doctor", "health issue"],
        "action": SafetyAction.HANDOFF.value,
    },
    {
        "id": "global-003",
        "rule_type": SafetyRuleType.PROHIBITED_TOPIC.value,
        "rule_name": "No Financial Advice",
        "rule_description": "Prevent automated financial advice",
        "keywords": ["financial advice", "invest", "stock", "trading", "tax advice"],
        "action": SafetyAction.HANDOFF.value,
    },
    {
        "id": "global-004",
        "rule_type": SafetyRuleType.HANDOFF_TRIGGER.value,
        "rule_name": "Customer Requests Human",
        "rule_description": "Hand off when the customer asks for a person",
        "keywords": ["speak to person", "talk to human", "real person", "agent", "manager", "supervisor"],
        "action": SafetyAction.HANDOFF.value,
    },
    {
        "id": "global-005",
        "rule_type": SafetyRuleType.HANDOFF_TRIGGER.value,
        "rule_name": "Strong Negative Sentiment",
        "rule_description": "Hand off when the customer is very upset",
        "keywords": ["terrible", "worst", "hate", "lawsuit", "scam", "fraud", "disgusting", "unacceptable"],
        "action": SafetyAction.HANDOFF.value,
    },
    {
        "id": "global-006",
        "rule_type": SafetyRuleType.REQUIRED_DISCLAIMER.value,
        "rule_name": "SMS Opt-out Notice",
        "rule_description": "Opt-out instructions for SMS; tenants add the keywords that require it",
        "keywords": [],
        "action": SafetyAction.ADD_DISCLAIMER.value,
        "action_metadata": {"disclaimer": "Reply STOP to opt out."},
    },
]


async def seed_default_rules(db: AsyncSession) -> int:
    """Insert any missing platform rules. Returns how many were created."""
    result = await db.execute(select(SafetyRule.id).where(SafetyRule.tenant_id.is_(None)))
    existing = set(result.scalars().all())

    created = 0
    for spec in DEFAULT_GLOBAL_RULES:
        if spec["id"] in existing:
            continue
        fields = {
            "tenant_id": None,
            "applies_to_agents": list(_BOTH_AGENTS),
            "patterns": [],
            "action_metadata": {},
            "is_active": True,
            **spec,
        }
        db.add(SafetyRule(**fields))
        created += 1
    if created:
        await db.flush()
    return created
