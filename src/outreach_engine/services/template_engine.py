"""Template engine — tenant message templates with {{variable}} substitution."""

import logging
import re
from typing import Any, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from outreach_engine.domain.models import ResponseTemplate

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class TemplateEngine:
    """Loads tenant templates and renders them."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_template(
        self, tenant_id: str, agent_type: str, template_name: str
    ) -> Optional[ResponseTemplate]:
        """Return the active template, or None so the caller can use its fallback."""
        result = await self.db.execute(
            select(ResponseTemplate).where(
                and_(
                    ResponseTemplate.tenant_id == tenant_id,
                    ResponseTemplate.agent_type == agent_type,
                    ResponseTemplate.template_name == template_name,
                    ResponseTemplate.is_active.is_(True),
                )
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def render(template_text: str, variables: dict[str, Any]) -> str:
        """Substitute every ``{{name}}`` placeholder in a single pass.

        Substituted values are never re-scanned, so a value that itself
        contains braces is inserted literally. Placeholders without a value
        are dropped (and logged) rather than leaking ``{{...}}`` to a customer.
        """
        missing: list[str] = []

        def _substitute(match: re.Match) -> str:
            name = match.group(1)
            value = variables.get(name)
            if value is None:
                missing.append(name)
                return ""
            return str(value)

        rendered = PLACEHOLDER_RE.sub(_substitute, template_text)
        if missing:
            logger.warning("Template rendered without values for: %s", ", ".join(missing))
        return rendered

    def render_template(self, template: ResponseTemplate, variables: dict[str, Any]) -> str:
        return self.render(template.template_text, variables)

    async def track_usage(self, template_id: str, successful: bool = True) -> None:
        """Bump usage_count and fold the outcome into the running success_rate."""
        new_rate = (
            ResponseTemplate.success_rate * ResponseTemplate.usage_count
            + (1.0 if successful else 0.0)
        ) / (ResponseTemplate.usage_count + 1)
        await self.db.execute(
            update(ResponseTemplate)
            .where(ResponseTemplate.id == template_id)
            .values(
                success_rate=new_rate,
                usage_count=ResponseTemplate.usage_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
