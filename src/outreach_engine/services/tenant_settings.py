"""Per-tenant automation settings merged over the platform defaults."""

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from outreach_engine.app.config import get_settings
from outreach_engine.domain.enums import ReviewPlatform
from outreach_engine.domain.models import TenantAutomationSettings
from outreach_engine.services.rate_limiter import RateLimitCeilings

DEFAULT_PLATFORM_URLS = {
    ReviewPlatform.GOOGLE.value: "https://search.google.com/local/writereview",
    ReviewPlatform.YELP.value: "https://www.yelp.com/writeareview",
    ReviewPlatform.FACEBOOK.value: "https://www.facebook.com/reviews",
    ReviewPlatform.TRUSTPILOT.value: "https://www.trustpilot.com/evaluate",
}

# Column names that override a Settings field of the same name
_OVERRIDABLE = (
    "daily_limit",
    "weekly_limit",
    "monthly_limit",
    "review_negative_threshold",
    "review_max_sequences",
    "review_followup_interval_days",
    "nurture_max_steps",
    "nurture_step_interval_hours",
)


@dataclass(frozen=True)
class TenantSettings:
    tenant_id: str
    business_name: Optional[str]
    daily_limit: int
    weekly_limit: int
    monthly_limit: int
    review_negative_threshold: int
    review_max_sequences: int
    review_followup_interval_days: int
    nurture_max_steps: int
    nurture_step_interval_hours: int
    batch_page_size: int
    review_link_base_url: str
    review_platform_urls: dict = field(default_factory=dict)

    @property
    def ceilings(self) -> RateLimitCeilings:
        return RateLimitCeilings(
            daily=self.daily_limit, weekly=self.weekly_limit, monthly=self.monthly_limit
        )

    def platform_url(self, platform: Optional[str]) -> str:
        """Tenant URL for the platform, falling back to Google."""
        key = ReviewPlatform(platform).value if platform else ReviewPlatform.GOOGLE.value
        return (
            self.review_platform_urls.get(key)
            or self.review_platform_urls.get(ReviewPlatform.GOOGLE.value)
            or DEFAULT_PLATFORM_URLS[ReviewPlatform.GOOGLE.value]
        )


async def get_tenant_settings(db: AsyncSession, tenant_id: str) -> TenantSettings:
    settings = get_settings()
    result = await db.execute(
        select(TenantAutomationSettings).where(TenantAutomationSettings.tenant_id == tenant_id)
    )
    row = result.scalar_one_or_none()

    values = {name: getattr(settings, name) for name in _OVERRIDABLE}
    platform_urls = dict(DEFAULT_PLATFORM_URLS)
    business_name = None
    if row is not None:
        for name in _OVERRIDABLE:
            override = getattr(row, name)
            if override is not None:
                values[name] = override
        platform_urls.update(row.review_platform_urls or {})
        business_name = row.business_name

    return TenantSettings(
        tenant_id=tenant_id,
        business_name=business_name,
        batch_page_size=settings.batch_page_size,
        review_link_base_url=settings.review_link_base_url.rstrip("/"),
        review_platform_urls=platform_urls,
        **values,
    )
