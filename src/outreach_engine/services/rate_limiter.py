"""Rate Limit Engine — per-customer daily/weekly/monthly contact ceilings and opt-out.

Protocol for senders: ``check_limit`` before composing a message, then
``increment_count`` only after the transport accepted it. The two calls
are separate statements, so two concurrent senders can both pass the
check before either increments; ``try_acquire`` closes that window with a
single conditional UPDATE for callers that need a strict ceiling.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from outreach_engine.app.config import get_settings
from outreach_engine.domain.contracts import RateLimitCheck, WindowUsage
from outreach_engine.domain.enums import RateLimitWindow
from outreach_engine.domain.models import CustomerRateLimit, utcnow

logger = logging.getLogger(__name__)

OPTED_OUT_REASON = "Customer has opted out"
DEFAULT_OPT_OUT_REASON = "Customer request"

_WINDOW_REASONS = {
    RateLimitWindow.DAILY: "Daily limit reached",
    RateLimitWindow.WEEKLY: "Weekly limit reached",
    RateLimitWindow.MONTHLY: "Monthly limit reached",
}

# window -> (counter column, anchor column, length)
_WINDOWS = (
    (RateLimitWindow.DAILY, "daily_count", "last_reset_at", timedelta(days=1)),
    (RateLimitWindow.WEEKLY, "weekly_count", "weekly_reset_at", timedelta(days=7)),
    (RateLimitWindow.MONTHLY, "monthly_count", "monthly_reset_at", timedelta(days=30)),
)


@dataclass(frozen=True)
class RateLimitCeilings:
    daily: int = 3
    weekly: int = 10
    monthly: int = 30

    @classmethod
    def from_settings(cls) -> "RateLimitCeilings":
        s = get_settings()
        return cls(daily=s.daily_limit, weekly=s.weekly_limit, monthly=s.monthly_limit)

    def for_window(self, window: RateLimitWindow) -> int:
        return getattr(self, window.value)


class RateLimitEngine:
    """Enforces contact ceilings for one tenant."""

    def __init__(self, db: AsyncSession, tenant_id: str, ceilings: Optional[RateLimitCeilings] = None):
        self.db = db
        self.tenant_id = tenant_id
        self.ceilings = ceilings or RateLimitCeilings.from_settings()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_limits(self, customer_id: str) -> Optional[CustomerRateLimit]:
        result = await self.db.execute(
            select(CustomerRateLimit).where(
                and_(
                    CustomerRateLimit.tenant_id == self.tenant_id,
                    CustomerRateLimit.customer_id == customer_id,
                )
            )
        )
        return result.scalar_one_or_none()

    async def check_limit(
        self,
        customer_id: str,
        customer_phone: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> RateLimitCheck:
        """Whether the customer may be contacted now. Creates the record lazily."""
        record = await self._get_or_create(customer_id, customer_phone, customer_email)
        self._reset_expired_windows(record)
        await self.db.flush()
        return self._evaluate(record)

    async def increment_count(self, customer_id: str) -> None:
        """Count one successful send against every window."""
        now = utcnow()
        result = await self.db.execute(
            update(CustomerRateLimit)
            .where(
                and_(
                    CustomerRateLimit.tenant_id == self.tenant_id,
                    CustomerRateLimit.customer_id == customer_id,
                )
            )
            .values(
                daily_count=CustomerRateLimit.daily_count + 1,
                weekly_count=CustomerRateLimit.weekly_count + 1,
                monthly_count=CustomerRateLimit.monthly_count + 1,
                last_interaction_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Send without a prior check: record it anyway so the ceiling sees it
            record = await self._get_or_create(customer_id)
            record.daily_count = 1
            record.weekly_count = 1
            record.monthly_count = 1
            record.last_interaction_at = now
            await self.db.flush()
            return

        record = await self.get_limits(customer_id)
        if record is not None:
            await self.db.refresh(record)

    async def try_acquire(self, customer_id: str) -> RateLimitCheck:
        """Atomic check-and-increment.

        After the reset pass a single UPDATE bumps the counters only if the
        customer is not opted out and every window is below its ceiling; the
        affected row count decides the outcome.
        """
        record = await self._get_or_create(customer_id)
        self._reset_expired_windows(record)
        await self.db.flush()

        result = await self.db.execute(
            update(CustomerRateLimit)
            .where(
                and_(
                    CustomerRateLimit.id == record.id,
                    CustomerRateLimit.opted_out.is_(False),
                    CustomerRateLimit.daily_count < self.ceilings.daily,
                    CustomerRateLimit.weekly_count < self.ceilings.weekly,
                    CustomerRateLimit.monthly_count < self.ceilings.monthly,
                )
            )
            .values(
                daily_count=CustomerRateLimit.daily_count + 1,
                weekly_count=CustomerRateLimit.weekly_count + 1,
                monthly_count=CustomerRateLimit.monthly_count + 1,
                last_interaction_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(record)

        if result.rowcount == 1:
            return RateLimitCheck(allowed=True, limits=self._usage(record))
        return self._evaluate(record)

    async def opt_out(self, customer_id: str, reason: str = DEFAULT_OPT_OUT_REASON) -> CustomerRateLimit:
        """Permanently suppress automated contact. There is no opt-in path here."""
        record = await self._get_or_create(customer_id)
        if not record.opted_out:
            record.opted_out = True
            record.opted_out_at = utcnow()
            record.opt_out_reason = reason
            await self.db.flush()
            logger.info(
                "Customer %s opted out for tenant %s: %s", customer_id, self.tenant_id, reason
            )
        return record

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _get_or_create(
        self,
        customer_id: str,
        customer_phone: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> CustomerRateLimit:
        record = await self.get_limits(customer_id)
        if record is None:
            now = utcnow()
            record = CustomerRateLimit(
                tenant_id=self.tenant_id,
                customer_id=customer_id,
                customer_phone=customer_phone,
                customer_email=customer_email,
                daily_count=0,
                weekly_count=0,
                monthly_count=0,
                opted_out=False,
                last_reset_at=now,
                weekly_reset_at=now,
                monthly_reset_at=now,
            )
            self.db.add(record)
            await self.db.flush()
        else:
            if customer_phone and not record.customer_phone:
                record.customer_phone = customer_phone
            if customer_email and not record.customer_email:
                record.customer_email = customer_email
        return record

    @staticmethod
    def _reset_expired_windows(record: CustomerRateLimit) -> bool:
        """Zero every counter whose window has elapsed. Anchors move only on rollover."""
        now = utcnow()
        rolled = False
        for _window, counter, anchor, length in _WINDOWS:
            started = getattr(record, anchor)
            if started is None or now - started >= length:
                setattr(record, counter, 0)
                setattr(record, anchor, now)
                rolled = True
        return rolled

    def _usage(self, record: CustomerRateLimit) -> dict[str, WindowUsage]:
        return {
            window.value: WindowUsage(current=getattr(record, counter) or 0, max=self.ceilings.for_window(window))
            for window, counter, _anchor, _length in _WINDOWS
        }

    def _evaluate(self, record: CustomerRateLimit) -> RateLimitCheck:
        limits = self._usage(record)
        if record.opted_out:
            return RateLimitCheck(allowed=False, reason=OPTED_OUT_REASON, limits=limits)

        for window, _counter, _anchor, _length in _WINDOWS:
            usage = limits[window.value]
            if usage.current >= usage.max:
                return RateLimitCheck(
                    allowed=False,
                    reason=_WINDOW_REASONS[window],
                    window=window,
                    limits=limits,
                )
        return RateLimitCheck(allowed=True, limits=limits)
