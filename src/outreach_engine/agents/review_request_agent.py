"""Review Request Agent — solicits reviews after a completed job.

Lifecycle: pending -> sent -> delivered -> (clicked ->) reviewed, or failed
at any point before reviewed. A rating below the tenant threshold is
intercepted: the request is closed as a negative review, a high-urgency
handoff is opened, and the customer is never sent to a public platform.
"""

import logging
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy import and_, select

from outreach_engine.agents import fallback_templates as fallback
from outreach_engine.agents.base import OutreachAgent, contact_for
from outreach_engine.domain.contracts import BatchResult, ReviewResponseOutcome
from outreach_engine.domain.enums import (
    AgentType,
    DeliveryMethod,
    HandoffUrgency,
    ReviewPlatform,
    ReviewRequestStatus,
    SafetyAction,
)
from outreach_engine.domain.errors import (
    DeliveryFailed,
    NotFound,
    RateLimitExceeded,
    SafetyBlocked,
    TriggerValidationError,
)
from outreach_engine.domain.models import ReviewRequest, utcnow
from outreach_engine.domain.schemas import ReviewRequestInput
from outreach_engine.services.outreach_state_machine import review_state_machine

logger = logging.getLogger(__name__)

INITIAL_TEMPLATE = "initial_review_request"
NEGATIVE_REVIEW_REASON = "Negative review intercepted"

# Statuses still waiting on the customer, eligible for follow-ups
FOLLOWUP_STATUSES = (ReviewRequestStatus.SENT.value, ReviewRequestStatus.DELIVERED.value)

# Order of the non-terminal statuses delivery and click receipts move through
RECEIPT_PROGRESS = {
    ReviewRequestStatus.SENT.value: 0,
    ReviewRequestStatus.DELIVERED.value: 1,
    ReviewRequestStatus.CLICKED.value: 2,
}

MIN_RATING = 1
MAX_RATING = 5


class ReviewRequestAgent(OutreachAgent):
    """Review solicitation, follow-ups and negative-review interception."""

    agent_type = AgentType.REPUTATION_MANAGER

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_request(self, request_id: str) -> ReviewRequest:
        result = await self.db.execute(
            select(ReviewRequest).where(
                and_(ReviewRequest.id == request_id, ReviewRequest.tenant_id == self.tenant_id)
            )
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFound("ReviewRequest", request_id)
        return request

    def review_link(self, request_id: str, base_url: str) -> str:
        return f"{base_url}/review/{request_id}"

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_review_request(self, data: ReviewRequestInput) -> ReviewRequest:
        """Create a request and send the initial solicitation.

        Raises RateLimitExceeded before anything is stored. A safety block or
        a transport failure leaves the stored request in ``failed`` and raises
        SafetyBlocked / DeliveryFailed.
        """
        method = DeliveryMethod(data.preferred_method)
        contact = contact_for(method, data.customer_phone, data.customer_email)
        settings = await self.settings()
        limiter = await self.rate_limiter()

        check = await limiter.check_limit(data.customer_id, data.customer_phone, data.customer_email)
        if not check.allowed:
            logger.info(
                "Review request for customer %s (tenant %s) denied: %s",
                data.customer_id, self.tenant_id, check.reason,
            )
            raise RateLimitExceeded(
                check.reason, window=check.window.value if check.window else None, limits=check.limits
            )

        request_id = str(uuid.uuid4())
        review_link = self.review_link(request_id, settings.review_link_base_url)
        request = ReviewRequest(
            id=request_id,
            tenant_id=self.tenant_id,
            customer_id=data.customer_id,
            job_id=data.job_id,
            delivery_method=method.value,
            contact_address=contact,
            status=ReviewRequestStatus.PENDING.value,
            sequence_step=1,
            max_sequences=settings.review_max_sequences,
            is_negative=False,
            request_metadata={
                **data.metadata,
                "customerName": data.customer_name,
                "jobType": data.job_type,
                "reviewLink": review_link,
            },
        )
        self.db.add(request)
        await self.db.flush()

        job_date = data.job_completed_at.strftime("%m/%d/%Y") if data.job_completed_at else None
        message, template = await self.compose(
            INITIAL_TEMPLATE,
            {
                "customerName": data.customer_name,
                "jobType": data.job_type or "service",
                "jobDate": job_date or "recently",
                "reviewLink": review_link,
                "businessName": settings.business_name or "our team",
            },
            fallback.get_review_initial(data.customer_name, data.job_type, review_link, job_date),
        )

        verdict = await self.check_outbound(message, f"review request {request.id}")
        if verdict.action == SafetyAction.BLOCK:
            review_state_machine.apply(request, ReviewRequestStatus.FAILED)
            await self.db.flush()
            raise SafetyBlocked(verdict.violations)
        message = verdict.final_text(message)

        delivery = await self.deliver(contact, message, method, f"review request {request.id}")
        if template is not None:
            await self.templates.track_usage(template.id, delivery.success)
        if not delivery.success:
            review_state_machine.apply(request, ReviewRequestStatus.FAILED)
            await self.db.flush()
            raise DeliveryFailed(delivery.error)

        now = utcnow()
        review_state_machine.apply(request, ReviewRequestStatus.SENT)
        request.sent_at = now
        request.provider_message_id = delivery.provider_message_id
        request.next_follow_up_at = now + timedelta(days=settings.review_followup_interval_days)
        await limiter.increment_count(data.customer_id)
        await self.db.flush()

        logger.info(
            "Sent review request %s to customer %s (tenant %s)",
            request.id, data.customer_id, self.tenant_id,
        )
        return request

    # ------------------------------------------------------------------
    # Delivery callbacks
    # ------------------------------------------------------------------

    async def mark_delivered(self, request_id: str) -> ReviewRequest:
        request = await self.get_request(request_id)
        if self._receipt_already_applied(request, ReviewRequestStatus.DELIVERED):
            return request
        review_state_machine.apply(request, ReviewRequestStatus.DELIVERED)
        request.delivered_at = utcnow()
        await self.db.flush()
        return request

    async def mark_clicked(self, request_id: str) -> ReviewRequest:
        request = await self.get_request(request_id)
        if self._receipt_already_applied(request, ReviewRequestStatus.CLICKED):
            return request
        review_state_machine.apply(request, ReviewRequestStatus.CLICKED)
        request.clicked_at = utcnow()
        await self.db.flush()
        return request

    @staticmethod
    def _receipt_already_applied(request: ReviewRequest, target: ReviewRequestStatus) -> bool:
        """True for a repeated or late receipt the request has already moved past.

        Such receipts leave the record unchanged. Receipts for a reviewed or
        failed request still go through the state machine and are rejected.
        """
        reached = RECEIPT_PROGRESS.get(request.status)
        if reached is None or reached < RECEIPT_PROGRESS[target.value]:
            return False
        logger.debug(
            "Ignoring %s receipt for review request %s already %s",
            target.value, request.id, request.status,
        )
        return True

    # ------------------------------------------------------------------
    # Review response
    # ------------------------------------------------------------------

    async def process_review_response(
        self,
        request_id: str,
        rating: int,
        review_text: Optional[str] = None,
        platform: ReviewPlatform | str | None = None,
    ) -> ReviewResponseOutcome:
        """Record the customer's rating and route it.

        Below the threshold the review is intercepted and escalated; at or
        above it the customer is redirected to the public platform. Either
        way the request becomes ``reviewed``, which is terminal, so an
        intercepted review can never be re-submitted through this flow.
        """
        request = await self.get_request(request_id)
        if not MIN_RATING <= rating <= MAX_RATING:
            raise TriggerValidationError("rating", f"must be between {MIN_RATING} and {MAX_RATING}")
        try:
            platform_value = ReviewPlatform(platform).value if platform else None
        except ValueError:
            raise TriggerValidationError("platform", f"unknown review platform {platform!r}")

        settings = await self.settings()
        review_state_machine.apply(request, ReviewRequestStatus.REVIEWED)
        now = utcnow()
        request.review_rating = rating
        request.review_text = review_text
        request.reviewed_at = now
        request.next_follow_up_at = None

        if rating < settings.review_negative_threshold:
            request.is_negative = True
            await self.db.flush()
            handoff = await self.handoffs.create_handoff(
                agent_type=self.agent_type,
                conversation_id=request.id,
                customer_id=request.customer_id,
                reason=NEGATIVE_REVIEW_REASON,
                urgency=HandoffUrgency.HIGH,
                conversation_history=[
                    {"role": "customer", "message": review_text or "", "timestamp": now.isoformat()},
                ],
                customer_context={
                    "rating": rating,
                    "reviewText": review_text,
                    "jobId": request.job_id,
                    "customerName": (request.request_metadata or {}).get("customerName"),
                },
                suggested_actions=list(fallback.NEGATIVE_REVIEW_ACTIONS),
            )
            logger.warning(
                "Intercepted %d-star review for request %s (tenant %s)",
                rating, request.id, self.tenant_id,
            )
            return ReviewResponseOutcome(
                intercepted=True,
                message=fallback.NEGATIVE_REVIEW_ACK,
                handoff_id=handoff.id,
            )

        request.review_platform = platform_value or ReviewPlatform.GOOGLE.value
        await self.db.flush()
        return ReviewResponseOutcome(
            intercepted=False,
            message=fallback.POSITIVE_REVIEW_ACK,
            redirect_url=settings.platform_url(request.review_platform),
        )

    # ------------------------------------------------------------------
    # Follow-ups (scheduler)
    # ------------------------------------------------------------------

    async def run_followup_sequence(self) -> BatchResult:
        """Send due follow-ups. A record advances only after a confirmed send.

        Each record commits on its own, so an exception on one request never
        undoes the follow-ups already sent in the same batch.
        """
        settings = await self.settings()
        now = utcnow()
        result = await self.db.execute(
            select(ReviewRequest.id)
            .where(
                and_(
                    ReviewRequest.tenant_id == self.tenant_id,
                    ReviewRequest.status.in_(FOLLOWUP_STATUSES),
                    ReviewRequest.next_follow_up_at.is_not(None),
                    ReviewRequest.next_follow_up_at <= now,
                    ReviewRequest.sequence_step < ReviewRequest.max_sequences,
                )
            )
            .order_by(ReviewRequest.next_follow_up_at.asc())
            .limit(settings.batch_page_size)
        )
        request_ids = list(result.scalars().all())

        batch = BatchResult()
        for request_id in request_ids:
            # get() reloads the row if an earlier rollback expired it
            request = await self.db.get(ReviewRequest, request_id)
            outcome = await self.run_isolated(
                f"review request {request_id}", lambda: self._send_followup(request)
            )
            batch.record(outcome)

        if request_ids:
            logger.info(
                "Review follow-ups for tenant %s: %s", self.tenant_id, batch.as_dict()
            )
        return batch

    async def _send_followup(self, request: ReviewRequest) -> str:
        settings = await self.settings()
        limiter = await self.rate_limiter()
        ref = f"review request {request.id}"

        check = await limiter.check_limit(request.customer_id)
        if not check.allowed:
            logger.info("Follow-up for %s deferred: %s", ref, check.reason)
            return "skipped"

        next_step = request.sequence_step + 1
        metadata = request.request_metadata or {}
        review_link = metadata.get("reviewLink") or self.review_link(request.id, settings.review_link_base_url)
        message, template = await self.compose(
            f"followup_{next_step}",
            {
                "customerName": metadata.get("customerName") or "there",
                "jobType": metadata.get("jobType") or "service",
                "reviewLink": review_link,
                "businessName": settings.business_name or "our team",
            },
            fallback.get_review_followup(review_link),
        )

        verdict = await self.check_outbound(message, ref)
        if verdict.action == SafetyAction.BLOCK:
            # A blocked follow-up ends the sequence; no further contact
            review_state_machine.apply(request, ReviewRequestStatus.FAILED)
            request.next_follow_up_at = None
            await self.db.flush()
            logger.warning("Follow-up for %s blocked by safety rules", ref)
            return "failed"
        message = verdict.final_text(message)

        delivery = await self.deliver(request.contact_address, message, request.delivery_method, ref)
        if template is not None:
            await self.templates.track_usage(template.id, delivery.success)
        if not delivery.success:
            # Step not advanced; retried on the next tick
            return "failed"

        now = utcnow()
        request.sequence_step = next_step
        request.provider_message_id = delivery.provider_message_id
        if next_step >= request.max_sequences:
            request.next_follow_up_at = None
        else:
            request.next_follow_up_at = now + timedelta(days=settings.review_followup_interval_days)
        await limiter.increment_count(request.customer_id)
        await self.db.flush()
        return "sent"
