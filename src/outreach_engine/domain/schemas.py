"""Pydantic v2 schemas for agent triggers and API request/response validation."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from outreach_engine.domain.enums import (
    DeliveryMethod,
    HandoffUrgency,
    NurtureTrigger,
    ReviewPlatform,
)


# ---------------------------------------------------------------------------
# Agent triggers
# ---------------------------------------------------------------------------


class ReviewRequestInput(BaseModel):
    """Job-completed trigger for the Review Request Agent."""

    customer_id: str
    customer_name: str
    customer_phone: str | None = None
    customer_email: str | None = None
    job_id: str | None = None
    job_type: str | None = None
    job_completed_at: datetime | None = None
    preferred_method: DeliveryMethod = DeliveryMethod.SMS
    metadata: dict = Field(default_factory=dict)


class LeadNurtureInput(BaseModel):
    """Missed-call / abandoned-quote / cold-lead trigger for the Lead Nurture Agent."""

    lead_id: str
    lead_name: str | None = None
    lead_phone: str | None = None
    lead_email: str | None = None
    trigger_type: NurtureTrigger
    trigger_data: dict = Field(default_factory=dict)
    preferred_method: DeliveryMethod = DeliveryMethod.SMS


# ---------------------------------------------------------------------------
# API requests
# ---------------------------------------------------------------------------


class ReviewResponseRequest(BaseModel):
    rating: int
    review_text: str | None = None
    platform: ReviewPlatform | None = None


class IncomingMessageRequest(BaseModel):
    lead_id: str
    text: str
    method: DeliveryMethod = DeliveryMethod.SMS


class AppointmentRequest(BaseModel):
    appointment_time: datetime
    conversion_value: float | None = None


class HandoffClaimRequest(BaseModel):
    operator: str


class HandoffResolveRequest(BaseModel):
    resolution_notes: str | None = None


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------


class ReviewRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    customer_id: str
    job_id: str | None = None
    delivery_method: str
    status: str
    sequence_step: int
    max_sequences: int
    next_follow_up_at: datetime | None = None
    review_rating: int | None = None
    review_platform: str | None = None
    is_negative: bool


class NurtureSequenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    lead_id: str
    trigger_type: str
    status: str
    sequence_step: int
    max_steps: int
    next_action_at: datetime | None = None
    lead_qualified: bool
    appointment_scheduled: bool
    appointment_at: datetime | None = None
    converted_at: datetime | None = None


class HandoffResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    agent_type: str
    conversation_id: str
    customer_id: str
    reason: str
    urgency: HandoffUrgency
    status: str
    conversation_history: list = Field(default_factory=list)
    customer_context: dict = Field(default_factory=dict)
    suggested_actions: list = Field(default_factory=list)
    claimed_by: str | None = None
    resolution_notes: str | None = None
    created_at: datetime | None = None
