"""SQLAlchemy ORM models for the outreach automation engine."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.sql import func

from outreach_engine.infra.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Tenant configuration
# ---------------------------------------------------------------------------


class SafetyRule(Base):
    """Keyword / pattern rule evaluated against every outbound message.

    ``tenant_id`` NULL means the rule is global and applies to all tenants.
    """

    __tablename__ = "ai_safety_rules"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=True, index=True)
    rule_type = Column(String(30), nullable=False)  # prohibited_topic, required_disclaimer, handoff_trigger
    rule_name = Column(String(200), nullable=False)
    rule_description = Column(Text, nullable=True)
    keywords = Column(JSON, default=list)
    patterns = Column(JSON, default=list)
    action = Column(String(20), nullable=False)  # block, warn, handoff, add_disclaimer
    action_metadata = Column(JSON, default=dict)
    applies_to_agents = Column(JSON, default=list)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class ResponseTemplate(Base):
    __tablename__ = "ai_response_templates"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    agent_type = Column(String(30), nullable=False)
    template_name = Column(String(100), nullable=False)
    template_category = Column(String(50), nullable=True)
    template_text = Column(Text, nullable=False)
    variables = Column(JSON, default=list)
    usage_count = Column(Integer, default=0)
    success_rate = Column(Float, default=0.0)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("tenant_id", "agent_type", "template_name", name="uq_template_name"),
    )


class TenantAutomationSettings(Base):
    """Per-tenant overrides of the platform thresholds. NULL = platform default."""

    __tablename__ = "tenant_automation_settings"

    tenant_id = Column(String(36), primary_key=True)
    business_name = Column(String(200), nullable=True)
    daily_limit = Column(Integer, nullable=True)
    weekly_limit = Column(Integer, nullable=True)
    monthly_limit = Column(Integer, nullable=True)
    review_negative_threshold = Column(Integer, nullable=True)
    review_max_sequences = Column(Integer, nullable=True)
    review_followup_interval_days = Column(Integer, nullable=True)
    nurture_max_steps = Column(Integer, nullable=True)
    nurture_step_interval_hours = Column(Integer, nullable=True)
    review_platform_urls = Column(JSON, default=dict)  # {"google": "https://g.page/..."}
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class CustomerRateLimit(Base):
    """Interaction counters and opt-out state per (tenant, customer). Never deleted."""

    __tablename__ = "ai_customer_rate_limits"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False)
    customer_id = Column(String(100), nullable=False)
    customer_phone = Column(String(50), nullable=True)
    customer_email = Column(String(255), nullable=True)
    daily_count = Column(Integer, default=0, nullable=False)
    weekly_count = Column(Integer, default=0, nullable=False)
    monthly_count = Column(Integer, default=0, nullable=False)
    opted_out = Column(Boolean, default=False, nullable=False)
    opted_out_at = Column(DateTime, nullable=True)
    opt_out_reason = Column(String(255), nullable=True)
    last_interaction_at = Column(DateTime, nullable=True)
    last_reset_at = Column(DateTime, nullable=False, default=utcnow)  # daily window anchor
    weekly_reset_at = Column(DateTime, nullable=False, default=utcnow)
    monthly_reset_at = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("tenant_id", "customer_id", name="uq_rate_limit_customer"),
    )


# ---------------------------------------------------------------------------
# Review requests
# ---------------------------------------------------------------------------


class ReviewRequest(Base):
    __tablename__ = "review_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    customer_id = Column(String(100), nullable=False, index=True)
    job_id = Column(String(100), nullable=True)
    delivery_method = Column(String(20), nullable=False)
    contact_address = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    sequence_step = Column(Integer, default=1, nullable=False)
    max_sequences = Column(Integer, default=3, nullable=False)
    next_follow_up_at = Column(DateTime, nullable=True, index=True)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    clicked_at = Column(DateTime, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    provider_message_id = Column(String(100), nullable=True)
    review_rating = Column(Integer, nullable=True)
    review_text = Column(Text, nullable=True)
    review_platform = Column(String(30), nullable=True)
    is_negative = Column(Boolean, default=False, nullable=False)
    request_metadata = Column(JSON, default=dict)  # customerName, jobType, reviewLink
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


# ---------------------------------------------------------------------------
# Lead nurture
# ---------------------------------------------------------------------------


class LeadNurtureSequence(Base):
    __tablename__ = "lead_nurture_sequences"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    lead_id = Column(String(100), nullable=False, index=True)
    lead_name = Column(String(200), nullable=True)
    delivery_method = Column(String(20), nullable=False)
    contact_address = Column(String(255), nullable=False)
    trigger_type = Column(String(30), nullable=False)
    trigger_data = Column(JSON, default=dict)
    sequence_step = Column(Integer, default=1, nullable=False)
    max_steps = Column(Integer, default=5, nullable=False)
    status = Column(String(20), nullable=False, default="active")
    current_template = Column(String(100), nullable=True)
    next_action_at = Column(DateTime, nullable=True, index=True)
    last_message_sent_at = Column(DateTime, nullable=True)
    last_message_received_at = Column(DateTime, nullable=True)
    message_count = Column(Integer, default=0, nullable=False)
    lead_qualified = Column(Boolean, default=False, nullable=False)
    appointment_scheduled = Column(Boolean, default=False, nullable=False)
    appointment_at = Column(DateTime, nullable=True)
    converted_at = Column(DateTime, nullable=True)
    conversion_value = Column(Float, nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        # At most one active sequence per lead
        Index(
            "uq_active_nurture_per_lead",
            "tenant_id",
            "lead_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )


class LeadNurtureMessage(Base):
    """Append-only conversation log entry."""

    __tablename__ = "lead_nurture_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    sequence_id = Column(String(36), ForeignKey("lead_nurture_sequences.id"), nullable=False, index=True)
    tenant_id = Column(String(36), nullable=False)
    direction = Column(String(10), nullable=False)  # outbound, inbound
    message_text = Column(Text, nullable=False)
    delivery_method = Column(String(20), nullable=False)
    delivery_status = Column(String(20), default="pending")
    provider_message_id = Column(String(100), nullable=True)
    template_used = Column(String(100), nullable=True)
    detected_intent = Column(String(30), nullable=True)
    sentiment = Column(String(20), nullable=True)
    needs_human_handoff = Column(Boolean, default=False, nullable=False)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Human handoff
# ---------------------------------------------------------------------------


class HumanHandoff(Base):
    __tablename__ = "ai_human_handoffs"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    agent_type = Column(String(30), nullable=False)
    conversation_id = Column(String(36), nullable=False, index=True)
    customer_id = Column(String(100), nullable=False)
    reason = Column(Text, nullable=False)
    urgency = Column(String(10), nullable=False, default="normal")
    conversation_history = Column(JSON, default=list)
    customer_context = Column(JSON, default=dict)
    suggested_actions = Column(JSON, default=list)
    status = Column(String(20), nullable=False, default="pending")
    claimed_by = Column(String(255), nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolution_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())
