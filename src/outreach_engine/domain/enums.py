"""Domain enumerations for the outreach automation engine.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class AgentType(str, Enum):
    """Automated agents that send messages on a tenant's behalf."""

    REPUTATION_MANAGER = "reputation_manager"
    SALES_NURTURER = "sales_nurturer"


class DeliveryMethod(str, Enum):
    """Channel used to reach a customer or lead."""

    SMS = "sms"
    WHATSAPP = "whatsapp"
    EMAIL = "email"


class ReviewPlatform(str, Enum):
    """Public review sites a satisfied customer can be redirected to."""

    GOOGLE = "google"
    YELP = "yelp"
    FACEBOOK = "facebook"
    TRUSTPILOT = "trustpilot"


class ReviewRequestStatus(str, Enum):
    """Lifecycle of a review solicitation."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    CLICKED = "clicked"
    REVIEWED = "reviewed"
    FAILED = "failed"


class NurtureStatus(str, Enum):
    """Lifecycle of a lead nurture sequence. Only ACTIVE is non-terminal."""

    ACTIVE = "active"
    COMPLETED = "completed"
    CONVERTED = "converted"
    OPTED_OUT = "opted_out"
    FAILED = "failed"


class NurtureTrigger(str, Enum):
    """Event that started a nurture sequence."""

    MISSED_CALL = "missed_call"
    ABANDONED_QUOTE = "abandoned_quote"
    NO_RESPONSE = "no_response"
    COLD_LEAD = "cold_lead"


class MessageIntent(str, Enum):
    QUESTION = "question"
    OBJECTION = "objection"
    READY_TO_BUY = "ready_to_buy"
    NOT_INTERESTED = "not_interested"
    UNCLEAR = "unclear"


class MessageSentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class MessageDirection(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class DeliveryStatus(str, Enum):
    """Transport outcome attached to a logged message."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    RECEIVED = "received"


class SafetyRuleType(str, Enum):
    PROHIBITED_TOPIC = "prohibited_topic"
    REQUIRED_DISCLAIMER = "required_disclaimer"
    HANDOFF_TRIGGER = "handoff_trigger"


class SafetyAction(str, Enum):
    """Enforcement action of a safety rule, ordered by precedence.

    When several rules fire on one message the action with the highest
    ``priority`` wins: block > handoff > warn > add_disclaimer.
    """

    BLOCK = "block"
    HANDOFF = "handoff"
    WARN = "warn"
    ADD_DISCLAIMER = "add_disclaimer"

    @property
    def priority(self) -> int:
        return _SAFETY_ACTION_PRIORITY[self]


_SAFETY_ACTION_PRIORITY = {
    SafetyAction.BLOCK: 4,
    SafetyAction.HANDOFF: 3,
    SafetyAction.WARN: 2,
    SafetyAction.ADD_DISCLAIMER: 1,
}


class HandoffUrgency(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


# Queue ordering: most urgent first
URGENCY_RANK = {
    HandoffUrgency.URGENT.value: 0,
    HandoffUrgency.HIGH.value: 1,
    HandoffUrgency.NORMAL.value: 2,
    HandoffUrgency.LOW.value: 3,
}


class HandoffStatus(str, Enum):
    """Status of a human handoff. Only an operator closes a handoff."""

    PENDING = "pending"
    CLAIMED = "claimed"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class RateLimitWindow(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
