"""Typed dataclasses for engine and agent I/O contracts."""

from dataclasses import dataclass, field
from typing import Any, Optional

from outreach_engine.domain.enums import (
    MessageIntent,
    MessageSentiment,
    RateLimitWindow,
    SafetyAction,
)


@dataclass
class SafetyViolation:
    """One rule that fired on a message. At most one per rule."""
    rule_id: str
    rule_name: str
    rule_type: str
    triggered_by: str  # matched keyword or pattern
    action: SafetyAction
    metadata: dict = field(default_factory=dict)


@dataclass
class SafetyCheckResult:
    """Verdict of the Safety Rules Engine for one candidate message."""
    safe: bool
    action: Optional[SafetyAction] = None  # None when no rule fired
    violations: list[SafetyViolation] = field(default_factory=list)
    modified_message: Optional[str] = None

    def final_text(self, original: str) -> str:
        return self.modified_message if self.modified_message is not None else original


@dataclass
class WindowUsage:
    current: int
    max: int


@dataclass
class RateLimitCheck:
    """Output of RateLimitEngine.check_limit / try_acquire."""
    allowed: bool
    reason: Optional[str] = None
    window: Optional[RateLimitWindow] = None  # window that denied, if any
    limits: dict[str, WindowUsage] = field(default_factory=dict)


@dataclass
class DeliveryResult:
    """Outcome of one transport send. Failure is data, not an exception."""
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class MessageAnalysis:
    """Output of a message classifier."""
    intent: MessageIntent
    sentiment: MessageSentiment
    matched_keywords: list[str] = field(default_factory=list)


@dataclass
class ReviewResponseOutcome:
    intercepted: bool
    message: str
    redirect_url: Optional[str] = None
    handoff_id: Optional[str] = None


@dataclass
class IncomingMessageOutcome:
    """What the Lead Nurture Agent did with one inbound message."""
    reply: Optional[str] = None
    handoff: bool = False
    handoff_id: Optional[str] = None
    opted_out: bool = False
    qualified: bool = False
    analysis: Optional[MessageAnalysis] = None


@dataclass
class BatchResult:
    """Counts from one batch run (follow-ups or scheduled nurture steps)."""
    processed: int = 0  # sends that succeeded and advanced a record
    skipped: int = 0  # rate-limited, left for a later tick
    failed: int = 0  # failed sends and per-record exceptions
    completed: int = 0  # sequences closed because their steps ran out

    def record(self, outcome: str) -> None:
        if outcome == "sent":
            self.processed += 1
        elif outcome == "skipped":
            self.skipped += 1
        elif outcome == "completed":
            self.completed += 1
        else:
            self.failed += 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "completed": self.completed,
        }
