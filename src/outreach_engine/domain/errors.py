"""Error kinds surfaced by the agents and engines.

Each carries an HTTP ``status_code`` so the internal API can map it
without a per-route ``except`` ladder.
"""

from typing import Any, Optional


class AutomationError(Exception):
    """Base class for a failure scoped to a single request or sequence."""

    status_code = 400

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "detail": self.detail}


class RateLimitExceeded(AutomationError):
    status_code = 429

    def __init__(self, reason: str, window: Optional[str] = None, limits: Optional[dict] = None):
        self.reason = reason
        self.window = window  # None when denied because of opt-out
        self.limits = limits or {}
        super().__init__(reason)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["window"] = self.window
        data["limits"] = {
            name: {"current": usage.current, "max": usage.max}
            for name, usage in self.limits.items()
        }
        return data


class AlreadyActive(AutomationError):
    """A lead already has an active nurture sequence; carries that sequence."""

    status_code = 409

    def __init__(self, existing):
        self.existing = existing
        super().__init__(f"Lead {existing.lead_id} already has active sequence {existing.id}")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["sequence_id"] = self.existing.id
        return data


class NoActiveSequence(AutomationError):
    status_code = 404

    def __init__(self, lead_id: str):
        self.lead_id = lead_id
        super().__init__(f"No active nurture sequence for lead {lead_id}")


class NotFound(AutomationError):
    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class SafetyBlocked(AutomationError):
    status_code = 422

    def __init__(self, violations: list):
        self.violations = violations
        names = ", ".join(v.rule_name for v in violations) or "unknown rule"
        super().__init__(f"Message blocked by safety rules: {names}")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["violations"] = [
            {"rule_id": v.rule_id, "rule_name": v.rule_name, "triggered_by": v.triggered_by}
            for v in self.violations
        ]
        return data


class DeliveryFailed(AutomationError):
    status_code = 502

    def __init__(self, error: Optional[str]):
        self.error = error
        super().__init__(f"Message delivery failed: {error or 'unknown error'}")


class TriggerValidationError(AutomationError):
    """A trigger is missing a field the operation needs."""

    status_code = 400

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")
