"""Outreach agents package.

Agents:
1. ReviewRequestAgent (review solicitation, follow-ups, negative-review interception)
2. LeadNurtureAgent (lead re-engagement sequences and inbound replies)

Both run every outbound message through the Safety Rules Engine and the
Rate Limit Engine. The Lead Nurture Agent also uses the deterministic
message classifier.
"""

from .classifier import KeywordMessageClassifier, MessageClassifier, is_opt_out
from .lead_nurture_agent import LeadNurtureAgent
from .review_request_agent import ReviewRequestAgent

__all__ = [
    "KeywordMessageClassifier",
    "MessageClassifier",
    "is_opt_out",
    "LeadNurtureAgent",
    "ReviewRequestAgent",
]
