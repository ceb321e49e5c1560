"""Message Classifier — DETERMINISTIC only, no model calls.

Keyword extraction of coarse intent and sentiment from inbound lead
messages. The Lead Nurture Agent depends only on ``MessageClassifier``,
so a model-backed implementation can replace ``KeywordMessageClassifier``
without touching its branching.
"""

import re
from typing import Protocol

from outreach_engine.domain.contracts import MessageAnalysis
from outreach_engine.domain.enums import MessageIntent, MessageSentiment

# Whole-message opt-out keywords (compared after trim + lowercase)
OPT_OUT_KEYWORDS = frozenset({"stop", "unsubscribe", "opt out", "remove", "cancel"})

# Explicit refusals. Checked first so "not interested" never reads as "interested".
NOT_INTERESTED_PHRASES = (
    "not interested",
    "no thanks",
    "no thank you",
    "not now",
    "leave me alone",
    "don't contact",
    "dont contact",
)

AFFIRMATIVE_WORDS = ("yes", "yeah", "yep", "sure", "interested", "ready", "schedule", "book")
NEGATION_WORDS = ("no", "nope", "stop", "unsubscribe", "cancel", "remove")
OBJECTION_WORDS = ("but", "however", "expensive", "pricey", "too much")

POSITIVE_WORDS = ("great", "awesome", "perfect", "excellent", "love", "thanks", "thank you")
NEGATIVE_WORDS = ("bad", "terrible", "awful", "hate", "worst", "never")


def _word_pattern(words) -> re.Pattern:
    alternatives = "|".join(re.escape(w) for w in sorted(words, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


NOT_INTERESTED_RE = _word_pattern(NOT_INTERESTED_PHRASES)
AFFIRMATIVE_RE = _word_pattern(AFFIRMATIVE_WORDS)
NEGATION_RE = _word_pattern(NEGATION_WORDS)
OBJECTION_RE = _word_pattern(OBJECTION_WORDS)
POSITIVE_RE = _word_pattern(POSITIVE_WORDS)
NEGATIVE_RE = _word_pattern(NEGATIVE_WORDS)


class MessageClassifier(Protocol):
    def classify(self, text: str) -> MessageAnalysis:
        ...


class KeywordMessageClassifier:
    """Fixed word lists, first match wins."""

    def classify(self, text: str) -> MessageAnalysis:
        matched: list[str] = []
        intent = self._intent(text, matched)
        sentiment = self._sentiment(text, matched)
        return MessageAnalysis(intent=intent, sentiment=sentiment, matched_keywords=matched)

    @staticmethod
    def _intent(text: str, matched: list[str]) -> MessageIntent:
        for pattern, intent in (
            (NOT_INTERESTED_RE, MessageIntent.NOT_INTERESTED),
            (AFFIRMATIVE_RE, MessageIntent.READY_TO_BUY),
            (NEGATION_RE, MessageIntent.NOT_INTERESTED),
        ):
            hit = pattern.search(text)
            if hit:
                matched.append(hit.group(0).lower())
                return intent

        if "?" in text:
            return MessageIntent.QUESTION

        hit = OBJECTION_RE.search(text)
        if hit:
            matched.append(hit.group(0).lower())
            return MessageIntent.OBJECTION
        return MessageIntent.UNCLEAR

    @staticmethod
    def _sentiment(text: str, matched: list[str]) -> MessageSentiment:
        hit = POSITIVE_RE.search(text)
        if hit:
            matched.append(hit.group(0).lower())
            return MessageSentiment.POSITIVE
        hit = NEGATIVE_RE.search(text)
        if hit:
            matched.append(hit.group(0).lower())
            return MessageSentiment.NEGATIVE
        return MessageSentiment.NEUTRAL


def is_opt_out(text: str) -> bool:
    """True only when the whole message is an opt-out keyword."""
    return text.strip().lower() in OPT_OUT_KEYWORDS
