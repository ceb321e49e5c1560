"""Shared FastAPI dependencies for the internal endpoints."""

from fastapi import Header, HTTPException

from outreach_engine.app.config import get_settings
from outreach_engine.services.safety_rules import RuleCache
from outreach_engine.services.transport import MessageTransport

# One cache per process so rule lookups survive across requests
_rule_cache = RuleCache()


async def verify_internal_token(x_internal_token: str = Header(...)):
    """Verify the internal cron / trigger token."""
    settings = get_settings()
    if x_internal_token != settings.internal_token:
        raise HTTPException(status_code=401, detail="Invalid internal token")


def get_transport() -> MessageTransport:
    return MessageTransport()


def get_rule_cache() -> RuleCache:
    return _rule_cache
