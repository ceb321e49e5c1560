"""Shared test infrastructure for the Outreach Engine test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- seeded_session: db_session with the platform safety rules seeded
- transport_mock: mock MessageTransport capturing outbound messages
- rule_cache: fresh RuleCache per test
- make_rule / make_template / make_tenant_settings: row factories
- api_client / internal_headers: httpx client for the internal API
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from outreach_engine.infra.database import Base

import outreach_engine.domain.models  # noqa: F401

from outreach_engine.domain.contracts import DeliveryResult
from outreach_engine.domain.enums import AgentType, SafetyAction, SafetyRuleType
from outreach_engine.domain.models import ResponseTemplate, SafetyRule, TenantAutomationSettings
from outreach_engine.services.safety_rules import RuleCache, seed_default_rules

TENANT_ID = "tenant-1"


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def seeded_session(db_session):
    """db_session with the platform-level safety rules in place."""
    await seed_default_rules(db_session)
    return db_session


# ---------------------------------------------------------------------------
# Transport mock
# ---------------------------------------------------------------------------

@pytest.fixture
def transport_mock():
    """Mock MessageTransport that captures outbound messages.

    Returns a MagicMock whose ``send`` appends (to, text, method) tuples
    to a .sent list and reports success. Set ``mock.fail = "reason"`` to
    make every subsequent send fail.
    """
    mock = MagicMock()
    mock.sent = []
    mock.fail = None

    async def _capture_send(to: str, text: str, method):
        if mock.fail:
            return DeliveryResult(success=False, error=mock.fail)
        mock.sent.append((to, text, method))
        return DeliveryResult(success=True, provider_message_id=f"msg-{len(mock.sent)}")

    mock.send = AsyncMock(side_effect=_capture_send)
    return mock


@pytest.fixture
def rule_cache():
    return RuleCache(ttl_seconds=300)


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_rule(db_session):
    """Factory that creates a SafetyRule row.

    Usage:
        rule = await make_rule(keywords=["refund"], action=SafetyAction.BLOCK)
    """
    async def _factory(
        tenant_id: str | None = TENANT_ID,
        rule_name: str = "Test Rule",
        rule_type: SafetyRuleType = SafetyRuleType.PROHIBITED_TOPIC,
        keywords: list[str] | None = None,
        patterns: list[str] | None = None,
        action: SafetyAction = SafetyAction.BLOCK,
        action_metadata: dict | None = None,
        applies_to_agents: list[str] | None = None,
        is_active: bool = True,
    ) -> SafetyRule:
        rule = SafetyRule(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            rule_type=rule_type.value,
            rule_name=rule_name,
            keywords=keywords or [],
            patterns=patterns or [],
            action=action.value,
            action_metadata=action_metadata or {},
            applies_to_agents=(
                applies_to_agents
                if applies_to_agents is not None
                else [AgentType.REPUTATION_MANAGER.value, AgentType.SALES_NURTURER.value]
            ),
            is_active=is_active,
        )
        db_session.add(rule)
        await db_session.flush()
        return rule

    return _factory


@pytest.fixture
def make_template(db_session):
    """Factory that creates a ResponseTemplate row."""
    async def _factory(
        template_name: str,
        template_text: str,
        agent_type: AgentType = AgentType.REPUTATION_MANAGER,
        tenant_id: str = TENANT_ID,
        is_active: bool = True,
    ) -> ResponseTemplate:
        template = ResponseTemplate(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            agent_type=agent_type.value,
            template_name=template_name,
            template_text=template_text,
            usage_count=0,
            success_rate=0.0,
            is_active=is_active,
        )
        db_session.add(template)
        await db_session.flush()
        return template

    return _factory


@pytest.fixture
def make_tenant_settings(db_session):
    """Factory that stores per-tenant overrides."""
    async def _factory(tenant_id: str = TENANT_ID, **overrides) -> TenantAutomationSettings:
        row = TenantAutomationSettings(tenant_id=tenant_id, **overrides)
        db_session.add(row)
        await db_session.flush()
        return row

    return _factory


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest.fixture
async def api_client(db_session, transport_mock, rule_cache):
    """httpx client against the FastAPI app, sharing the test session and transport mock."""
    from httpx import ASGITransport, AsyncClient

    from outreach_engine.app.dependencies import get_rule_cache, get_transport
    from outreach_engine.app.main import app
    from outreach_engine.infra.database import get_db

    async def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_transport] = lambda: transport_mock
    app.dependency_overrides[get_rule_cache] = lambda: rule_cache

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def internal_headers():
    from outreach_engine.app.config import get_settings

    return {"X-Internal-Token": get_settings().internal_token}
