"""Shared test infrastructure for the MCA Platform test suite.

Provides:
- session_factory / db_session: async SQLite in-memory sessions with all tables created
- make_conversation: factory for Conversation rows
- make_message: factory for Message rows
- make_offer: factory for OFFER LenderSubmission rows
- reasoning_client: mock ReasoningAgentClient with a configurable response
- sms_gateway: mock SMSService capturing outbound sends
- notifier: mock dashboard publish callable
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Import Base first, then models to register all tables
from mca_platform.infra.database import Base

import mca_platform.domain.models  # noqa: F401

from mca_platform.agents.contracts import ReasoningResponse, ToolInvocation
from mca_platform.domain.models import Conversation, LenderSubmission, Message, utcnow
from mca_platform.services.outbound_delivery import OutboundDelivery
from mca_platform.services.sms_service import SendReceipt


# ---------------------------------------------------------------------------
# Database session fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def session_factory():
    """Session factory bound to a fresh in-memory database.

    Creates a fresh engine + tables for each test and tears it down after.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    """Async SQLite in-memory session with all tables created."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_conversation(db_session):
    """Factory that creates a Conversation row.

    Usage:
        conv = await make_conversation(state="QUALIFIED", lead_phone="+15551234567")
    """
    async def _factory(
        state: str = "ACTIVE",
        business_name: str = "Acme Trucking",
        lead_phone: Optional[str] = "+15551234567",
        ai_enabled: bool = True,
        has_offer: bool = False,
        processing_lock: bool = False,
        last_activity: Optional[datetime] = None,
        nudge_count: int = 0,
        extra_metadata: Optional[dict] = None,
    ) -> Conversation:
        conv = Conversation(
            id=str(uuid.uuid4()),
            business_name=business_name,
            first_name="Sam",
            lead_phone=lead_phone,
            state=state,
            ai_enabled=ai_enabled,
            has_offer=has_offer,
            processing_lock=processing_lock,
            last_activity=last_activity or utcnow(),
            nudge_count=nudge_count,
            extra_metadata=extra_metadata or {},
        )
        db_session.add(conv)
        await db_session.commit()
        return conv

    return _factory


@pytest.fixture
def make_message(db_session):
    """Factory that creates a Message row.

    Usage:
        msg = await make_message(conv.id, "inbound", "yes send it over")
    """
    async def _factory(
        conversation_id: str,
        direction: str,
        content: str,
        sent_by: Optional[str] = None,
        status: str = "sent",
        timestamp: Optional[datetime] = None,
    ) -> Message:
        msg = Message(
            conversation_id=conversation_id,
            direction=direction,
            content=content,
            sent_by=sent_by or ("lead" if direction == "inbound" else "qualifier"),
            status=status,
            timestamp=timestamp or utcnow(),
        )
        db_session.add(msg)
        await db_session.commit()
        return msg

    return _factory


@pytest.fixture
def make_offer(db_session):
    """Factory that creates an OFFER LenderSubmission.

    Usage:
        offer = await make_offer(conv.id, offer_amount=50000, hours_ago=2)
    """
    async def _factory(
        conversation_id: str,
        lender_name: str = "Velocity Capital",
        offer_amount: Optional[float] = 50000.0,
        hours_ago: float = 2,
        status: str = "OFFER",
    ) -> LenderSubmission:
        offer = LenderSubmission(
            conversation_id=conversation_id,
            lender_name=lender_name,
            status=status,
            offer_amount=offer_amount,
            last_response_at=utcnow() - timedelta(hours=hours_ago),
        )
        db_session.add(offer)
        await db_session.commit()
        return offer

    return _factory


# ---------------------------------------------------------------------------
# External client mocks
# ---------------------------------------------------------------------------

def reasoning_response(text: Optional[str] = None, tools: Optional[list[tuple[str, dict]]] = None) -> ReasoningResponse:
    """Build a ReasoningResponse from (name, arguments) tool pairs."""
    return ReasoningResponse(
        text=text,
        tool_calls=[ToolInvocation(name=name, arguments=args) for name, args in (tools or [])],
    )


@pytest.fixture
def make_response():
    """Factory for ReasoningResponse objects.

    Usage:
        make_response("sure!", tools=[("update_lead_status", {"status": "QUALIFIED"})])
    """
    return reasoning_response


@pytest.fixture
def reasoning_client():
    """Mock ReasoningAgentClient.

    Set ``reasoning_client.converse.return_value`` (or ``side_effect``) per test.
    Defaults to a plain text reply.
    """
    mock = MagicMock()
    mock.agent_name = "test"
    mock.converse = AsyncMock(return_value=reasoning_response("Got it, sending the application now."))
    return mock


@pytest.fixture
def sms_gateway():
    """Mock SMSService that captures outbound sends as (destination, body) tuples."""
    mock = MagicMock()
    mock.sent = []

    async def _capture_send(destination: str, body: str, media_url: Optional[str] = None):
        mock.sent.append((destination, body))
        return SendReceipt(provider_ref=f"SM{uuid.uuid4().hex[:16]}", status="queued")

    mock.send = AsyncMock(side_effect=_capture_send)
    return mock


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def delivery(db_session, sms_gateway, notifier):
    return OutboundDelivery(db_session, sms_service=sms_gateway, notifier=notifier)
