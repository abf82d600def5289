"""SQLAlchemy ORM models for the MCA lead platform.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps, stored as naive UTC
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.sql import func

from mca_platform.infra.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


class Conversation(Base):
    """A lead conversation.

    ``processing_lock`` + ``last_activity`` together form the dispatch lease;
    see ``services.conversation_lock``.
    """

    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    business_name = Column(String(255))
    first_name = Column(String(100))
    lead_phone = Column(String(50), index=True)
    email = Column(String(255))
    state = Column(String(30), nullable=False, default="NEW", index=True)
    ai_enabled = Column(Boolean, default=True)
    has_offer = Column(Boolean, default=False)
    processing_lock = Column(Boolean, default=False, nullable=False)
    last_activity = Column(DateTime, default=utcnow)
    nudge_count = Column(Integer, default=0)
    assigned_agent = Column(String(100), nullable=True)
    tags = Column(JSON, default=list)
    extra_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    @property
    def short_id(self) -> str:
        return (self.id or "")[:8]

    @property
    def label(self) -> str:
        """Display label used in log lines."""
        return f"{self.business_name or self.first_name or 'Unknown'} ({self.short_id})"


class Message(Base):
    """A single inbound or outbound SMS/MMS on a conversation."""

    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)
    direction = Column(String(10), nullable=False)  # inbound, outbound
    content = Column(Text, nullable=False, default="")
    media_url = Column(Text, nullable=True)
    message_type = Column(String(10), default="sms")  # sms, mms
    sent_by = Column(String(50), nullable=True)  # lead, drip, qualifier, vetter, negotiator, morning_agent, user id
    status = Column(String(20), nullable=False, default="pending")
    provider_ref = Column(String(64), unique=True, nullable=True)
    timestamp = Column(DateTime, default=utcnow, index=True)

    def to_payload(self) -> dict:
        """JSON-friendly shape pushed to dashboard observers."""
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "direction": self.direction,
            "content": self.content,
            "media_url": self.media_url,
            "sent_by": self.sent_by,
            "status": self.status,
            "provider_ref": self.provider_ref,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class StateTransition(Base):
    """Append-only history of committed conversation state changes."""

    __tablename__ = "state_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)
    old_state = Column(String(30), nullable=True)
    new_state = Column(String(30), nullable=False)
    changed_by = Column(String(50), nullable=False)
    reason = Column(Text, nullable=True)
    timestamp = Column(DateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Lender submissions (owned by the submissions module; read here)
# ---------------------------------------------------------------------------


class LenderSubmission(Base):
    """A deal submitted to a lender. ``status == "OFFER"`` marks a funding offer."""

    __tablename__ = "lender_submissions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)
    lender_name = Column(String(255))
    status = Column(String(20), default="sent")  # sent, OFFER, DECLINED
    offer_amount = Column(Float, nullable=True)
    last_response_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=func.now())
