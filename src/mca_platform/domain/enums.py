"""Domain enumerations for the MCA lead platform.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class ConversationState(str, Enum):
    """Funnel position of a lead conversation."""

    # Early funnel
    NEW = "NEW"
    ACTIVE = "ACTIVE"
    REPLIED = "REPLIED"
    INTERESTED = "INTERESTED"
    QUALIFIED = "QUALIFIED"

    # Cold drip (dispatcher-owned)
    DRIP = "DRIP"
    SENT_HOOK = "SENT_HOOK"
    SENT_FU_1 = "SENT_FU_1"
    SENT_FU_2 = "SENT_FU_2"
    SENT_FU_3 = "SENT_FU_3"
    SENT_FU_4 = "SENT_FU_4"

    # Waiting on FCS / strategy
    PRE_VETTED = "PRE_VETTED"

    # Underwriting
    FCS_RUNNING = "FCS_RUNNING"
    VETTING = "VETTING"
    HAIL_MARY = "HAIL_MARY"
    SUBMITTED = "SUBMITTED"

    # Offer
    OFFER_RECEIVED = "OFFER_RECEIVED"
    NEGOTIATING = "NEGOTIATING"
    VERBAL_ACCEPT = "VERBAL_ACCEPT"

    # Closed / parked
    CLOSED_WON = "CLOSED_WON"
    CLOSED_LOST = "CLOSED_LOST"
    HUMAN_REVIEW = "HUMAN_REVIEW"
    FUNDED = "FUNDED"
    STALE = "STALE"
    DEAD = "DEAD"
    ARCHIVED = "ARCHIVED"


class AgentVariant(str, Enum):
    """Which reasoning agent owns a conversation state."""

    QUALIFIER = "qualifier"
    VETTER = "vetter"
    NEGOTIATOR = "negotiator"
    LOCKED = "locked"


class MessageDirection(str, Enum):
    """Whether a message was received from or sent to the lead."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageStatus(str, Enum):
    """Delivery lifecycle of a message."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DELIVERED = "delivered"


class LockOutcome(str, Enum):
    """Result of a conversation lease acquisition attempt."""

    ACQUIRED = "acquired"
    RECOVERED = "recovered"  # stale lease force-reclaimed
    BUSY = "busy"

    @property
    def acquired(self) -> bool:
        return self is not LockOutcome.BUSY


class DispatchAction(str, Enum):
    """Caller-visible outcome of a dispatch."""

    SENT_MESSAGE = "sent_message"
    STATUS_UPDATE_ONLY = "status_update_only"
    SKIPPED = "skipped"
