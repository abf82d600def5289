"""Agent Router — picks the agent that owns a conversation's state.

The routing table is explicit and total over ``ConversationState``;
``validate_routing_table`` runs at startup so a missing entry fails the
boot, not a live lead. A stored state string outside the enum raises
``NoAgentForState`` instead of falling back to some default agent.
"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mca_platform.agents.base import ReasoningAgentClient
from mca_platform.agents.contracts import AgentResult
from mca_platform.agents.lead_agents import AGENT_CLASSES
from mca_platform.app.config import get_settings
from mca_platform.domain.enums import AgentVariant, ConversationState
from mca_platform.domain.errors import ConversationNotFound, NoAgentForState
from mca_platform.domain.models import Conversation, LenderSubmission, Message
from mca_platform.services.state_manager import StateManager

logger = logging.getLogger(__name__)

S = ConversationState
V = AgentVariant

ROUTING_TABLE: dict[ConversationState, AgentVariant] = {
    # Qualifier
    S.NEW: V.QUALIFIER,
    S.ACTIVE: V.QUALIFIER,
    S.REPLIED: V.QUALIFIER,
    S.INTERESTED: V.QUALIFIER,
    S.QUALIFIED: V.QUALIFIER,

    # Waiting on FCS / strategy (dispatcher handles)
    S.PRE_VETTED: V.LOCKED,

    # Cold drip (dispatcher handles)
    S.DRIP: V.LOCKED,
    S.SENT_HOOK: V.LOCKED,
    S.SENT_FU_1: V.LOCKED,
    S.SENT_FU_2: V.LOCKED,
    S.SENT_FU_3: V.LOCKED,
    S.SENT_FU_4: V.LOCKED,

    # Vetter
    S.FCS_RUNNING: V.VETTER,
    S.VETTING: V.VETTER,
    S.HAIL_MARY: V.VETTER,
    S.SUBMITTED: V.VETTER,

    # Negotiator
    S.OFFER_RECEIVED: V.NEGOTIATOR,
    S.NEGOTIATING: V.NEGOTIATOR,

    # Closed / parked
    S.VERBAL_ACCEPT: V.LOCKED,
    S.CLOSED_WON: V.LOCKED,
    S.CLOSED_LOST: V.LOCKED,
    S.HUMAN_REVIEW: V.LOCKED,
    S.FUNDED: V.LOCKED,
    S.STALE: V.LOCKED,
    S.DEAD: V.LOCKED,
    S.ARCHIVED: V.LOCKED,
}

COLD_DRIP_STATES = frozenset({S.DRIP, S.SENT_HOOK, S.SENT_FU_1, S.SENT_FU_2, S.SENT_FU_3, S.SENT_FU_4})

# Locked states a manual instruction can never override
TERMINAL_STATES = frozenset({S.DEAD, S.ARCHIVED, S.FUNDED, S.STALE, S.CLOSED_WON, S.CLOSED_LOST})

# States where an offer on file is already reflected
OFFER_AWARE_STATES = frozenset({S.OFFER_RECEIVED, S.NEGOTIATING, S.VERBAL_ACCEPT, S.CLOSED_WON, S.CLOSED_LOST})

# Never auto-corrected into the offer flow
NO_CORRECTION_STATES = OFFER_AWARE_STATES | TERMINAL_STATES | {S.HUMAN_REVIEW}

# Instructions shorter than this are dispatcher noise, not a manual command
MANUAL_COMMAND_MIN_LENGTH = 6


def validate_routing_table(table: dict[ConversationState, AgentVariant] = ROUTING_TABLE) -> None:
    """Raise NoAgentForState if any state lacks a routing entry."""
    missing = [s.value for s in ConversationState if s not in table]
    if missing:
        raise NoAgentForState(", ".join(missing))


def variant_for_state(state: Optional[str]) -> AgentVariant:
    try:
        return ROUTING_TABLE[ConversationState(state)]
    except (ValueError, KeyError):
        raise NoAgentForState(state) from None


class AgentRouter:
    """Routes a conversation to the Qualifier, Vetter or Negotiator."""

    def __init__(
        self,
        db: AsyncSession,
        client: Optional[ReasoningAgentClient] = None,
        state_manager: Optional[StateManager] = None,
        history_window: Optional[int] = None,
    ):
        self.db = db
        self.client = client
        self.state_manager = state_manager or StateManager(db)
        self.history_window = history_window or get_settings().history_window

    async def load_conversation(self, conversation_id: str) -> Conversation:
        result = await self.db.execute(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .execution_options(populate_existing=True)
        )
        conversation = result.scalar_one_or_none()
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation

    async def load_history(self, conversation_id: str, limit: Optional[int] = None) -> list[Message]:
        """Most recent ``limit`` messages, returned oldest first."""
        result = await self.db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.timestamp.desc())
            .limit(limit or self.history_window)
        )
        return list(reversed(result.scalars().all()))

    async def route(self, conversation_id: str, instruction: Optional[str] = None) -> AgentResult:
        """Run the owning agent for this conversation.

        Raises:
            ConversationNotFound: unknown conversation id.
            NoAgentForState: the stored state has no routing entry.
            ReasoningFailure: the reasoning call failed.
        """
        conversation = await self.load_conversation(conversation_id)
        label = conversation.label

        if conversation.ai_enabled is False:
            logger.info("[%s] AI disabled", label)
            return AgentResult(agent="disabled")

        variant = variant_for_state(conversation.state)
        state = ConversationState(conversation.state)
        logger.info("[%s] %s → %s", label, state.value, variant.value)

        if await self._correct_offer_state(conversation, state):
            variant = V.NEGOTIATOR
            state = S.OFFER_RECEIVED

        if variant is V.LOCKED:
            is_manual = bool(instruction and len(instruction.strip()) >= MANUAL_COMMAND_MIN_LENGTH)
            if state in TERMINAL_STATES or not is_manual:
                agent = "cold_drip" if state in COLD_DRIP_STATES else "locked"
                logger.info("[%s] %s is locked — no response", label, state.value)
                return AgentResult(agent=agent)
            variant = V.QUALIFIER if state in COLD_DRIP_STATES else V.VETTER
            logger.info("[%s] Manual instruction overrides lock on %s → %s", label, state.value, variant.value)

        history = await self.load_history(conversation.id)
        agent = AGENT_CLASSES[variant](self.db, self.client)
        return await agent.respond(conversation, history, instruction)

    async def _correct_offer_state(self, conversation: Conversation, state: ConversationState) -> bool:
        """Move a lead with an offer on file into OFFER_RECEIVED."""
        if state in NO_CORRECTION_STATES:
            return False
        if not (conversation.has_offer or state is S.SUBMITTED):
            return False

        offer = await self.db.execute(
            select(LenderSubmission.id)
            .where(
                LenderSubmission.conversation_id == conversation.id,
                LenderSubmission.status == "OFFER",
            )
            .limit(1)
        )
        if offer.first() is None:
            return False

        logger.info("[%s] Offer on file but state was %s — correcting", conversation.label, state.value)
        change = await self.state_manager.update_state(
            conversation.id,
            S.OFFER_RECEIVED,
            changed_by="router",
            reason="offer on file",
            expected_state=state.value,
        )
        if change is None:
            return False

        await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation.id)
            .values(has_offer=True)
        )
        await self.db.commit()
        return True
