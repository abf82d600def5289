"""Batch Follow-Up Runner — morning warm-up texts for leads with an offer.

Candidates:
- a funding offer (``LenderSubmission.status == "OFFER"``) with a lender
  response inside the offer window
- not DEAD / ARCHIVED / FUNDED / STALE
- a phone number on file
- no ``morning_agent`` message inside the dedup window

Per candidate the reasoning service either writes a short text or answers
with the NO_SEND sentinel. Sends are paced by a fixed minimum interval;
one candidate failing never stops the batch.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mca_platform.agents.base import ReasoningAgentClient
from mca_platform.agents.contracts import Turn
from mca_platform.agents.prompts.follow_up import (
    MORNING_FOLLOW_UP_PROMPT,
    MORNING_FOLLOW_UP_REQUEST,
    NO_SEND_SENTINEL,
)
from mca_platform.app.config import get_settings
from mca_platform.domain.enums import ConversationState, MessageDirection
from mca_platform.domain.errors import DispatchError
from mca_platform.domain.models import Conversation, LenderSubmission, Message, utcnow
from mca_platform.services.conversation_lock import ConversationLock
from mca_platform.services.outbound_delivery import OutboundDelivery

logger = logging.getLogger(__name__)

RUNNER_ACTOR = "morning_agent"

EXCLUDED_STATES = (
    ConversationState.DEAD.value,
    ConversationState.ARCHIVED.value,
    ConversationState.FUNDED.value,
    ConversationState.STALE.value,
)


@dataclass
class FollowUpCandidate:
    conversation_id: str
    label: str
    business_name: Optional[str]
    lender_name: Optional[str]
    offer_amount: Optional[float]

    @property
    def offer_text(self) -> str:
        amount = f"${self.offer_amount:,.0f}" if self.offer_amount else "amount pending"
        return f"{amount} from {self.lender_name or 'a lender'}"


class MorningFollowUpRunner:
    """Runs one pass of morning follow-ups. See module docstring."""

    def __init__(
        self,
        db: AsyncSession,
        client: Optional[ReasoningAgentClient] = None,
        delivery: Optional[OutboundDelivery] = None,
        lock: Optional[ConversationLock] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = get_settings()
        self.db = db
        self.client = client or ReasoningAgentClient(agent_name=RUNNER_ACTOR)
        self.delivery = delivery or OutboundDelivery(db)
        self.lock = lock or ConversationLock(db)
        self.sleep = sleep
        self.send_interval = settings.followup_send_interval_seconds
        self.history_window = settings.followup_history_window
        self.dedup_window = timedelta(hours=settings.followup_dedup_hours)
        self.offer_window = timedelta(hours=settings.followup_offer_window_hours)
        self.batch_limit = settings.followup_batch_limit

    async def find_candidates(self) -> list[FollowUpCandidate]:
        now = utcnow()

        latest_offer = (
            select(
                LenderSubmission.conversation_id.label("conversation_id"),
                func.max(LenderSubmission.last_response_at).label("last_offer_at"),
            )
            .where(
                LenderSubmission.status == "OFFER",
                LenderSubmission.last_response_at > now - self.offer_window,
            )
            .group_by(LenderSubmission.conversation_id)
            .subquery()
        )

        already_sent = exists().where(
            Message.conversation_id == Conversation.id,
            Message.sent_by == RUNNER_ACTOR,
            Message.timestamp > now - self.dedup_window,
        )

        result = await self.db.execute(
            select(Conversation, LenderSubmission)
            .join(latest_offer, latest_offer.c.conversation_id == Conversation.id)
            .join(
                LenderSubmission,
                (LenderSubmission.conversation_id == Conversation.id)
                & (LenderSubmission.status == "OFFER")
                & (LenderSubmission.last_response_at == latest_offer.c.last_offer_at),
            )
            .where(
                Conversation.state.not_in(EXCLUDED_STATES),
                Conversation.lead_phone.is_not(None),
                Conversation.lead_phone != "",
                ~already_sent,
            )
            .order_by(latest_offer.c.last_offer_at.desc())
            .limit(self.batch_limit)
        )

        candidates: list[FollowUpCandidate] = []
        seen: set[str] = set()
        for conversation, offer in result.all():
            # Two offers with the same response time would duplicate the row
            if conversation.id in seen:
                continue
            seen.add(conversation.id)
            candidates.append(
                FollowUpCandidate(
                    conversation_id=conversation.id,
                    label=conversation.label,
                    business_name=conversation.business_name,
                    lender_name=offer.lender_name,
                    offer_amount=offer.offer_amount,
                )
            )
        return candidates

    async def compose(self, candidate: FollowUpCandidate) -> Optional[str]:
        """Ask the reasoning service for a text. None means NO_SEND."""
        result = await self.db.execute(
            select(Message)
            .where(Message.conversation_id == candidate.conversation_id)
            .order_by(Message.timestamp.desc())
            .limit(self.history_window)
        )
        history = list(reversed(result.scalars().all()))
        transcript = "\n".join(
            f"{'You' if m.direction == MessageDirection.OUTBOUND.value else 'Them'}: {m.content}"
            for m in history
        ) or "(no messages yet)"

        response = await self.client.converse(
            system_instruction=MORNING_FOLLOW_UP_PROMPT.format(agent_name=get_settings().agent_display_name),
            history=[
                Turn(
                    role="user",
                    content=MORNING_FOLLOW_UP_REQUEST.format(
                        business_name=candidate.business_name or "Unknown",
                        offer=candidate.offer_text,
                        transcript=transcript,
                        sentinel=NO_SEND_SENTINEL,
                    ),
                )
            ],
            max_output_tokens=60,
        )

        text = (response.text or "").strip()
        if not text or NO_SEND_SENTINEL in text.upper():
            return None
        return text

    async def run(self) -> dict:
        """Returns counts: ``sent``, ``skipped`` (failures) and ``noSend``."""
        logger.info("[Morning Follow-Up] Starting")
        counts = {"sent": 0, "skipped": 0, "noSend": 0}

        candidates = await self.find_candidates()
        if not candidates:
            logger.info("[Morning Follow-Up] No leads need follow-up today.")
            return counts

        logger.info("[Morning Follow-Up] Found %d leads to check.", len(candidates))

        attempted_send = False
        for candidate in candidates:
            label = candidate.label
            conversation_id = candidate.conversation_id
            try:
                message = await self.compose(candidate)
                if message is None:
                    logger.info("[%s] Skipping — agent decided not to send", label)
                    counts["noSend"] += 1
                    continue

                if attempted_send:
                    await self.sleep(self.send_interval)
                attempted_send = True

                lock_outcome = await self.lock.try_acquire(conversation_id)
                if not lock_outcome.acquired:
                    logger.info("[%s] Busy — skipping morning follow-up", label)
                    counts["skipped"] += 1
                    continue

                try:
                    conversation = await self.db.get(Conversation, conversation_id, populate_existing=True)
                    outcome = await self.delivery.deliver(conversation, message, sent_by=RUNNER_ACTOR)
                finally:
                    await self.lock.release(conversation_id)

                if outcome.sent:
                    counts["sent"] += 1
                else:
                    counts["skipped"] += 1
            except DispatchError as exc:
                logger.error("[%s] Morning follow-up failed: %s", label, exc)
                counts["skipped"] += 1
            except Exception:
                logger.error("[%s] Morning follow-up failed", label, exc_info=True)
                await self.db.rollback()
                counts["skipped"] += 1

        logger.info(
            "[Morning Follow-Up] Complete: %d sent, %d AI skipped, %d errors",
            counts["sent"], counts["noSend"], counts["skipped"],
        )
        return counts
