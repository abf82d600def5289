"""Inbound SMS webhook — Twilio posts every lead reply here.

Handles:
- Duplicate deliveries (Twilio retries reuse ``MessageSid``)
- TCPA compliance (STOP keywords move the lead to DEAD, no reply)
- Inbound bookkeeping (message row, nudge reset, NEW/DRIP → ACTIVE)
- After-hours auto-reply via the dispatch worker

Returns empty TwiML immediately; the slow reasoning + delivery pipeline
runs in a background task so Twilio does not time out and retry.
"""

import logging
import re
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mca_platform.app.config import get_settings
from mca_platform.domain.enums import ConversationState, MessageDirection, MessageStatus
from mca_platform.domain.models import Conversation, Message, utcnow
from mca_platform.infra.database import get_db
from mca_platform.services.dispatch_worker import DispatchWorker, worker
from mca_platform.services.notification_service import publish
from mca_platform.services.sms_service import phone_suffix
from mca_platform.services.state_manager import StateManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/messages", tags=["messages"])

# TCPA keyword patterns
STOP_KEYWORDS = re.compile(
    r"^\s*(stop|stopall|unsubscribe|cancel|quit|end)\s*$", re.IGNORECASE
)

EMPTY_TWIML = "<Response></Response>"

# Leads in these states become ACTIVE when they reply
REACTIVATED_STATES = {ConversationState.NEW.value, ConversationState.DRIP.value}


def get_dispatch_worker() -> DispatchWorker:
    return worker


def twiml() -> Response:
    return Response(content=EMPTY_TWIML, media_type="text/xml")


def is_business_hours(now: Optional[datetime] = None) -> bool:
    """True while the drip dispatcher is awake and will pick up replies."""
    settings = get_settings()
    now = now or datetime.now(ZoneInfo(settings.followup_timezone))
    return settings.business_hours_start <= now.hour < settings.business_hours_end


async def find_conversation_by_phone(db: AsyncSession, raw_phone: str) -> Optional[Conversation]:
    """Most recently active conversation whose lead phone matches ``raw_phone``."""
    suffix = phone_suffix(raw_phone)
    if len(suffix) < 4:
        return None

    result = await db.execute(
        select(Conversation)
        .where(Conversation.lead_phone.like(f"%{suffix[-4:]}"))
        .order_by(Conversation.last_activity.desc())
    )
    for conversation in result.scalars().all():
        if phone_suffix(conversation.lead_phone).endswith(suffix):
            return conversation
    return None


@router.post("/webhook/receive")
async def receive_sms(
    request: Request,
    db: AsyncSession = Depends(get_db),
    dispatch_worker: DispatchWorker = Depends(get_dispatch_worker),
):
    """Record an inbound SMS and hand it to the agents when needed."""
    form = await request.form()
    from_number = str(form.get("From", ""))
    body = str(form.get("Body", "") or "")
    message_sid = str(form.get("MessageSid", "") or "") or None

    media_urls = []
    try:
        num_media = int(form.get("NumMedia", 0) or 0)
    except ValueError:
        num_media = 0
    for i in range(num_media):
        url = form.get(f"MediaUrl{i}")
        if url:
            media_urls.append(str(url))

    logger.info("Webhook inbound from ...%s (media=%d)", from_number[-4:], num_media)

    # ── 1. Dedup on MessageSid ────────────────────────────────────────
    if message_sid:
        existing = await db.execute(select(Message.id).where(Message.provider_ref == message_sid))
        if existing.first() is not None:
            logger.info("Duplicate webhook ignored: %s", message_sid)
            return twiml()

    # ── 2. Match the conversation ─────────────────────────────────────
    conversation = await find_conversation_by_phone(db, from_number)
    if conversation is None:
        logger.warning("No conversation found for ...%s", from_number[-4:])
        return twiml()

    label = conversation.label
    conversation_id = conversation.id
    current_state = conversation.state
    logger.info("[%s] Inbound: %.50s", label, body)

    # ── 3. Record the inbound message ─────────────────────────────────
    message = Message(
        conversation_id=conversation_id,
        direction=MessageDirection.INBOUND.value,
        content=body,
        media_url=media_urls[0] if media_urls else None,
        message_type="mms" if media_urls else "sms",
        sent_by="lead",
        status=MessageStatus.DELIVERED.value,
        provider_ref=message_sid,
        timestamp=utcnow(),
    )
    db.add(message)
    try:
        await db.commit()
    except IntegrityError:
        # Concurrent retry of the same MessageSid won the insert
        await db.rollback()
        logger.info("Duplicate webhook ignored: %s", message_sid)
        return twiml()
    payload = message.to_payload()

    # Reset nudge count and update activity on any inbound message
    await db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(last_activity=utcnow(), nudge_count=0)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    state_manager = StateManager(db)

    # ── 4. TCPA opt-out ───────────────────────────────────────────────
    if STOP_KEYWORDS.match(body):
        logger.info("[%s] STOP keyword — marking DEAD", label)
        await state_manager.update_state(
            conversation_id, ConversationState.DEAD, changed_by="webhook", reason="opt-out keyword",
        )
        await publish("new_message", {"conversation_id": conversation_id, "message": payload})
        return twiml()

    # ── 5. Reactivate cold leads ──────────────────────────────────────
    if current_state in REACTIVATED_STATES:
        await state_manager.update_state(
            conversation_id, ConversationState.ACTIVE, changed_by="webhook", reason="lead replied",
            expected_state=current_state,
        )

    await publish("new_message", {"conversation_id": conversation_id, "message": payload})

    # ── 6. After hours the dispatcher is asleep, so reply directly ────
    if is_business_hours():
        logger.info("[%s] Inbound received — dispatcher will handle", label)
    else:
        logger.info("[%s] After-hours inbound — agent responding directly", label)
        dispatch_worker.submit(conversation_id)

    return twiml()
