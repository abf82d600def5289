"""Outbound delivery pipeline — record, send, then settle.

Order is fixed:
1. validate the destination (InvalidAddress, nothing persisted)
2. persist the message as ``pending`` and commit
3. call the gateway
4. settle the message to ``sent`` / ``failed`` and refresh ``last_activity``;
   if that commit fails the row is settled again in a fresh transaction
5. publish ``new_message`` to dashboard observers

A gateway failure is recorded on the message and returned, never raised:
the caller's conversation state stays intact.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mca_platform.domain.enums import MessageDirection, MessageStatus
from mca_platform.domain.errors import DeliveryFailure
from mca_platform.domain.models import Conversation, Message, utcnow
from mca_platform.services.notification_service import publish
from mca_platform.services.sms_service import SMSService, normalize_phone

logger = logging.getLogger(__name__)

Notifier = Callable[[str, dict], Awaitable[None]]


@dataclass
class DeliveryOutcome:
    """Settled result of one outbound message."""
    message_id: str
    status: str
    provider_ref: Optional[str] = None
    error: Optional[str] = None

    @property
    def sent(self) -> bool:
        return self.status == MessageStatus.SENT.value


class OutboundDelivery:
    """Drives one outbound message through the gateway with status tracking."""

    def __init__(
        self,
        db: AsyncSession,
        sms_service: Optional[SMSService] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.db = db
        self.sms_service = sms_service or SMSService()
        self.notifier = notifier or publish

    async def deliver(
        self,
        conversation: Conversation,
        content: str,
        sent_by: str,
        media_url: Optional[str] = None,
        is_nudge: bool = False,
    ) -> DeliveryOutcome:
        """Send ``content`` to the lead.

        Raises:
            InvalidAddress: the lead phone is malformed; nothing is persisted.
        """
        label = conversation.label
        conversation_id = conversation.id
        destination = normalize_phone(conversation.lead_phone)

        message = Message(
            conversation_id=conversation_id,
            direction=MessageDirection.OUTBOUND.value,
            content=content,
            media_url=media_url,
            message_type="mms" if media_url else "sms",
            sent_by=sent_by,
            status=MessageStatus.PENDING.value,
            timestamp=utcnow(),
        )
        self.db.add(message)
        await self.db.commit()
        message_id = message.id

        error = None
        provider_ref = None
        try:
            receipt = await self.sms_service.send(destination, content, media_url)
            status = MessageStatus.SENT.value
            provider_ref = receipt.provider_ref or None
            logger.info("[%s] Sent (%s): %.50s", label, sent_by, content)
        except DeliveryFailure as exc:
            status = MessageStatus.FAILED.value
            error = exc.reason
            logger.error("[%s] Delivery failed: %s", label, exc.reason)
        except Exception as exc:
            status = MessageStatus.FAILED.value
            error = str(exc)
            logger.error("[%s] Delivery gateway error: %s", label, exc, exc_info=True)

        activity = {"last_activity": utcnow()}
        if is_nudge and status == MessageStatus.SENT.value:
            activity["nudge_count"] = func.coalesce(Conversation.nudge_count, 0) + 1

        message.status = status
        message.provider_ref = provider_ref
        try:
            await self._touch_conversation(conversation_id, activity)
            await self.db.commit()
        except SQLAlchemyError:
            # The provider already has the text; settle the row without the receipt
            logger.error(
                "[%s] Could not settle message %s (provider ref %s) — retrying without ref",
                label, message_id[:8], provider_ref, exc_info=True,
            )
            await self.db.rollback()
            await self.db.execute(
                update(Message)
                .where(Message.id == message_id)
                .values(status=status)
                .execution_options(synchronize_session=False)
            )
            await self._touch_conversation(conversation_id, activity)
            await self.db.commit()
            await self.db.refresh(message)

        await self.notifier(
            "new_message",
            {"conversation_id": conversation_id, "message": message.to_payload()},
        )

        return DeliveryOutcome(
            message_id=message_id,
            status=message.status,
            provider_ref=message.provider_ref,
            error=error,
        )

    async def _touch_conversation(self, conversation_id: str, values: dict) -> None:
        await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
