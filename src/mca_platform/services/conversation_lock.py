"""Conversation Lock — per-conversation lease on the shared store.

``processing_lock`` + ``last_activity`` form a lease. Acquisition is a
single conditional UPDATE, so two processes sharing the database cannot
both take a free lease. A lease older than the staleness threshold is
treated as abandoned by a crashed holder and force-reclaimed; that trades
a small double-send window for never deadlocking a conversation.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mca_platform.app.config import get_settings
from mca_platform.domain.enums import LockOutcome
from mca_platform.domain.errors import ConversationNotFound
from mca_platform.domain.models import Conversation, utcnow

logger = logging.getLogger(__name__)


class ConversationLock:
    """Lease-based mutual exclusion keyed by conversation id."""

    def __init__(self, db: AsyncSession, stale_after: Optional[timedelta] = None):
        self.db = db
        if stale_after is None:
            stale_after = timedelta(seconds=get_settings().lock_stale_seconds)
        self.stale_after = stale_after

    async def try_acquire(self, conversation_id: str) -> LockOutcome:
        """Take the lease if it is free or stale.

        Returns:
            ACQUIRED, RECOVERED (stale lease reclaimed) or BUSY.

        Raises:
            ConversationNotFound: unknown conversation id.
        """
        now = utcnow()

        free = await self.db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                or_(Conversation.processing_lock.is_(False), Conversation.processing_lock.is_(None)),
            )
            .values(processing_lock=True, last_activity=now)
            .execution_options(synchronize_session=False)
        )
        if free.rowcount == 1:
            await self.db.commit()
            logger.debug("Lock acquired for %s", conversation_id[:8])
            return LockOutcome.ACQUIRED

        stale_cutoff = now - self.stale_after
        stale = await self.db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.processing_lock.is_(True),
                or_(Conversation.last_activity.is_(None), Conversation.last_activity < stale_cutoff),
            )
            .values(processing_lock=True, last_activity=now)
            .execution_options(synchronize_session=False)
        )
        if stale.rowcount == 1:
            await self.db.commit()
            logger.warning(
                "Stale lock on %s (older than %ss) — force-reclaimed",
                conversation_id[:8], int(self.stale_after.total_seconds()),
            )
            return LockOutcome.RECOVERED

        await self.db.commit()

        exists = await self.db.execute(
            select(Conversation.id).where(Conversation.id == conversation_id)
        )
        if exists.first() is None:
            raise ConversationNotFound(conversation_id)

        logger.info("Lock busy for %s — skipping", conversation_id[:8])
        return LockOutcome.BUSY

    async def release(self, conversation_id: str) -> None:
        """Unconditionally clear the lease.

        Holders call this from ``finally`` blocks, often with the session
        still inside a failed transaction; that transaction is rolled back
        and the release retried once.
        """
        try:
            await self._clear(conversation_id)
        except SQLAlchemyError:
            logger.error("Lock release failed for %s — retrying after rollback", conversation_id[:8], exc_info=True)
            await self.db.rollback()
            await self._clear(conversation_id)
        logger.debug("Lock released for %s", conversation_id[:8])

    async def _clear(self, conversation_id: str) -> None:
        await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(processing_lock=False)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def is_held(self, conversation_id: str) -> bool:
        result = await self.db.execute(
            select(Conversation.processing_lock).where(Conversation.id == conversation_id)
        )
        row = result.first()
        return bool(row and row[0])
