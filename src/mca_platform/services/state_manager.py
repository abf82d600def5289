"""State Manager — the single write path for conversation state changes.

Every committed change writes exactly one ``StateTransition`` row in the
same transaction as the conditional state update. Nothing is written when
the state is unchanged. Committed changes are published to the dashboard
as ``state_changed``.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mca_platform.domain.enums import ConversationState
from mca_platform.domain.errors import ConversationNotFound
from mca_platform.domain.models import Conversation, StateTransition, utcnow
from mca_platform.services.notification_service import publish

logger = logging.getLogger(__name__)


@dataclass
class StateChange:
    """A committed transition."""
    conversation_id: str
    old_state: Optional[str]
    new_state: str
    changed_by: str


class StateManager:
    """Applies state transitions with a history row, atomically."""

    def __init__(self, db: AsyncSession, notifier: Optional[Callable[[str, dict], Awaitable[None]]] = None):
        self.db = db
        self.notifier = notifier or publish

    async def current_state(self, conversation_id: str) -> Optional[str]:
        """Read the stored state, bypassing any cached ORM instance."""
        result = await self.db.execute(
            select(Conversation.state).where(Conversation.id == conversation_id)
        )
        row = result.first()
        if row is None:
            raise ConversationNotFound(conversation_id)
        return row[0]

    async def update_state(
        self,
        conversation_id: str,
        new_state: ConversationState | str,
        changed_by: str,
        reason: Optional[str] = None,
        expected_state: Optional[str] = None,
    ) -> Optional[StateChange]:
        """Move a conversation to ``new_state``.

        The update is conditional on the state read (or ``expected_state``)
        so a concurrent writer — a human operator, another dispatch — is
        never blindly overwritten.

        Returns:
            The committed ``StateChange``, or None when the state was already
            ``new_state`` or changed underneath us.
        """
        target = new_state.value if isinstance(new_state, ConversationState) else new_state
        old_state = expected_state if expected_state is not None else await self.current_state(conversation_id)

        if old_state == target:
            logger.info("State unchanged for %s: %s (%s)", conversation_id[:8], old_state, changed_by)
            return None

        try:
            result = await self.db.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id, Conversation.state == old_state)
                .values(state=target, last_activity=utcnow())
            )
            if result.rowcount == 0:
                await self.db.commit()
                logger.warning(
                    "State of %s moved away from %s before %s could apply %s — not applied",
                    conversation_id[:8], old_state, changed_by, target,
                )
                return None

            self.db.add(
                StateTransition(
                    conversation_id=conversation_id,
                    old_state=old_state,
                    new_state=target,
                    changed_by=changed_by,
                    reason=reason,
                )
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "State %s: %s → %s (%s)%s",
            conversation_id[:8], old_state, target, changed_by,
            f" | {reason}" if reason else "",
        )
        change = StateChange(
            conversation_id=conversation_id,
            old_state=old_state,
            new_state=target,
            changed_by=changed_by,
        )
        await self.notifier("state_changed", asdict(change))
        return change
