"""State Transition Guard — protects terminal and human-owned states
from dispatcher/drip-suggested transitions.

Tool-call transitions chosen by an agent in context go straight through
the State Manager; only externally suggested ``next_state`` hints pass
through this guard.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from mca_platform.domain.enums import ConversationState
from mca_platform.services.state_manager import StateManager

logger = logging.getLogger(__name__)

S = ConversationState

PROTECTED_STATES: frozenset[ConversationState] = frozenset({
    S.DEAD,
    S.FUNDED,
    S.SUBMITTED,
    S.HUMAN_REVIEW,
    S.ARCHIVED,
})

_PROTECTED_VALUES = {s.value for s in PROTECTED_STATES}


@dataclass
class TransitionDecision:
    """Applied or Rejected(reason)."""
    applied: bool
    old_state: Optional[str] = None
    new_state: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "applied": self.applied,
            "old_state": self.old_state,
            "new_state": self.new_state,
            "reason": self.reason,
        }


def is_protected(state: Optional[str]) -> bool:
    return state in _PROTECTED_VALUES


class StateTransitionGuard:
    """Authorizes or rejects a suggested state change."""

    def __init__(self, db: AsyncSession, state_manager: Optional[StateManager] = None):
        self.db = db
        self.state_manager = state_manager or StateManager(db)

    async def apply(
        self,
        conversation_id: str,
        proposed_state: str,
        changed_by: str = "dispatcher",
    ) -> TransitionDecision:
        """Apply ``proposed_state`` unless the current state is protected.

        Raises:
            ConversationNotFound: unknown conversation id.
        """
        current = await self.state_manager.current_state(conversation_id)

        try:
            target = ConversationState(proposed_state).value
        except ValueError:
            logger.warning(
                "Rejected unknown state %r for %s (%s)", proposed_state, conversation_id[:8], changed_by
            )
            return TransitionDecision(
                applied=False,
                old_state=current,
                new_state=proposed_state,
                reason=f"unknown state {proposed_state!r}",
            )

        if is_protected(current):
            logger.warning(
                "State %s of %s is protected — ignoring next_state %s (%s)",
                current, conversation_id[:8], target, changed_by,
            )
            return TransitionDecision(
                applied=False,
                old_state=current,
                new_state=target,
                reason=f"state {current} is protected",
            )

        if current == target:
            return TransitionDecision(applied=True, old_state=current, new_state=target, reason="unchanged")

        change = await self.state_manager.update_state(
            conversation_id,
            target,
            changed_by=changed_by,
            reason="suggested next_state",
            expected_state=current,
        )
        if change is None:
            return TransitionDecision(
                applied=False,
                old_state=current,
                new_state=target,
                reason="state changed concurrently",
            )
        return TransitionDecision(applied=True, old_state=current, new_state=target)
