"""Tool-Call Executor — applies the side effects of agent tool calls.

Rules:
- ``stop_outreach`` anywhere in a response wins: the lead goes DEAD, no
  other tool call in that response is applied and no reply is sent.
- Otherwise every tool call runs, in the order returned.
- ``update_lead_status`` writes through the State Manager directly; it is
  an in-context agent decision and is not subject to the transition guard.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from mca_platform.agents.contracts import ToolExecutionOutcome, ToolInvocation
from mca_platform.agents.tools import AGENT_SETTABLE_STATES, STOP_OUTREACH, UPDATE_LEAD_STATUS
from mca_platform.domain.enums import ConversationState
from mca_platform.domain.models import Conversation
from mca_platform.services.state_manager import StateManager

logger = logging.getLogger(__name__)

_SETTABLE_VALUES = {s.value for s in AGENT_SETTABLE_STATES}


class ToolCallExecutor:
    """Interprets structured reasoning output."""

    def __init__(self, db: AsyncSession, state_manager: Optional[StateManager] = None):
        self.db = db
        self.state_manager = state_manager or StateManager(db)

    async def execute(
        self,
        conversation: Conversation,
        tool_calls: list[ToolInvocation],
        actor: str,
    ) -> ToolExecutionOutcome:
        outcome = ToolExecutionOutcome()
        if not tool_calls:
            return outcome

        if any(call.name == STOP_OUTREACH for call in tool_calls):
            skipped = [call.name for call in tool_calls if call.name != STOP_OUTREACH]
            logger.info(
                "[%s] stop_outreach from %s — ignoring %d other tool call(s): %s",
                conversation.label, actor, len(skipped), skipped,
            )
            await self.state_manager.update_state(
                conversation.id, ConversationState.DEAD, changed_by=actor, reason=STOP_OUTREACH,
            )
            outcome.stopped = True
            outcome.applied.append(f"{STOP_OUTREACH} -> {ConversationState.DEAD.value}")
            outcome.final_state = ConversationState.DEAD.value
            return outcome

        for call in tool_calls:
            if call.name == UPDATE_LEAD_STATUS:
                await self._update_lead_status(conversation, call, actor, outcome)
            else:
                logger.warning("[%s] Unknown tool %r from %s — ignored", conversation.label, call.name, actor)

        return outcome

    async def _update_lead_status(
        self,
        conversation: Conversation,
        call: ToolInvocation,
        actor: str,
        outcome: ToolExecutionOutcome,
    ) -> None:
        status = str((call.arguments or {}).get("status", "")).upper()
        if status not in _SETTABLE_VALUES:
            logger.warning(
                "[%s] update_lead_status with invalid status %r from %s — ignored",
                conversation.label, status, actor,
            )
            return

        logger.info("[%s] %s moving lead -> %s", conversation.label, actor, status)
        await self.state_manager.update_state(
            conversation.id, status, changed_by=actor, reason=UPDATE_LEAD_STATUS,
        )
        outcome.applied.append(f"{UPDATE_LEAD_STATUS} -> {status}")
        outcome.final_state = status
