"""Dispatch Orchestrator — one trigger on one conversation, end to end.

Flow:
1. load the conversation (ConversationNotFound)
2. take the conversation lease; BUSY is a normal skip
3. use the direct message verbatim, or route to the owning agent and
   execute its tool calls
4. deliver the reply unless ``stop_outreach`` won
5. pass any suggested ``next_state`` through the transition guard, unless
   the reply was rejected or failed to send
6. release the lease, always

Routing and reasoning failures propagate to the caller. Delivery failures
are recorded on the message and reported in the result.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from mca_platform.agents.base import ReasoningAgentClient
from mca_platform.agents.contracts import ToolExecutionOutcome
from mca_platform.domain.enums import DispatchAction
from mca_platform.domain.errors import InvalidAddress
from mca_platform.services.agent_router import AgentRouter
from mca_platform.services.conversation_lock import ConversationLock
from mca_platform.services.outbound_delivery import OutboundDelivery
from mca_platform.services.tool_executor import ToolCallExecutor
from mca_platform.services.transition_guard import StateTransitionGuard, TransitionDecision

logger = logging.getLogger(__name__)

DIRECT_SENDER = "drip"


@dataclass
class DispatchResult:
    """Caller-visible outcome of ``DispatchOrchestrator.dispatch``."""
    action: DispatchAction
    reason: Optional[str] = None
    agent: Optional[str] = None
    reply: Optional[str] = None
    message_id: Optional[str] = None
    delivery_status: Optional[str] = None
    transition: Optional[dict] = None
    tool_effects: list[str] = field(default_factory=list)
    lock: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.action is DispatchAction.SKIPPED

    @property
    def success(self) -> bool:
        return not self.skipped

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "skipped": self.skipped,
            "action": self.action.value,
            "reason": self.reason,
            "agent": self.agent,
            "reply": self.reply,
            "message_id": self.message_id,
            "delivery_status": self.delivery_status,
            "transition": self.transition,
            "tool_effects": self.tool_effects,
            "lock": self.lock,
        }


class DispatchOrchestrator:
    """Serializes and drives agent dispatches for lead conversations."""

    def __init__(
        self,
        db: AsyncSession,
        router: Optional[AgentRouter] = None,
        executor: Optional[ToolCallExecutor] = None,
        guard: Optional[StateTransitionGuard] = None,
        delivery: Optional[OutboundDelivery] = None,
        lock: Optional[ConversationLock] = None,
        client: Optional[ReasoningAgentClient] = None,
    ):
        self.db = db
        self.router = router or AgentRouter(db, client=client)
        self.executor = executor or ToolCallExecutor(db)
        self.guard = guard or StateTransitionGuard(db)
        self.delivery = delivery or OutboundDelivery(db)
        self.lock = lock or ConversationLock(db)

    async def dispatch(
        self,
        conversation_id: str,
        instruction: Optional[str] = None,
        direct_message: Optional[str] = None,
        suggested_next_state: Optional[str] = None,
        is_nudge: bool = False,
    ) -> DispatchResult:
        """Process one trigger for ``conversation_id``.

        Raises:
            ConversationNotFound: unknown conversation id.
            NoAgentForState: the conversation state has no routing entry.
            ReasoningFailure: the reasoning call failed.
        """
        conversation = await self.router.load_conversation(conversation_id)
        label = conversation.label

        lock_outcome = await self.lock.try_acquire(conversation_id)
        if not lock_outcome.acquired:
            logger.info("[%s] Busy — another dispatch holds the lock", label)
            return DispatchResult(action=DispatchAction.SKIPPED, reason="busy", lock=lock_outcome.value)

        try:
            result = await self._dispatch_locked(
                conversation_id, label, instruction, direct_message, suggested_next_state, is_nudge,
            )
            result.lock = lock_outcome.value
            return result
        finally:
            await self.lock.release(conversation_id)

    async def _dispatch_locked(
        self,
        conversation_id: str,
        label: str,
        instruction: Optional[str],
        direct_message: Optional[str],
        suggested_next_state: Optional[str],
        is_nudge: bool,
    ) -> DispatchResult:
        tool_outcome = ToolExecutionOutcome()

        if direct_message:
            agent = DIRECT_SENDER
            reply: Optional[str] = direct_message
            logger.info("[%s] Direct message: %.60s", label, direct_message)
        else:
            agent_result = await self.router.route(conversation_id, instruction)
            agent = agent_result.agent
            reply = agent_result.content if agent_result.should_reply else None
            if agent_result.tool_calls:
                conversation = await self.router.load_conversation(conversation_id)
                tool_outcome = await self.executor.execute(conversation, agent_result.tool_calls, actor=agent)

        if tool_outcome.stopped and reply:
            logger.info("[%s] stop_outreach — suppressing drafted reply", label)
            reply = None

        result = DispatchResult(
            action=DispatchAction.STATUS_UPDATE_ONLY,
            agent=agent,
            tool_effects=list(tool_outcome.applied),
        )

        undelivered = False
        if reply:
            conversation = await self.router.load_conversation(conversation_id)
            try:
                delivery = await self.delivery.deliver(
                    conversation, reply, sent_by=agent, is_nudge=is_nudge,
                )
            except InvalidAddress as exc:
                logger.warning("[%s] Not sending — invalid lead phone %r", label, exc.address)
                result.reason = "invalid_address"
                undelivered = True
            else:
                result.action = DispatchAction.SENT_MESSAGE
                result.reply = reply
                result.message_id = delivery.message_id
                result.delivery_status = delivery.status
                if not delivery.sent:
                    result.reason = delivery.error
                    undelivered = True
        elif tool_outcome.stopped:
            result.reason = "stop_outreach"
        else:
            result.reason = "no_reply" if agent not in ("locked", "cold_drip", "disabled") else agent

        if suggested_next_state and undelivered:
            # The drip sequence only advances once the provider accepted the text
            logger.info("[%s] Reply not delivered — leaving next_state %s unapplied", label, suggested_next_state)
            result.transition = TransitionDecision(
                applied=False, new_state=suggested_next_state, reason="not delivered",
            ).to_dict()
        elif suggested_next_state:
            decision = await self.guard.apply(conversation_id, suggested_next_state, changed_by="dispatcher")
            result.transition = decision.to_dict()

        return result
