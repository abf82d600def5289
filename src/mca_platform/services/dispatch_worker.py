"""Dispatch Worker — runs dispatches off the request path.

Inbound webhooks must be acknowledged before the gateway times out, so
the slow reasoning + delivery pipeline runs as a background task with its
own database session (the request session is closed after the 200).
"""

import asyncio
import logging
from typing import Callable, Optional

from mca_platform.infra.database import async_session
from mca_platform.services.dispatch_orchestrator import DispatchOrchestrator, DispatchResult

logger = logging.getLogger(__name__)


class DispatchWorker:
    """Fire-and-forget dispatch scheduling with retained task references."""

    def __init__(
        self,
        session_factory: Callable = async_session,
        orchestrator_factory: Callable[..., DispatchOrchestrator] = DispatchOrchestrator,
    ):
        self.session_factory = session_factory
        self.orchestrator_factory = orchestrator_factory
        # Hold references to background tasks so they don't get garbage collected
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        conversation_id: str,
        instruction: Optional[str] = None,
        direct_message: Optional[str] = None,
        suggested_next_state: Optional[str] = None,
        is_nudge: bool = False,
    ) -> asyncio.Task:
        """Schedule a dispatch and return immediately."""
        task = asyncio.create_task(
            self._run(conversation_id, instruction, direct_message, suggested_next_state, is_nudge)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every outstanding dispatch to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(
        self,
        conversation_id: str,
        instruction: Optional[str],
        direct_message: Optional[str],
        suggested_next_state: Optional[str],
        is_nudge: bool,
    ) -> Optional[DispatchResult]:
        logger.info("Background dispatch started for %s", conversation_id[:8])
        try:
            async with self.session_factory() as db:
                orchestrator = self.orchestrator_factory(db)
                result = await orchestrator.dispatch(
                    conversation_id,
                    instruction=instruction,
                    direct_message=direct_message,
                    suggested_next_state=suggested_next_state,
                    is_nudge=is_nudge,
                )
        except Exception:
            logger.error("Background dispatch failed for %s", conversation_id[:8], exc_info=True)
            return None

        logger.info(
            "Background dispatch done for %s: %s (%s)",
            conversation_id[:8], result.action.value, result.reason or "ok",
        )
        return result


worker = DispatchWorker()
