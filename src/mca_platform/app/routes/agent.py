"""Agent dispatch endpoints — called by the drip dispatcher and the scheduler."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from mca_platform.app.config import get_settings
from mca_platform.domain.errors import ConversationNotFound, NoAgentForState, ReasoningFailure
from mca_platform.infra.database import get_db
from mca_platform.services.dispatch_orchestrator import DispatchOrchestrator
from mca_platform.services.followup_runner import MorningFollowUpRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/agent", tags=["agent"])


class TriggerRequest(BaseModel):
    conversation_id: str = Field(..., min_length=1)
    system_instruction: Optional[str] = None
    direct_message: Optional[str] = None
    next_state: Optional[str] = None
    is_nudge: bool = False


async def verify_internal_secret(x_internal_secret: str = Header(...)):
    """Verify that the request includes the internal API secret."""
    settings = get_settings()
    if x_internal_secret != settings.internal_api_secret:
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_orchestrator(db: AsyncSession = Depends(get_db)) -> DispatchOrchestrator:
    return DispatchOrchestrator(db)


def get_followup_runner(db: AsyncSession = Depends(get_db)) -> MorningFollowUpRunner:
    return MorningFollowUpRunner(db)


@router.post("/trigger")
async def trigger(
    body: TriggerRequest,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    """Run one dispatch for a conversation.

    A busy conversation is a normal outcome: ``success`` false, ``skipped`` true.
    """
    logger.info("Received dispatcher trigger for %s", body.conversation_id[:8])
    try:
        result = await orchestrator.dispatch(
            body.conversation_id,
            instruction=body.system_instruction,
            direct_message=body.direct_message,
            suggested_next_state=body.next_state,
            is_nudge=body.is_nudge,
        )
    except ConversationNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except NoAgentForState as exc:
        logger.error("Routing table gap: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))
    except ReasoningFailure as exc:
        raise HTTPException(status_code=502, detail=str(exc))

    return result.to_dict()


@router.post("/morning-followup", dependencies=[Depends(verify_internal_secret)])
async def morning_followup(runner: MorningFollowUpRunner = Depends(get_followup_runner)):
    """Run the morning follow-up batch on demand."""
    logger.info("Morning follow-up triggered via API")
    counts = await runner.run()
    return {"success": True, **counts}
