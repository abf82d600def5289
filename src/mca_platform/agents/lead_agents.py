"""Lead conversation agents — Qualifier, Vetter, Negotiator.

Each variant shapes its own context (system instruction + role-tagged
turns) and asks the Reasoning Agent Client for a reply and/or tool calls.
Agents never send messages or commit state; the orchestrator does.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mca_platform.agents.base import ReasoningAgentClient
from mca_platform.agents.contracts import AgentResult, Turn
from mca_platform.agents.prompts.lead_agents import (
    FOLLOW_UP_NOTE,
    INSTRUCTION_NOTE,
    NEGOTIATOR_PROMPT,
    OPENING_NOTE,
    QUALIFIER_PROMPT,
    SHARED_RULES,
    VETTER_PROMPT,
)
from mca_platform.agents.tools import TOOL_SCHEMA
from mca_platform.app.config import get_settings
from mca_platform.domain.enums import AgentVariant, MessageDirection
from mca_platform.domain.models import Conversation, LenderSubmission, Message

logger = logging.getLogger(__name__)

DEFAULT_OPENING = "introduce yourself and ask if they are still looking for funding."


class LeadAgent:
    """Base class for the three lead agents."""

    variant: AgentVariant
    prompt_template: str

    def __init__(self, db: AsyncSession, client: Optional[ReasoningAgentClient] = None):
        self.db = db
        self.client = client or ReasoningAgentClient(agent_name=self.actor)

    @property
    def actor(self) -> str:
        """Tag written to ``Message.sent_by`` / ``StateTransition.changed_by``."""
        return self.variant.value

    async def prompt_context(self, conversation: Conversation) -> dict:
        """Extra template fields for this variant's system prompt."""
        return {}

    async def build_system_instruction(self, conversation: Conversation) -> str:
        settings = get_settings()
        fields = {
            "agent_name": settings.agent_display_name,
            "business_name": conversation.business_name or conversation.first_name or "the merchant",
            "rules": SHARED_RULES,
        }
        fields.update(await self.prompt_context(conversation))
        return self.prompt_template.format(**fields)

    def build_turns(self, history: list[Message], instruction: Optional[str]) -> list[Turn]:
        """Map stored messages to turns and append the steering note."""
        turns: list[Turn] = []
        for msg in history:
            content = msg.content or ("[media attachment]" if msg.media_url else "")
            if not content:
                continue
            role = "assistant" if msg.direction == MessageDirection.OUTBOUND.value else "user"
            turns.append(Turn(role=role, content=content))

        if not turns:
            turns.append(Turn(role="user", content=OPENING_NOTE.format(instruction=instruction or DEFAULT_OPENING)))
        elif turns[-1].role == "assistant":
            note = FOLLOW_UP_NOTE
            if instruction:
                note = f"{note}\n{INSTRUCTION_NOTE.format(instruction=instruction)}"
            turns.append(Turn(role="user", content=note))
        elif instruction:
            turns.append(Turn(role="user", content=INSTRUCTION_NOTE.format(instruction=instruction)))
        return turns

    async def respond(
        self,
        conversation: Conversation,
        history: list[Message],
        instruction: Optional[str] = None,
    ) -> AgentResult:
        """Ask the reasoning service what to do next. Raises ReasoningFailure."""
        system_instruction = await self.build_system_instruction(conversation)
        turns = self.build_turns(history, instruction)

        response = await self.client.converse(
            system_instruction=system_instruction,
            history=turns,
            tool_schema=TOOL_SCHEMA,
        )

        if response.text:
            logger.info("[%s] %s drafted: %.60s", conversation.label, self.actor, response.text)
        return AgentResult(
            should_reply=bool(response.text),
            content=response.text,
            tool_calls=response.tool_calls,
            agent=self.actor,
        )


class QualifierAgent(LeadAgent):
    """Early funnel: get the application and statements."""

    variant = AgentVariant.QUALIFIER
    prompt_template = QUALIFIER_PROMPT


class VetterAgent(LeadAgent):
    """Underwriting in progress: chase documents, keep the merchant warm."""

    variant = AgentVariant.VETTER
    prompt_template = VETTER_PROMPT

    async def prompt_context(self, conversation: Conversation) -> dict:
        notes = (conversation.extra_metadata or {}).get("underwriting_notes")
        return {"underwriting_notes": notes or "None on file."}


class NegotiatorAgent(LeadAgent):
    """Active offer: present numbers and close."""

    variant = AgentVariant.NEGOTIATOR
    prompt_template = NEGOTIATOR_PROMPT

    async def prompt_context(self, conversation: Conversation) -> dict:
        result = await self.db.execute(
            select(LenderSubmission)
            .where(
                LenderSubmission.conversation_id == conversation.id,
                LenderSubmission.status == "OFFER",
            )
            .order_by(LenderSubmission.offer_amount.desc())
        )
        offers = result.scalars().all()
        if not offers:
            return {"offers": "No offer details on file yet."}

        lines = []
        for offer in offers:
            amount = f"${offer.offer_amount:,.0f}" if offer.offer_amount else "amount pending"
            lines.append(f"- {offer.lender_name or 'Lender'}: {amount}")
        return {"offers": "\n".join(lines)}


AGENT_CLASSES: dict[AgentVariant, type[LeadAgent]] = {
    AgentVariant.QUALIFIER: QualifierAgent,
    AgentVariant.VETTER: VetterAgent,
    AgentVariant.NEGOTIATOR: NegotiatorAgent,
}
