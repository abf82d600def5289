"""Typed dataclasses for agent I/O contracts."""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ToolInvocation:
    """One structured tool call returned by the reasoning service."""
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ReasoningResponse:
    """Output of ``ReasoningAgentClient.converse``.

    Both fields may be populated at once. Neither populated means the
    agent decided silence is the right response.
    """
    text: str | None = None
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    tokens_used: int = 0
    latency_ms: int = 0


@dataclass
class AgentResult:
    """Output of the Agent Router."""
    should_reply: bool = False
    content: str | None = None
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    agent: str | None = None  # qualifier, vetter, negotiator, locked, disabled, cold_drip


@dataclass
class ToolExecutionOutcome:
    """What the Tool-Call Executor did with a response's tool calls."""
    stopped: bool = False  # stop_outreach won; suppress any reply
    applied: list[str] = field(default_factory=list)  # human-readable effects
    final_state: str | None = None


@dataclass
class Turn:
    """A role-tagged conversation turn passed to the reasoning service."""
    role: str  # "user" (lead / inbound) or "assistant" (us / outbound)
    content: str
