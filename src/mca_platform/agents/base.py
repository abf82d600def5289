"""Reasoning Agent Client — the single seam to the external LLM.

Every lead agent (Qualifier, Vetter, Negotiator) and the morning follow-up
runner talk to Gemini through ``ReasoningAgentClient.converse``, which provides:

- Gemini model access via the infra.gemini_client wrapper
- Role-tagged multi-turn history with a system instruction
- Declared tool schemas and structured tool-call parsing
- A caller-visible timeout, latency measurement and token tracking

Unlike the Result pattern used for best-effort generation, a failed
reasoning call raises ``ReasoningFailure``: a dispatch has no safe default
reply, so the caller must see the error.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Optional

from mca_platform.agents.contracts import ReasoningResponse, ToolInvocation, Turn
from mca_platform.domain.errors import ReasoningFailure

logger = logging.getLogger(__name__)

# Gemini calls our outbound turns "model"
_ROLE_MAP = {"assistant": "model", "user": "user"}


def _to_plain(value: Any) -> Any:
    """Convert proto-plus map/repeated composites into plain dicts/lists."""
    if value is None or isinstance(value, (str, bytes, int, float, bool)):
        return value
    if hasattr(value, "items"):
        return {str(k): _to_plain(v) for k, v in value.items()}
    try:
        return [_to_plain(v) for v in value]
    except TypeError:
        return value


def parse_response(response: Any) -> tuple[Optional[str], list[ToolInvocation], int]:
    """Split a Gemini response into (text, tool_calls, tokens_used)."""
    texts: list[str] = []
    tool_calls: list[ToolInvocation] = []

    candidates = getattr(response, "candidates", None) or []
    if candidates:
        content = getattr(candidates[0], "content", None)
        for part in getattr(content, "parts", None) or []:
            fn = getattr(part, "function_call", None)
            if fn is not None and getattr(fn, "name", ""):
                tool_calls.append(
                    ToolInvocation(name=fn.name, arguments=_to_plain(fn.args) or {})
                )
                continue
            text = getattr(part, "text", "")
            if text:
                texts.append(text)

    tokens_used = 0
    usage = getattr(response, "usage_metadata", None)
    if usage:
        prompt_tokens = getattr(usage, "prompt_token_count", 0) or 0
        completion_tokens = getattr(usage, "candidates_token_count", 0) or 0
        tokens_used = prompt_tokens + completion_tokens

    text = "".join(texts).strip() or None
    return text, tool_calls, tokens_used


class ReasoningAgentClient:
    """Wraps one Gemini call that may return free text, tool calls, or both.

    Example::

        client = ReasoningAgentClient(agent_name="negotiator")
        response = await client.converse(
            system_instruction="You are closing a funding deal...",
            history=[Turn("assistant", "Got an offer for you"), Turn("user", "how much?")],
            tool_schema=TOOL_SCHEMA,
        )
    """

    def __init__(
        self,
        agent_name: str,
        model_name: Optional[str] = None,
        temperature: float = 0.7,
        timeout_seconds: Optional[float] = None,
        model_factory: Optional[Callable[..., Any]] = None,
    ):
        """Initialise the client.

        Args:
            agent_name: A short, unique name for the calling agent (used in logs).
            model_name: The Gemini model identifier (defaults to settings).
            temperature: Generation temperature (0.0-1.0).
            timeout_seconds: Hard limit per call (defaults to settings).
            model_factory: Override for ``infra.gemini_client.get_model``.
        """
        self.agent_name = agent_name
        self.model_name = model_name
        self.temperature = temperature
        self._timeout_seconds = timeout_seconds
        self._model_factory = model_factory

    @property
    def timeout_seconds(self) -> float:
        if self._timeout_seconds is not None:
            return self._timeout_seconds
        from mca_platform.app.config import get_settings

        return get_settings().reasoning_timeout_seconds

    def _get_model(self, **kwargs):
        if self._model_factory is not None:
            return self._model_factory(**kwargs)
        from mca_platform.infra.gemini_client import get_model

        return get_model(**kwargs)

    async def converse(
        self,
        system_instruction: str,
        history: list[Turn],
        tool_schema: Optional[list[dict]] = None,
        max_output_tokens: Optional[int] = None,
    ) -> ReasoningResponse:
        """Run one reasoning turn.

        Args:
            system_instruction: Instruction that shapes the model's behaviour.
            history: Ordered turns, oldest first. ``assistant`` turns are our
                prior outbound messages, ``user`` turns are the lead's.
            tool_schema: Tools the model may invoke (see ``agents.tools``).
            max_output_tokens: Optional cap on reply length.

        Returns:
            A ``ReasoningResponse`` with optional text and zero or more tool calls.

        Raises:
            ReasoningFailure: the call errored, timed out, or had no turns.
        """
        if not history:
            raise ReasoningFailure(self.agent_name, "no conversation turns supplied")

        contents = [
            {"role": _ROLE_MAP.get(turn.role, "user"), "parts": [turn.content]}
            for turn in history
        ]

        start_time = time.time()
        try:
            model = self._get_model(
                model_name=self.model_name,
                temperature=self.temperature,
                system_instruction=system_instruction,
                tool_schema=tool_schema,
                max_output_tokens=max_output_tokens,
            )
            response = await asyncio.wait_for(
                model.generate_content_async(contents),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            latency_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "[%s] Reasoning call timed out after %dms", self.agent_name, latency_ms
            )
            raise ReasoningFailure(
                self.agent_name, f"timed out after {self.timeout_seconds}s"
            ) from exc
        except Exception as exc:
            latency_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "[%s] Reasoning call failed after %dms: %s",
                self.agent_name,
                latency_ms,
                exc,
            )
            raise ReasoningFailure(self.agent_name, str(exc)) from exc

        latency_ms = int((time.time() - start_time) * 1000)
        text, tool_calls, tokens_used = parse_response(response)

        logger.info(
            "[%s] Reasoning succeeded: tokens=%d, latency=%dms, turns=%d, tools=%s",
            self.agent_name,
            tokens_used,
            latency_ms,
            len(history),
            [call.name for call in tool_calls],
        )

        return ReasoningResponse(
            text=text,
            tool_calls=tool_calls,
            tokens_used=tokens_used,
            latency_ms=latency_ms,
        )
