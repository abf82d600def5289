"""Error taxonomy for agent dispatch.

A busy conversation lock is not an error — it is reported as
``LockOutcome.BUSY`` and surfaces as a skipped dispatch.
"""


class DispatchError(Exception):
    """Base class for dispatch-subsystem errors."""


class ConversationNotFound(DispatchError):
    """Raised when a conversation id does not exist."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class NoAgentForState(DispatchError):
    """Raised when a conversation state has no entry in the routing table."""

    def __init__(self, state: str | None):
        self.state = state
        super().__init__(f"No agent is mapped to conversation state {state!r}")


class InvalidAddress(DispatchError):
    """Raised when a destination phone number is not deliverable."""

    def __init__(self, address: str | None):
        self.address = address
        super().__init__(f"Invalid destination address: {address!r}")


class DeliveryFailure(DispatchError):
    """Raised when the SMS provider rejects or times out a send."""

    def __init__(self, reason: str, status_code: int | None = None):
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Delivery failed: {reason}")


class ReasoningFailure(DispatchError):
    """Raised when the reasoning service call errors or times out."""

    def __init__(self, agent_name: str, reason: str):
        self.agent_name = agent_name
        self.reason = reason
        super().__init__(f"[{agent_name}] reasoning call failed: {reason}")
