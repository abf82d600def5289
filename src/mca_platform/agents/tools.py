"""Tool declarations the lead agents may invoke.

Only two side-effecting commands exist. Their effects are applied by
``services.tool_executor.ToolCallExecutor``; the reasoning service never
touches the store directly.
"""

from mca_platform.domain.enums import ConversationState

UPDATE_LEAD_STATUS = "update_lead_status"
STOP_OUTREACH = "stop_outreach"

# States an agent may move a lead to via update_lead_status
AGENT_SETTABLE_STATES: tuple[ConversationState, ...] = (
    ConversationState.INTERESTED,
    ConversationState.QUALIFIED,
    ConversationState.FCS_RUNNING,
    ConversationState.NEGOTIATING,
    ConversationState.DEAD,
    ConversationState.ARCHIVED,
)

TOOL_SCHEMA: list[dict] = [
    {
        "name": UPDATE_LEAD_STATUS,
        "description": "Updates the lead's status/stage in the CRM.",
        "parameters": {
            "type": "object",
            "properties": {
                "status": {
                    "type": "string",
                    "enum": [s.value for s in AGENT_SETTABLE_STATES],
                    "description": "The new status to move the lead to.",
                },
            },
            "required": ["status"],
        },
    },
    {
        "name": STOP_OUTREACH,
        "description": (
            "Stop all outreach to this lead immediately. Use when the lead asks "
            "to stop, is hostile, or is clearly not a fit. No reply will be sent."
        ),
        "parameters": {"type": "object", "properties": {}},
    },
]
