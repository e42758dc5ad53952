from agent_os.schemas.agent_command import COMMAND_TAGS, AgentCommand, AgentResponse, validate_agent_response
from agent_os.schemas.event import EventRequest, EventResponse

__all__ = [
    "COMMAND_TAGS",
    "AgentCommand",
    "AgentResponse",
    "validate_agent_response",
    "EventRequest",
    "EventResponse",
]
