from agent_os.models.agent_run import AgentRun, ToolCallLog
from agent_os.models.automation import AutomationRule, AutomationRun
from agent_os.models.contact import Contact
from agent_os.models.conversation import Conversation
from agent_os.models.message import Message
from agent_os.models.outbound_message_log import ConversationAskedField, OutboundMessageLog
from agent_os.models.program import Program
from agent_os.models.workspace import PhoneLine, User, Workspace

__all__ = [
    "Workspace",
    "User",
    "PhoneLine",
    "Program",
    "Contact",
    "Conversation",
    "Message",
    "AgentRun",
    "ToolCallLog",
    "OutboundMessageLog",
    "ConversationAskedField",
    "AutomationRule",
    "AutomationRun",
]
