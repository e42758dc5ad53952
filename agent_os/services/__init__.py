from agent_os.services.conversation_service import (
    get_conversation,
    touch_conversation,
)
from agent_os.services.message_service import (
    get_recent_messages,
    save_message,
)
from agent_os.services.state_machine import (
    AgentRunStatus,
    ConversationStatus,
    InvalidTransitionError,
    can_transition,
    transition,
)
