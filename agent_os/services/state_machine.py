from enum import Enum


class AgentRunStatus(str, Enum):
    RUNNING = "RUNNING"
    PLANNED = "PLANNED"
    EXECUTED = "EXECUTED"
    ERROR = "ERROR"


class ConversationStatus(str, Enum):
    NEW = "NEW"
    OPEN = "OPEN"
    CLOSED = "CLOSED"


# EXECUTED and ERROR are terminal: the audit record is frozen afterwards.
VALID_TRANSITIONS = {
    AgentRunStatus.RUNNING: [AgentRunStatus.PLANNED, AgentRunStatus.ERROR],
    AgentRunStatus.PLANNED: [AgentRunStatus.EXECUTED, AgentRunStatus.ERROR],
    AgentRunStatus.EXECUTED: [],
    AgentRunStatus.ERROR: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: AgentRunStatus, to_state: AgentRunStatus):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid agent run transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: AgentRunStatus, to_state: AgentRunStatus) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def transition(from_state: AgentRunStatus, to_state: AgentRunStatus) -> AgentRunStatus:
    """Perform a run status transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def is_terminal(state: AgentRunStatus) -> bool:
    return not VALID_TRANSITIONS.get(state)
