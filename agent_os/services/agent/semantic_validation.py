"""Cross-field rules the command schema cannot express."""

from typing import Callable, List

from agent_os.schemas.agent_command import AgentResponse, SendMessage


def _send_message_payload_rule(index: int, command) -> List[dict]:
    if not isinstance(command, SendMessage):
        return []
    if command.type == "SESSION_TEXT" and not (command.text or "").strip():
        return [
            {
                "path": ["commands", index, "text"],
                "message": 'SEND_MESSAGE requires "text" when type=SESSION_TEXT',
            }
        ]
    if command.type == "TEMPLATE" and not (command.template_name or "").strip():
        return [
            {
                "path": ["commands", index, "templateName"],
                "message": 'SEND_MESSAGE requires "templateName" when type=TEMPLATE',
            }
        ]
    return []


COMMAND_RULES: List[Callable[[int, object], List[dict]]] = [
    _send_message_payload_rule,
]


def validate_agent_response_semantics(response: AgentResponse) -> List[dict]:
    """Run every per-command rule. An empty list means the batch passes."""
    issues: List[dict] = []
    for index, command in enumerate(response.commands):
        for rule in COMMAND_RULES:
            issues.extend(rule(index, command))
    return issues
