import re
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from agent_os.logging_config import get_logger
from agent_os.models import Conversation, PhoneLine, Program
from agent_os.schemas.agent_command import AgentResponse, SendMessage
from agent_os.services.agent.executor import TransportMode, execute_agent_response
from agent_os.services.agent.tools import list_available_programs, normalize_text, stable_hash
from agent_os.services.agent_run_service import create_agent_run, update_agent_run_status
from agent_os.services.conversation_service import touch_conversation
from agent_os.services.state_machine import AgentRunStatus

logger = get_logger("program_selection")

MENU_HEADER = "¿Sobre qué programa necesitas ayuda?\nResponde con el número:"
_LEADING_NUMBER = re.compile(r"^\s*(\d{1,2})\b")


@dataclass
class ProgramSelectionOutcome:
    halted: bool = False
    program_id: Optional[str] = None
    details: dict = field(default_factory=dict)


def _unique(candidates: List[Program]) -> Optional[Program]:
    return candidates[0] if len(candidates) == 1 else None


def resolve_program_choice(text: Optional[str], programs: List[Program]) -> Optional[Program]:
    """Number from the menu, else a unique slug match, else a unique name match."""
    normalized = normalize_text(text)
    if not normalized:
        return None

    match = _LEADING_NUMBER.match(normalized)
    if match:
        index = int(match.group(1))
        if 1 <= index <= len(programs):
            return programs[index - 1]

    by_slug = _unique(
        [p for p in programs if p.slug and normalize_text(re.sub(r"[-_]+", " ", p.slug)) in normalized]
    )
    if by_slug:
        return by_slug
    return _unique([p for p in programs if p.name and normalize_text(p.name) in normalized])


def build_program_menu(programs: List[Program]) -> str:
    lines = [f"{idx}) {program.name}" for idx, program in enumerate(programs, start=1)]
    return "\n".join([MENU_HEADER, *lines])


def _assign(db: Session, conversation: Conversation, program: Program, reason: str) -> ProgramSelectionOutcome:
    conversation.program_id = program.id
    touch_conversation(db, conversation)
    db.commit()
    logger.info(f"Program {program.slug} assigned to conversation {conversation.id} ({reason})")
    return ProgramSelectionOutcome(program_id=program.id, details={"assigned": program.id, "reason": reason})


def _send_menu(
    db: Session,
    conversation: Conversation,
    programs: List[Program],
    transport_mode: TransportMode,
    channel,
) -> ProgramSelectionOutcome:
    menu = build_program_menu(programs)
    run = create_agent_run(
        db,
        workspace_id=conversation.workspace_id,
        conversation_id=conversation.id,
        event_type="PROGRAM_SELECTION",
        input_context={"programs": [{"id": p.id, "name": p.name, "slug": p.slug} for p in programs]},
    )
    response = AgentResponse(
        agent="program_selection",
        version=1,
        commands=[
            SendMessage(
                command="SEND_MESSAGE",
                conversation_id=conversation.id,
                channel="WHATSAPP",
                type="SESSION_TEXT",
                text=menu,
                dedupe_key=f"program_menu:{stable_hash(f'{conversation.id}:{menu}')[:12]}",
            )
        ],
    )
    update_agent_run_status(db, run, AgentRunStatus.PLANNED, commands=response.to_wire())
    results = execute_agent_response(db, run.id, response, transport_mode=transport_mode, channel=channel)
    return ProgramSelectionOutcome(
        halted=True,
        details={"menuSent": True, "agentRunId": run.id, "results": [r.to_dict() for r in results]},
    )


def maybe_handle_program_selection(
    db: Session,
    conversation: Conversation,
    event_type: str,
    inbound_text: Optional[str],
    transport_mode: TransportMode = TransportMode.REAL,
    channel=None,
) -> ProgramSelectionOutcome:
    if event_type != "INBOUND_MESSAGE" or conversation.program_id:
        return ProgramSelectionOutcome()

    if conversation.phone_line_id:
        line = db.query(PhoneLine).filter(PhoneLine.id == conversation.phone_line_id).first()
        if line and line.default_program_id:
            default = db.query(Program).filter(Program.id == line.default_program_id).first()
            if default:
                return _assign(db, conversation, default, "phone_line_default")

    programs = list_available_programs(db, conversation.workspace_id)
    if not programs:
        return ProgramSelectionOutcome()
    if len(programs) == 1:
        return _assign(db, conversation, programs[0], "single_program")

    choice = resolve_program_choice(inbound_text, programs)
    if choice:
        return _assign(db, conversation, choice, "inbound_choice")
    return _send_menu(db, conversation, programs, transport_mode, channel)
