"""Model invocation loop: context -> model -> tools -> parse -> repair -> validate.

Every invocation writes exactly one AgentRun. The loop is bounded by two
independent counters: tool rounds and validation attempts.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy.orm import Session

from agent_os.config import settings
from agent_os.logging_config import RunLoggerAdapter, get_logger
from agent_os.models import (
    Contact,
    Conversation,
    ConversationAskedField,
    OutboundMessageLog,
    PhoneLine,
    Program,
    ToolCallLog,
)
from agent_os.schemas.agent_command import AgentResponse, SendMessage, validate_agent_response
from agent_os.services.agent.prompts import build_correction_message, build_system_prompt
from agent_os.services.agent.response_repair import repair_agent_response
from agent_os.services.agent.semantic_validation import validate_agent_response_semantics
from agent_os.services.agent.tools import TOOL_DECLARATIONS, run_tool, stable_hash
from agent_os.services.agent_run_service import create_agent_run, update_agent_run_status
from agent_os.services.conversation_service import get_contact, get_conversation
from agent_os.services.llm import LLMProvider, ToolCall, generate_with_fallback, get_llm_provider, resolve_model_chain
from agent_os.services.message_service import get_recent_messages, message_text
from agent_os.services.result import Result
from agent_os.services.state_machine import AgentRunStatus
from agent_os.services.window_service import WindowStatus, compute_window_status

logger = get_logger("agent.runtime")

MAX_TOOL_ROUNDS = 6
MAX_VALIDATION_ATTEMPTS = 3
RECENT_MESSAGES_LIMIT = 25
AGENT_TEMPERATURE = 0.2
AGENT_MAX_TOKENS = 900

CONVERSATION_COMMANDS = {
    "SET_CONVERSATION_STATUS",
    "SET_CONVERSATION_STAGE",
    "SET_CONVERSATION_PROGRAM",
    "ADD_CONVERSATION_NOTE",
    "SCHEDULE_INTERVIEW",
    "SEND_MESSAGE",
}
CONTACT_COMMANDS = {"UPSERT_PROFILE_FIELDS", "SET_NO_CONTACTAR"}
ENUM_FIELDS = ("command", "type", "channel", "status", "severity", "visibility")

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_SEPARATORS = re.compile(r"[\s-]+")


class LoopState(str, Enum):
    COLLECTING_CONTEXT = "COLLECTING_CONTEXT"
    CALLING_MODEL = "CALLING_MODEL"
    TOOL_DISPATCH = "TOOL_DISPATCH"
    PARSING_RESPONSE = "PARSING_RESPONSE"
    VALIDATING = "VALIDATING"
    RETRY_ON_INVALID = "RETRY_ON_INVALID"
    DONE = "DONE"
    FAILED = "FAILED"


class AgentRuntimeError(Exception):
    pass


class ConversationNotFoundError(AgentRuntimeError):
    pass


class ToolLoopExceededError(AgentRuntimeError):
    def __init__(self, rounds: int):
        self.rounds = rounds
        super().__init__(f"Tool loop exceeded after {rounds} rounds")


class AgentValidationError(AgentRuntimeError):
    def __init__(self, issues: list, raw: Optional[str]):
        self.issues = issues
        self.raw = raw
        super().__init__(f"Agent response invalid after {MAX_VALIDATION_ATTEMPTS} attempts")


@dataclass
class AgentEvent:
    workspace_id: str
    conversation_id: str
    event_type: str
    inbound_message_id: Optional[str] = None
    inbound_text: Optional[str] = None
    model_override: Optional[str] = None


@dataclass
class CommandDefaults:
    workspace_id: str
    conversation_id: str
    contact_id: str
    window_status: WindowStatus
    event_type: str
    inbound_message_id: Optional[str] = None


@dataclass
class AgentRunOutcome:
    agent_run_id: str
    response: AgentResponse
    window_status: WindowStatus
    model: str


def parse_json_loose(raw: Optional[str]) -> Any:
    """json.loads that tolerates code fences and surrounding chatter; None on failure."""
    if not raw or not raw.strip():
        return None
    text = _FENCE.sub("", raw.strip())
    try:
        return json.loads(text)
    except ValueError:
        pass
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(text[start : end + 1])
    except ValueError:
        return None


def canonicalize_enum(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    return _SEPARATORS.sub("_", value.strip()).upper()


def auto_dedupe_key(seed: str) -> str:
    return f"auto:{stable_hash(seed)[:16]}"


def normalize_agent_response_shape(data: Any) -> Any:
    if not isinstance(data, dict):
        return data
    out = dict(data)
    version = out.get("version")
    if isinstance(version, str) and version.strip().isdigit():
        out["version"] = int(version.strip())
    if not isinstance(out.get("commands"), list):
        return out

    commands = []
    for command in out["commands"]:
        if not isinstance(command, dict):
            commands.append(command)
            continue
        normalized = dict(command)
        parameters = normalized.get("parameters")
        if isinstance(parameters, dict):
            normalized.pop("parameters")
            normalized = {**normalized, **parameters}
        for field in ENUM_FIELDS:
            if field in normalized:
                normalized[field] = canonicalize_enum(normalized[field])
        if isinstance(normalized.get("templateVars"), dict):
            normalized["templateVars"] = {
                str(k): v if isinstance(v, str) else json.dumps(v) if isinstance(v, (dict, list)) else str(v)
                for k, v in normalized["templateVars"].items()
            }
        if normalized.get("dedupeKey") is not None and not isinstance(normalized["dedupeKey"], str):
            normalized["dedupeKey"] = str(normalized["dedupeKey"])
        commands.append(normalized)
    out["commands"] = commands
    return out


def apply_command_defaults(data: Any, defaults: CommandDefaults) -> Any:
    if not isinstance(data, dict) or not isinstance(data.get("commands"), list):
        return data
    out = dict(data)
    commands = []
    for command in data["commands"]:
        if not isinstance(command, dict):
            commands.append(command)
            continue
        filled = dict(command)
        tag = str(filled.get("command") or "")
        if tag in CONVERSATION_COMMANDS and not filled.get("conversationId"):
            filled["conversationId"] = defaults.conversation_id
        if tag in CONTACT_COMMANDS and not filled.get("contactId"):
            filled["contactId"] = defaults.contact_id
        if tag == "NOTIFY_ADMIN" and not filled.get("workspaceId"):
            filled["workspaceId"] = defaults.workspace_id
        if tag == "SEND_MESSAGE":
            filled["channel"] = "WHATSAPP"
            if not filled.get("type"):
                filled["type"] = "TEMPLATE" if defaults.window_status == WindowStatus.OUT_OF_WINDOW else "SESSION_TEXT"
        commands.append(filled)
    out["commands"] = commands
    return out


def fill_dedupe_keys(data: Any, defaults: CommandDefaults) -> Any:
    """Derive missing SEND_MESSAGE dedupe keys from the repaired payload."""
    if not isinstance(data, dict) or not isinstance(data.get("commands"), list):
        return data
    out = dict(data)
    commands = []
    for command in data["commands"]:
        if isinstance(command, dict) and command.get("command") == "SEND_MESSAGE" and not command.get("dedupeKey"):
            command = dict(command)
            seed = ":".join(
                [
                    defaults.conversation_id,
                    defaults.event_type,
                    defaults.inbound_message_id or "",
                    str(command.get("type") or ""),
                    str(command.get("text") or ""),
                    str(command.get("templateName") or ""),
                ]
            )
            command["dedupeKey"] = auto_dedupe_key(seed)
        commands.append(command)
    out["commands"] = commands
    return out


def ensure_reply_present(response: AgentResponse, defaults: CommandDefaults) -> tuple[Optional[AgentResponse], list]:
    """An inbound message must always get a reply candidate."""
    if defaults.event_type != "INBOUND_MESSAGE":
        return response, []
    if any(isinstance(command, SendMessage) for command in response.commands):
        return response, []

    notes = (response.notes or "").strip()
    if notes and defaults.window_status == WindowStatus.IN_WINDOW:
        seed = f"{defaults.conversation_id}:{defaults.event_type}:{defaults.inbound_message_id or ''}:AUTO_NOTES_SEND:{notes}"
        promoted = SendMessage(
            command="SEND_MESSAGE",
            conversation_id=defaults.conversation_id,
            channel="WHATSAPP",
            type="SESSION_TEXT",
            text=notes,
            dedupe_key=auto_dedupe_key(seed),
        )
        return response.model_copy(update={"commands": [*response.commands, promoted]}), []

    return None, [{"path": ["commands"], "message": "INBOUND_MESSAGE requires at least one SEND_MESSAGE"}]


def validate_candidate(parsed: Any, defaults: CommandDefaults) -> tuple[Optional[AgentResponse], list, str]:
    """Normalize, repair and validate one parsed answer.

    Returns (response, [], "") on success, (None, issues, error_kind) otherwise.
    """
    prepared = repair_agent_response(apply_command_defaults(normalize_agent_response_shape(parsed), defaults))
    prepared = fill_dedupe_keys(prepared, defaults)
    response, issues = validate_agent_response(prepared)
    if issues:
        return None, issues, "INVALID_SCHEMA"
    issues = validate_agent_response_semantics(response)
    if not issues:
        response, issues = ensure_reply_present(response, defaults)
    if issues:
        return None, issues, "INVALID_SEMANTICS"
    return response, [], ""


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def resolve_program(db: Session, conversation: Conversation) -> Optional[Program]:
    program_id = conversation.program_id
    if not program_id and conversation.phone_line_id:
        line = db.query(PhoneLine).filter(PhoneLine.id == conversation.phone_line_id).first()
        program_id = line.default_program_id if line else None
    if not program_id:
        return None
    return db.query(Program).filter(Program.id == program_id).first()


def build_agent_context(
    db: Session,
    event: AgentEvent,
    conversation: Conversation,
    contact: Optional[Contact],
    program: Optional[Program],
    window_status: WindowStatus,
) -> dict:
    asked = (
        db.query(ConversationAskedField)
        .filter(ConversationAskedField.conversation_id == conversation.id)
        .all()
    )
    last_outbound = (
        db.query(OutboundMessageLog)
        .filter(
            OutboundMessageLog.conversation_id == conversation.id,
            OutboundMessageLog.blocked_reason.is_(None),
        )
        .order_by(OutboundMessageLog.created_at.desc())
        .first()
    )
    messages = get_recent_messages(db, conversation.id, limit=RECENT_MESSAGES_LIMIT)

    contact_data = None
    if contact:
        contact_data = {
            "id": contact.id,
            "waId": contact.wa_id,
            "displayName": contact.display_name,
            "candidateName": contact.candidate_name,
            "candidateNameManual": contact.candidate_name_manual,
            "email": contact.email,
            "rut": contact.rut,
            "comuna": contact.comuna,
            "ciudad": contact.ciudad,
            "region": contact.region,
            "experienceYears": contact.experience_years,
            "terrainExperience": contact.terrain_experience,
            "availabilityText": contact.availability_text,
            "flags": ["NO_CONTACTAR"] if contact.no_contact else [],
        }

    return {
        "event": {
            "type": event.event_type,
            "inboundMessageId": event.inbound_message_id,
            "inboundText": event.inbound_text,
        },
        "workspaceId": event.workspace_id,
        "conversation": {
            "id": conversation.id,
            "status": conversation.status,
            "stage": conversation.stage,
            "programId": conversation.program_id,
            "phoneLineId": conversation.phone_line_id,
            "assignedToId": conversation.assigned_to_id,
            "interview": {
                "day": conversation.interview_day,
                "time": conversation.interview_time,
                "location": conversation.interview_location,
                "status": conversation.interview_status,
            },
        },
        "contact": contact_data,
        "program": {"id": program.id, "name": program.name, "slug": program.slug} if program else None,
        "askedFieldsHistory": {
            row.field: {
                "count": row.ask_count,
                "lastAskedAt": _iso(row.last_asked_at),
                "lastAskedHash": row.last_asked_hash,
            }
            for row in asked
        },
        "lastOutbound": (
            {
                "textHash": last_outbound.text_hash,
                "dedupeKey": last_outbound.dedupe_key,
                "at": _iso(last_outbound.created_at),
            }
            if last_outbound
            else None
        ),
        "whatsappWindowStatus": window_status.value,
        "lastMessages": [
            {"direction": m.direction, "text": message_text(m), "timestamp": _iso(m.timestamp)} for m in messages
        ],
    }


def _dispatch_tool(db: Session, agent_run_id: str, call: ToolCall, defaults: CommandDefaults) -> dict:
    args = parse_json_loose(call.arguments)
    if isinstance(args, dict):
        result = run_tool(
            db,
            call.name,
            args,
            defaults={"conversationId": defaults.conversation_id, "workspaceId": defaults.workspace_id},
        )
    else:
        args = None
        result = Result.failure("Tool arguments must be a JSON object", "invalid_arguments")

    db.add(
        ToolCallLog(
            agent_run_id=agent_run_id,
            tool_name=call.name,
            args=args,
            result=result.value if result.ok else None,
            error=result.error,
            created_at=datetime.now(timezone.utc),
        )
    )
    db.commit()
    return {"role": "tool", "tool_call_id": call.id, "content": json.dumps(result.to_payload(), ensure_ascii=False)}


def _merge_usage(total: dict, usage: Optional[dict]) -> dict:
    for key, value in (usage or {}).items():
        if isinstance(value, (int, float)):
            total[key] = total.get(key, 0) + value
    return total


def run_agent(db: Session, event: AgentEvent, llm: Optional[LLMProvider] = None) -> AgentRunOutcome:
    """Invoke the model for one event and return a validated, not yet executed batch.

    Raises AgentRuntimeError (or an LLMError after the fallback chain) on
    terminal failure; the AgentRun is marked ERROR before the exception leaves.
    """
    llm = llm or get_llm_provider()
    log = RunLoggerAdapter(logger, {"conversation_id": event.conversation_id, "event_type": event.event_type})

    state = LoopState.COLLECTING_CONTEXT
    run = None
    last_raw: Optional[str] = None
    last_issues: list = []
    tool_rounds = 0
    attempts = 0
    usage: dict = {}

    try:
        conversation = get_conversation(db, event.conversation_id)
        if not conversation:
            raise ConversationNotFoundError(f"Conversation not found: {event.conversation_id}")
        contact = get_contact(db, conversation.contact_id)
        window_status = compute_window_status(db, conversation.id)
        program = resolve_program(db, conversation)
        context = build_agent_context(db, event, conversation, contact, program, window_status)

        run = create_agent_run(
            db,
            workspace_id=event.workspace_id,
            conversation_id=conversation.id,
            event_type=event.event_type,
            program_id=program.id if program else None,
            input_context=context,
        )
        log.extra["agent_run_id"] = run.id

        defaults = CommandDefaults(
            workspace_id=event.workspace_id,
            conversation_id=conversation.id,
            contact_id=conversation.contact_id,
            window_status=window_status,
            event_type=event.event_type,
            inbound_message_id=event.inbound_message_id,
        )
        models = resolve_model_chain(
            event.model_override or settings.agent_model_override,
            program.agent_model if program else None,
            settings.agent_model,
            settings.agent_fallback_model,
        )
        messages = [
            {
                "role": "system",
                "content": build_system_prompt(window_status.value, program.agent_system_prompt if program else ""),
            },
            {"role": "user", "content": json.dumps(context, ensure_ascii=False)},
        ]

        while True:
            state = LoopState.CALLING_MODEL
            llm_response, requested_model = generate_with_fallback(
                llm,
                messages,
                models,
                per_call_timeout=settings.agent_timeout_per_call_seconds,
                total_timeout=settings.agent_timeout_total_seconds,
                temperature=AGENT_TEMPERATURE,
                max_tokens=AGENT_MAX_TOKENS,
                tools=TOOL_DECLARATIONS,
                response_format={"type": "json_object"},
            )
            _merge_usage(usage, llm_response.usage)

            if llm_response.tool_calls:
                tool_rounds += 1
                if tool_rounds > MAX_TOOL_ROUNDS:
                    raise ToolLoopExceededError(MAX_TOOL_ROUNDS)
                state = LoopState.TOOL_DISPATCH
                messages.append(llm_response.assistant_message())
                for call in llm_response.tool_calls:
                    messages.append(_dispatch_tool(db, run.id, call, defaults))
                log.info("Tool round dispatched", context={"round": tool_rounds, "tools": len(llm_response.tool_calls)})
                continue

            attempts += 1
            state = LoopState.PARSING_RESPONSE
            last_raw = llm_response.content
            parsed = parse_json_loose(last_raw)

            state = LoopState.VALIDATING
            response, issues, error_kind = validate_candidate(parsed, defaults)
            if response is not None:
                state = LoopState.DONE
                update_agent_run_status(
                    db,
                    run,
                    AgentRunStatus.PLANNED,
                    commands=response.to_wire(),
                    results={
                        "modelRequested": requested_model,
                        "modelResolved": llm_response.model,
                        "usage": usage,
                        "attempts": attempts,
                        "toolRounds": tool_rounds,
                    },
                )
                log.info("Agent run planned", context={"commands": len(response.commands), "attempts": attempts})
                return AgentRunOutcome(
                    agent_run_id=run.id,
                    response=response,
                    window_status=window_status,
                    model=llm_response.model,
                )

            last_issues = issues
            log.warning("Agent response invalid", context={"attempt": attempts, "error": error_kind, "issues": issues})
            if attempts >= MAX_VALIDATION_ATTEMPTS:
                raise AgentValidationError(issues, last_raw)

            state = LoopState.RETRY_ON_INVALID
            messages.append({"role": "assistant", "content": last_raw or ""})
            correction = build_correction_message(
                error_kind,
                issues,
                "Corrige tu respuesta: devuelve SOLO un JSON válido con agent, version y commands.",
            )
            messages.append({"role": "user", "content": json.dumps(correction, ensure_ascii=False)})
    except Exception as e:
        failed_in = state
        state = LoopState.FAILED
        log.error(f"Agent run failed in {failed_in.value}: {e}")
        if run is not None:
            db.rollback()
            if run.status == AgentRunStatus.RUNNING.value:
                update_agent_run_status(
                    db,
                    run,
                    AgentRunStatus.ERROR,
                    error=str(e),
                    results={
                        "error": str(e),
                        "failedState": failed_in.value,
                        "lastInvalidRaw": last_raw,
                        "lastInvalidIssues": last_issues,
                        "attempts": attempts,
                        "toolRounds": tool_rounds,
                        "usage": usage,
                    },
                )
        raise
