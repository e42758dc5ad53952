"""Apply a validated AgentResponse to the store and the messaging channel."""

import json
import re
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session

from agent_os.config import settings
from agent_os.logging_config import get_logger
from agent_os.models import AgentRun, Contact, Conversation, OutboundMessageLog, PhoneLine, Program
from agent_os.schemas.agent_command import (
    AddConversationNote,
    AgentResponse,
    NotifyAdmin,
    RunTool,
    ScheduleInterview,
    SendMessage,
    SetConversationProgram,
    SetConversationStage,
    SetConversationStatus,
    SetNoContactar,
    UpsertProfileFields,
)
from agent_os.services.agent.asked_fields import (
    LOOP_BREAKER_THRESHOLD,
    build_loop_breaker_question,
    bump_asked_field,
    detect_asked_fields,
    is_suspicious_candidate_name,
    load_asked_counts,
)
from agent_os.services.agent.guardrails import (
    BLOCK_MISSING_DESTINATION,
    BLOCK_OPT_OUT,
    BLOCK_SAFE_OUTBOUND,
    BLOCK_WINDOW_VIOLATION,
    should_block_outbound,
)
from agent_os.services.agent.tools import stable_hash
from agent_os.services.agent_run_service import get_agent_run, update_agent_run_status
from agent_os.services.conversation_service import (
    contact_display_name,
    get_contact,
    get_conversation,
    touch_conversation,
)
from agent_os.services.interview_service import attempt_schedule_interview
from agent_os.services.message_service import save_message
from agent_os.services.notification_service import send_admin_notification
from agent_os.services.state_machine import AgentRunStatus, InvalidTransitionError
from agent_os.services.whatsapp_service import SendResult, get_whatsapp_client
from agent_os.services.window_service import WindowStatus, compute_window_status, is_opted_out

logger = get_logger("agent.executor")

MAX_AUTOMATION_DEPTH = 2


class TransportMode(str, Enum):
    REAL = "REAL"
    NULL = "NULL"  # sandbox: everything but the transport call


class MultiConversationBatchError(Exception):
    def __init__(self, conversation_ids: list[str]):
        self.conversation_ids = conversation_ids
        super().__init__(f"Command batch references more than one conversation: {', '.join(conversation_ids)}")


@dataclass
class CommandResult:
    ok: bool
    blocked: bool = False
    blocked_reason: Optional[str] = None
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ExecutionContext:
    db: Session
    run: AgentRun
    conversation: Conversation
    contact: Optional[Contact]
    window_status: WindowStatus
    asked_counts: dict
    channel: object
    transport_mode: TransportMode
    automation_depth: int = 0


def _now() -> datetime:
    return datetime.now(timezone.utc)


def content_fingerprint(msg_type: str, text: Optional[str], template_name: Optional[str], template_vars: Optional[dict]) -> str:
    if msg_type == "TEMPLATE":
        return stable_hash(f"TEMPLATE:{template_name or ''}:{json.dumps(template_vars or {}, sort_keys=True)}")
    return stable_hash(f"TEXT:{text or ''}")


def ordered_template_values(template_vars: Optional[dict]) -> list[str]:
    def key(item):
        name = item[0]
        return (0, int(name), name) if name.isdigit() else (1, 0, name)

    return [value for _, value in sorted((template_vars or {}).items(), key=key)]


def outbound_allowed(destination: str) -> bool:
    policy = (settings.outbound_policy or "ALLOW_ALL").upper()
    if policy == "BLOCK_ALL":
        return False
    if policy == "ALLOWLIST_ONLY":
        allowed = {re.sub(r"\D", "", item) for item in settings.outbound_allowlist.split(",") if item.strip()}
        return re.sub(r"\D", "", destination) in allowed
    return True


def _log_outbound(
    ctx: ExecutionContext,
    command: SendMessage,
    text_hash: str,
    blocked_reason: Optional[str] = None,
    wa_message_id: Optional[str] = None,
) -> OutboundMessageLog:
    entry = OutboundMessageLog(
        conversation_id=ctx.conversation.id,
        agent_run_id=ctx.run.id,
        channel=command.channel,
        type=command.type,
        template_name=command.template_name,
        dedupe_key=command.dedupe_key,
        text_hash=text_hash,
        blocked_reason=blocked_reason,
        wa_message_id=wa_message_id,
        created_at=_now(),
    )
    ctx.db.add(entry)
    ctx.db.flush()
    return entry


def _blocked(ctx: ExecutionContext, command: SendMessage, reason: str, text_hash: str, **details) -> CommandResult:
    _log_outbound(ctx, command, text_hash, blocked_reason=reason)
    logger.info(
        "Outbound blocked",
        extra={"context": {"conversation_id": ctx.conversation.id, "reason": reason, "dedupe_key": command.dedupe_key}},
    )
    return CommandResult(ok=True, blocked=True, blocked_reason=reason, details=details)


def _dispatch(ctx: ExecutionContext, command: SendMessage, destination: str, text: Optional[str]) -> SendResult:
    if ctx.transport_mode == TransportMode.NULL:
        return SendResult(success=True, message_id=f"null-{int(time.time() * 1000)}")

    phone_number_id = None
    if ctx.conversation.phone_line_id:
        line = ctx.db.query(PhoneLine).filter(PhoneLine.id == ctx.conversation.phone_line_id).first()
        phone_number_id = line.wa_phone_number_id if line else None
    try:
        if command.type == "TEMPLATE":
            return ctx.channel.send_template(
                destination,
                command.template_name,
                ordered_template_values(command.template_vars),
                phone_number_id=phone_number_id,
            )
        return ctx.channel.send_text(destination, text, phone_number_id=phone_number_id)
    except Exception as e:
        logger.error(f"Transport raised for conversation {ctx.conversation.id}: {e}")
        return SendResult(success=False, error=str(e))


def _execute_send_message(ctx: ExecutionContext, command: SendMessage) -> CommandResult:
    text = (command.text or "").strip() or None
    pre_hash = stable_hash(f"{command.type}:{text or ''}:{command.template_name or ''}")

    if is_opted_out(ctx.contact):
        return _blocked(ctx, command, BLOCK_OPT_OUT, pre_hash)
    if ctx.window_status == WindowStatus.OUT_OF_WINDOW and command.type == "SESSION_TEXT":
        return _blocked(ctx, command, BLOCK_WINDOW_VIOLATION, pre_hash)

    override = None
    asked_fields: list[str] = []
    if command.type == "SESSION_TEXT":
        asked_fields = detect_asked_fields(text)
        looping = [f for f in asked_fields if ctx.asked_counts.get(f, 0) >= LOOP_BREAKER_THRESHOLD]
        if looping:
            override = {"type": "ASKED_FIELD_LOOP_BREAKER", "field": looping[0], "originalText": text}
            text = build_loop_breaker_question(looping[0], ctx.contact)
            asked_fields = detect_asked_fields(text)

    text_hash = content_fingerprint(command.type, text, command.template_name, command.template_vars)
    reason = should_block_outbound(ctx.db, ctx.conversation.id, command.dedupe_key, text_hash)
    if reason:
        return _blocked(ctx, command, reason, text_hash, override=override)

    destination = (ctx.contact.wa_id or ctx.contact.phone) if ctx.contact else None
    if not destination and ctx.transport_mode == TransportMode.NULL:
        destination = "sandbox"
    if not destination:
        return _blocked(ctx, command, BLOCK_MISSING_DESTINATION, text_hash, override=override)
    if ctx.transport_mode == TransportMode.REAL and not outbound_allowed(destination):
        return _blocked(ctx, command, BLOCK_SAFE_OUTBOUND, text_hash, override=override)

    result = _dispatch(ctx, command, destination, text)

    stored_text = f"[TEMPLATE] {command.template_name}" if command.type == "TEMPLATE" else text
    save_message(
        ctx.db,
        ctx.conversation.id,
        "OUTBOUND",
        stored_text,
        message_metadata={
            "agentRunId": ctx.run.id,
            "dedupeKey": command.dedupe_key,
            "templateVars": command.template_vars,
            "override": override,
            "sendResult": {"success": result.success, "messageId": result.message_id, "error": result.error},
        },
        wa_message_id=result.message_id,
    )
    touch_conversation(ctx.db, ctx.conversation)
    _log_outbound(
        ctx,
        command,
        text_hash,
        blocked_reason=None if result.success else f"SEND_FAILED:{result.error}",
        wa_message_id=result.message_id,
    )

    if result.success and command.type == "SESSION_TEXT":
        for asked in asked_fields:
            row = bump_asked_field(ctx.db, ctx.conversation.id, asked, text or "")
            ctx.asked_counts[asked] = row.ask_count

    details = {"messageId": result.message_id, "override": override}
    if not result.success:
        details["error"] = result.error
    return CommandResult(ok=result.success, details=details)


def _fire_automations(ctx: ExecutionContext, event_type: str) -> Optional[dict]:
    if ctx.automation_depth >= MAX_AUTOMATION_DEPTH:
        return None
    from agent_os.services.automation_service import run_automations

    ctx.db.commit()
    try:
        summary = run_automations(
            ctx.db,
            workspace_id=ctx.run.workspace_id,
            event_type=event_type,
            conversation_id=ctx.conversation.id,
            transport_mode=ctx.transport_mode,
            channel=ctx.channel,
            automation_depth=ctx.automation_depth + 1,
        )
    except Exception as e:
        logger.error(f"{event_type} automations failed for {ctx.conversation.id}: {e}")
        return {"error": str(e)}
    return summary.to_dict()


def _execute_upsert_profile_fields(ctx: ExecutionContext, command: UpsertProfileFields) -> CommandResult:
    contact = (
        ctx.db.query(Contact)
        .filter(Contact.id == command.contact_id, Contact.workspace_id == ctx.run.workspace_id)
        .first()
    )
    if not contact:
        return CommandResult(ok=False, details={"error": "contact_not_found"})

    fields = command.patch.provided_fields()
    dropped = []
    if "candidate_name" in fields:
        proposed = fields["candidate_name"]
        if contact.candidate_name_manual:
            dropped.append({"field": "candidateName", "reason": "manual_name_present"})
            fields.pop("candidate_name")
        elif proposed is not None and is_suspicious_candidate_name(proposed):
            dropped.append({"field": "candidateName", "reason": "suspicious_name"})
            fields.pop("candidate_name")

    applied = []
    for name, value in fields.items():
        if getattr(contact, name) != value:
            setattr(contact, name, value)
            applied.append(name)
    if applied:
        contact.updated_at = _now()
    ctx.db.flush()

    details = {"applied": sorted(applied), "dropped": dropped}
    if applied:
        details["automations"] = _fire_automations(ctx, "PROFILE_UPDATED")
    return CommandResult(ok=True, details=details)


def _execute_set_status(ctx: ExecutionContext, command: SetConversationStatus) -> CommandResult:
    ctx.conversation.status = command.status
    touch_conversation(ctx.db, ctx.conversation)
    return CommandResult(ok=True, details={"status": command.status})


def _execute_set_stage(ctx: ExecutionContext, command: SetConversationStage) -> CommandResult:
    changed = ctx.conversation.stage != command.stage
    ctx.conversation.stage = command.stage
    ctx.conversation.stage_reason = command.reason
    if changed:
        ctx.conversation.stage_changed_at = _now()
    touch_conversation(ctx.db, ctx.conversation)

    details = {"stage": command.stage, "changed": changed}
    if changed:
        details["automations"] = _fire_automations(ctx, "STAGE_CHANGED")
    return CommandResult(ok=True, details=details)


def _execute_set_program(ctx: ExecutionContext, command: SetConversationProgram) -> CommandResult:
    program = (
        ctx.db.query(Program)
        .filter(Program.id == command.program_id, Program.workspace_id == ctx.run.workspace_id)
        .first()
    )
    if not program:
        return CommandResult(ok=False, details={"error": "program_not_found"})
    ctx.conversation.program_id = program.id
    touch_conversation(ctx.db, ctx.conversation)
    return CommandResult(ok=True, details={"programId": program.id})


def _execute_add_note(ctx: ExecutionContext, command: AddConversationNote) -> CommandResult:
    message = save_message(
        ctx.db,
        ctx.conversation.id,
        "OUTBOUND",
        command.note,
        message_metadata={"system": True, "visibility": command.visibility, "agentRunId": ctx.run.id},
    )
    touch_conversation(ctx.db, ctx.conversation)
    return CommandResult(ok=True, details={"messageId": message.id})


def _execute_set_no_contactar(ctx: ExecutionContext, command: SetNoContactar) -> CommandResult:
    contact = (
        ctx.db.query(Contact)
        .filter(Contact.id == command.contact_id, Contact.workspace_id == ctx.run.workspace_id)
        .first()
    )
    if not contact:
        return CommandResult(ok=False, details={"error": "contact_not_found"})
    contact.no_contact = command.value
    contact.no_contact_at = _now() if command.value else None
    contact.no_contact_reason = command.reason if command.value else None
    contact.updated_at = _now()
    ctx.db.flush()
    return CommandResult(ok=True, details={"noContact": command.value})


def _execute_schedule_interview(ctx: ExecutionContext, command: ScheduleInterview) -> CommandResult:
    attempt = attempt_schedule_interview(
        ctx.db,
        ctx.conversation,
        day=command.day,
        time=command.time,
        datetime_iso=command.datetime_iso,
        location_text=command.location_text,
        requires_confirmation=command.requires_confirmation,
    )
    return CommandResult(ok=attempt.ok, details=attempt.to_payload())


def _execute_notify_admin(ctx: ExecutionContext, command: NotifyAdmin) -> CommandResult:
    outcome = send_admin_notification(
        workspace_id=command.workspace_id,
        event_type=command.event_type,
        severity=command.severity,
        text=command.text,
        conversation_id=command.conversation_id or ctx.conversation.id,
        contact_name=contact_display_name(ctx.contact),
    )
    return CommandResult(ok=True, details=outcome)


def _execute_run_tool(ctx: ExecutionContext, command: RunTool) -> CommandResult:
    # Tools are read-only and already ran inside the invocation loop.
    return CommandResult(ok=True, details={"toolName": command.tool_name, "skipped": True})


COMMAND_HANDLERS: dict[str, Callable[[ExecutionContext, object], CommandResult]] = {
    "UPSERT_PROFILE_FIELDS": _execute_upsert_profile_fields,
    "SET_CONVERSATION_STATUS": _execute_set_status,
    "SET_CONVERSATION_STAGE": _execute_set_stage,
    "SET_CONVERSATION_PROGRAM": _execute_set_program,
    "ADD_CONVERSATION_NOTE": _execute_add_note,
    "SET_NO_CONTACTAR": _execute_set_no_contactar,
    "SCHEDULE_INTERVIEW": _execute_schedule_interview,
    "SEND_MESSAGE": _execute_send_message,
    "NOTIFY_ADMIN": _execute_notify_admin,
    "RUN_TOOL": _execute_run_tool,
}


def batch_conversation_ids(response: AgentResponse) -> list[str]:
    ids = []
    for command in response.commands:
        conversation_id = getattr(command, "conversation_id", None)
        if conversation_id and conversation_id not in ids:
            ids.append(conversation_id)
    return ids


def execute_agent_response(
    db: Session,
    agent_run_id: str,
    response: AgentResponse,
    transport_mode: TransportMode = TransportMode.REAL,
    channel=None,
    automation_depth: int = 0,
) -> list[CommandResult]:
    """Execute commands in order; each one commits on its own.

    Returns one CommandResult per command. Raises MultiConversationBatchError
    (after marking the run ERROR) when the batch spans conversations.
    """
    run = get_agent_run(db, agent_run_id)
    if not run:
        raise ValueError(f"AgentRun not found: {agent_run_id}")
    if run.status != AgentRunStatus.PLANNED.value:
        raise InvalidTransitionError(AgentRunStatus(run.status), AgentRunStatus.EXECUTED)

    conversation_ids = batch_conversation_ids(response)
    if any(cid != run.conversation_id for cid in conversation_ids):
        ids = [run.conversation_id] + [cid for cid in conversation_ids if cid != run.conversation_id]
        error = MultiConversationBatchError(ids)
        update_agent_run_status(db, run, AgentRunStatus.ERROR, error=str(error), results={"error": str(error)})
        raise error

    conversation = get_conversation(db, run.conversation_id)
    contact = get_contact(db, conversation.contact_id)
    ctx = ExecutionContext(
        db=db,
        run=run,
        conversation=conversation,
        contact=contact,
        window_status=compute_window_status(db, conversation.id),
        asked_counts=load_asked_counts(db, conversation.id),
        channel=channel or get_whatsapp_client(),
        transport_mode=TransportMode(transport_mode),
        automation_depth=automation_depth,
    )

    results: list[CommandResult] = []
    for index, command in enumerate(response.commands):
        handler = COMMAND_HANDLERS.get(command.command)
        if handler is None:
            results.append(CommandResult(ok=False, details={"error": "unknown_command", "command": command.command}))
            continue
        try:
            result = handler(ctx, command)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.exception(f"Command {index} ({command.command}) failed for run {run.id}")
            result = CommandResult(ok=False, details={"error": str(e)})
        results.append(result)

    update_agent_run_status(
        db,
        run,
        AgentRunStatus.EXECUTED,
        results=[{"command": c.command, **r.to_dict()} for c, r in zip(response.commands, results)],
    )
    return results
