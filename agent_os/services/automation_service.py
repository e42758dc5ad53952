"""Declarative automation rules: match enabled rules for an event and run their actions."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from agent_os.logging_config import get_logger
from agent_os.models import AutomationRule, AutomationRun, Contact, Conversation, Message, User, Workspace
from agent_os.services.agent.executor import TransportMode, execute_agent_response
from agent_os.services.agent.runtime import AgentEvent, ConversationNotFoundError, run_agent
from agent_os.services.agent.tools import normalize_text
from agent_os.services.conversation_service import get_contact, get_conversation, touch_conversation
from agent_os.services.llm import LLMProvider
from agent_os.services.message_service import save_message
from agent_os.services.notification_service import alert_error
from agent_os.services.program_selection import maybe_handle_program_selection
from agent_os.services.state_machine import ConversationStatus
from agent_os.services.window_service import compute_window_status

logger = get_logger("automation_service")

TRIGGERS = ("INBOUND_MESSAGE", "INACTIVITY", "STAGE_CHANGED", "PROFILE_UPDATED")

UNDEFINED = object()

BOOLEAN_FIELDS = {
    "contact.noContactar",
    "contact.hasCandidateName",
    "contact.hasLocation",
    "contact.hasRut",
    "contact.hasEmail",
    "contact.hasAvailability",
    "contact.hasExperience",
}


class AutomationActionError(Exception):
    pass


@dataclass
class ConditionContext:
    conversation: Conversation
    contact: Optional[Contact]
    window_status: str
    inbound_text: Optional[str] = None


@dataclass
class AutomationSummary:
    program_selection: dict = field(default_factory=dict)
    halted: bool = False
    matched_rules: list = field(default_factory=list)
    runs: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _has(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def resolve_condition_field(field_name: str, ctx: ConditionContext) -> Any:
    """Project a rule field onto the current state. Unknown fields are UNDEFINED."""
    conversation, contact = ctx.conversation, ctx.contact
    if field_name == "conversation.status":
        return conversation.status
    if field_name == "conversation.stage":
        return conversation.stage
    if field_name == "conversation.programId":
        return conversation.program_id
    if field_name == "conversation.phoneLineId":
        return conversation.phone_line_id
    if field_name == "whatsapp.windowStatus":
        return ctx.window_status
    if field_name == "inbound.textContains":
        return ctx.inbound_text or ""
    if field_name in BOOLEAN_FIELDS:
        if contact is None:
            return False
        if field_name == "contact.noContactar":
            return bool(contact.no_contact)
        if field_name == "contact.hasCandidateName":
            return _has(contact.candidate_name_manual) or _has(contact.candidate_name)
        if field_name == "contact.hasLocation":
            return _has(contact.comuna) or _has(contact.ciudad) or _has(contact.region)
        if field_name == "contact.hasRut":
            return _has(contact.rut)
        if field_name == "contact.hasEmail":
            return _has(contact.email)
        if field_name == "contact.hasAvailability":
            return _has(contact.availability_text)
        if field_name == "contact.hasExperience":
            return contact.experience_years is not None or contact.terrain_experience is not None
    return UNDEFINED


def parse_boolean(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        word = value.strip().lower()
        if word in ("true", "1", "yes", "si", "sí"):
            return True
        if word in ("false", "0", "no"):
            return False
    return None


def _as_text(value: Any) -> str:
    return "" if value is None else str(value).strip().lower()


def _expected_list(expected: Any) -> list:
    if isinstance(expected, list):
        return expected
    if isinstance(expected, str):
        return [item.strip() for item in expected.split(",") if item.strip()]
    return [expected]


def evaluate_operator(op: str, actual: Any, expected: Any) -> bool:
    """Compare ``actual`` with ``expected``. Unknown operators are False."""
    if op == "equals":
        return _as_text(actual) == _as_text(expected)
    if op == "not_equals":
        return _as_text(actual) != _as_text(expected)
    if op == "contains":
        needle = normalize_text(_as_text(expected))
        return bool(needle) and needle in normalize_text(_as_text(actual))
    if op == "in":
        return any(_as_text(actual) == _as_text(item) for item in _expected_list(expected))
    return False


def evaluate_condition(condition: Any, ctx: ConditionContext) -> bool:
    if not isinstance(condition, dict):
        return False
    field_name = str(condition.get("field") or "")
    op = str(condition.get("op") or "equals")
    expected = condition.get("value")

    actual = resolve_condition_field(field_name, ctx)
    if actual is UNDEFINED:
        return False

    if field_name in BOOLEAN_FIELDS:
        wanted = parse_boolean(expected)
        if wanted is None or op not in ("equals", "not_equals"):
            return False
        return (actual == wanted) if op == "equals" else (actual != wanted)

    if field_name == "inbound.textContains":
        if op in ("equals", "contains"):
            return evaluate_operator("contains", actual, expected)
        if op == "not_equals":
            return not evaluate_operator("contains", actual, expected)
        return False

    return evaluate_operator(op, actual, expected)


def rule_matches(rule: AutomationRule, ctx: ConditionContext) -> bool:
    if rule.scope_phone_line_id and rule.scope_phone_line_id != ctx.conversation.phone_line_id:
        return False
    if rule.scope_program_id and rule.scope_program_id != ctx.conversation.program_id:
        return False
    conditions = rule.conditions if isinstance(rule.conditions, list) else []
    return all(evaluate_condition(condition, ctx) for condition in conditions)


def load_rules(db: Session, workspace_id: str, trigger: str) -> list[AutomationRule]:
    return (
        db.query(AutomationRule)
        .filter(
            AutomationRule.workspace_id == workspace_id,
            AutomationRule.enabled.is_(True),
            AutomationRule.trigger == trigger,
        )
        .order_by(AutomationRule.priority.asc(), AutomationRule.created_at.asc())
        .all()
    )


@dataclass
class ActionContext:
    db: Session
    rule: AutomationRule
    conversation: Conversation
    event_type: str
    inbound_message_id: Optional[str]
    inbound_text: Optional[str]
    transport_mode: TransportMode
    channel: Any
    llm: Optional[LLMProvider]
    automation_depth: int


def _action_set_status(actx: ActionContext, action: dict) -> dict:
    status = str(action.get("status") or "").strip().upper()
    if status not in {s.value for s in ConversationStatus}:
        raise AutomationActionError(f"Invalid status: {action.get('status')}")
    actx.conversation.status = status
    touch_conversation(actx.db, actx.conversation)
    return {"status": status}


def _action_add_note(actx: ActionContext, action: dict) -> dict:
    note = str(action.get("note") or "").strip()
    if not note:
        raise AutomationActionError("ADD_NOTE requires note")
    message = save_message(
        actx.db,
        actx.conversation.id,
        "OUTBOUND",
        note,
        message_metadata={"system": True, "visibility": "SYSTEM", "automationRuleId": actx.rule.id},
    )
    touch_conversation(actx.db, actx.conversation)
    return {"messageId": message.id}


def _action_assign_to_role_holder(actx: ActionContext, action: dict) -> dict:
    role = str(action.get("role") or "").strip()
    workspace = actx.db.query(Workspace).filter(Workspace.id == actx.conversation.workspace_id).first()
    holders = ((workspace.config or {}) if workspace else {}).get("role_holders") or {}
    email = holders.get(role)
    if not email:
        raise AutomationActionError(f"No role holder configured for {role or '<empty>'}")
    user = (
        actx.db.query(User)
        .filter(User.workspace_id == actx.conversation.workspace_id, User.email == email, User.is_active.is_(True))
        .first()
    )
    if not user:
        raise AutomationActionError(f"Role holder {email} not found in workspace")

    changed = actx.conversation.assigned_to_id != user.id
    if changed:
        actx.conversation.assigned_to_id = user.id
        label = user.name or user.email
        note = str(action.get("note") or "").strip()
        save_message(
            actx.db,
            actx.conversation.id,
            "OUTBOUND",
            f"Asignación automática: {label}" + (f"\n{note}" if note else ""),
            message_metadata={"system": True, "visibility": "SYSTEM", "automationRuleId": actx.rule.id},
        )
        touch_conversation(actx.db, actx.conversation)
    return {"assignedToId": user.id, "changed": changed}


def _action_run_agent(actx: ActionContext, action: dict) -> dict:
    outcome = run_agent(
        actx.db,
        AgentEvent(
            workspace_id=actx.conversation.workspace_id,
            conversation_id=actx.conversation.id,
            event_type=str(action.get("eventType") or actx.event_type),
            inbound_message_id=actx.inbound_message_id,
            inbound_text=actx.inbound_text,
        ),
        llm=actx.llm,
    )
    results = execute_agent_response(
        actx.db,
        outcome.agent_run_id,
        outcome.response,
        transport_mode=actx.transport_mode,
        channel=actx.channel,
        automation_depth=actx.automation_depth,
    )
    return {"agentRunId": outcome.agent_run_id, "results": [r.to_dict() for r in results]}


ACTION_HANDLERS = {
    "SET_STATUS": _action_set_status,
    "ADD_NOTE": _action_add_note,
    "ASSIGN_TO_ROLE_HOLDER": _action_assign_to_role_holder,
    "RUN_AGENT": _action_run_agent,
}


def _execute_rule(db: Session, actx: ActionContext) -> dict:
    rule = actx.rule
    run = AutomationRun(
        workspace_id=rule.workspace_id,
        rule_id=rule.id,
        conversation_id=actx.conversation.id,
        event_type=actx.event_type,
        status="RUNNING",
        input_data={"inboundMessageId": actx.inbound_message_id, "inboundText": actx.inbound_text},
        created_at=datetime.now(timezone.utc),
    )
    db.add(run)
    db.commit()

    outputs = []
    try:
        for action in rule.actions if isinstance(rule.actions, list) else []:
            action_type = str((action or {}).get("type") or "").strip().upper()
            handler = ACTION_HANDLERS.get(action_type)
            if handler is None:
                raise AutomationActionError(f"Unknown action type: {action_type or '<empty>'}")
            outputs.append({"action": action_type, **handler(actx, action)})
            db.commit()
    except Exception as e:
        db.rollback()
        logger.error(
            "Automation rule failed",
            extra={"context": {"rule_id": rule.id, "conversation_id": actx.conversation.id, "error": str(e)}},
        )
        run.status = "ERROR"
        run.error = str(e)
        run.output_data = {"outputs": outputs}
        db.commit()
        alert_error("Automation rule failed", {"rule": rule.name, "conversation": actx.conversation.id, "error": str(e)})
        return {"ruleId": rule.id, "runId": run.id, "status": "ERROR", "error": str(e)}

    run.status = "SUCCESS"
    run.output_data = {"outputs": outputs}
    db.commit()
    return {"ruleId": rule.id, "runId": run.id, "status": "SUCCESS", "outputs": outputs}


def run_automations(
    db: Session,
    workspace_id: str,
    event_type: str,
    conversation_id: str,
    inbound_message_id: Optional[str] = None,
    inbound_text: Optional[str] = None,
    transport_mode: TransportMode = TransportMode.REAL,
    channel=None,
    llm: Optional[LLMProvider] = None,
    automation_depth: int = 0,
) -> AutomationSummary:
    """Process one trigger event for one conversation, end to end."""
    conversation = get_conversation(db, conversation_id)
    if not conversation or conversation.workspace_id != workspace_id:
        raise ConversationNotFoundError(f"Conversation not found: {conversation_id}")

    if inbound_text is None and inbound_message_id:
        inbound = db.query(Message).filter(Message.id == inbound_message_id).first()
        inbound_text = (inbound.transcript_text or inbound.text) if inbound else None

    summary = AutomationSummary()
    selection = maybe_handle_program_selection(
        db, conversation, event_type, inbound_text, transport_mode=transport_mode, channel=channel
    )
    summary.program_selection = {"programId": selection.program_id, **selection.details}
    if selection.halted:
        summary.halted = True
        return summary

    for rule in load_rules(db, workspace_id, event_type):
        ctx = ConditionContext(
            conversation=conversation,
            contact=get_contact(db, conversation.contact_id),
            window_status=compute_window_status(db, conversation.id).value,
            inbound_text=inbound_text,
        )
        if not rule_matches(rule, ctx):
            continue
        summary.matched_rules.append(rule.id)
        actx = ActionContext(
            db=db,
            rule=rule,
            conversation=conversation,
            event_type=event_type,
            inbound_message_id=inbound_message_id,
            inbound_text=inbound_text,
            transport_mode=TransportMode(transport_mode),
            channel=channel,
            llm=llm,
            automation_depth=automation_depth,
        )
        summary.runs.append(_execute_rule(db, actx))

    logger.info(
        "Automations processed",
        extra={"context": {"conversation_id": conversation_id, "event_type": event_type, "matched": len(summary.matched_rules)}},
    )
    return summary
