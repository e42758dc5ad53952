from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from agent_os.models import AgentRun, ConversationAskedField, Message, OutboundMessageLog
from agent_os.schemas.agent_command import COMMAND_TAGS, validate_agent_response
from agent_os.services.agent import executor
from agent_os.services.agent.executor import (
    COMMAND_HANDLERS,
    MultiConversationBatchError,
    TransportMode,
    execute_agent_response,
    ordered_template_values,
)
from agent_os.services.agent_run_service import create_agent_run, update_agent_run_status
from agent_os.services.state_machine import AgentRunStatus, InvalidTransitionError
from agent_os.services.whatsapp_service import SendResult


def _planned_run(db, conversation):
    run = create_agent_run(
        db,
        workspace_id=conversation.workspace_id,
        conversation_id=conversation.id,
        event_type="INBOUND_MESSAGE",
    )
    update_agent_run_status(db, run, AgentRunStatus.PLANNED)
    return run


def _response(*commands):
    response, issues = validate_agent_response({"agent": "recruiter", "version": 1, "commands": list(commands)})
    assert issues == []
    return response


def _send(conversation, text="Hola, ¿cómo estás?", dedupe_key="k1", **fields):
    command = {
        "command": "SEND_MESSAGE",
        "conversationId": conversation.id,
        "channel": "WHATSAPP",
        "type": "SESSION_TEXT",
        "text": text,
        "dedupeKey": dedupe_key,
    }
    command.update(fields)
    return command


def _execute(db, conversation, *commands, **kwargs):
    run = _planned_run(db, conversation)
    results = execute_agent_response(db, run.id, _response(*commands), **kwargs)
    return run, results


def _outbound_logs(db, conversation):
    return (
        db.query(OutboundMessageLog)
        .filter(OutboundMessageLog.conversation_id == conversation.id)
        .order_by(OutboundMessageLog.created_at.asc())
        .all()
    )


@pytest.fixture
def stale_inbound(db, conversation):
    message = Message(
        conversation_id=conversation.id,
        direction="INBOUND",
        text="hola",
        timestamp=datetime.now(timezone.utc) - timedelta(hours=30),
    )
    db.add(message)
    db.commit()
    return message


class TestHandlerTable:
    def test_every_command_has_a_handler(self):
        assert set(COMMAND_HANDLERS) == set(COMMAND_TAGS)

    def test_ordered_template_values(self):
        assert ordered_template_values({"10": "c", "2": "b", "1": "a", "name": "z"}) == ["a", "b", "c", "z"]


class TestSendMessage:
    def test_session_text_sent(self, db, conversation, inbound_message, channel):
        run, results = _execute(db, conversation, _send(conversation), channel=channel)

        assert results[0].ok is True
        assert results[0].blocked is False
        channel.send_text.assert_called_once_with("56911112222", "Hola, ¿cómo estás?", phone_number_id=None)
        outbound = db.query(Message).filter(Message.direction == "OUTBOUND").one()
        assert outbound.wa_message_id == "wamid.text"
        assert outbound.message_metadata["agentRunId"] == run.id
        log = _outbound_logs(db, conversation)[0]
        assert log.blocked_reason is None
        assert log.dedupe_key == "k1"
        db.refresh(run)
        assert run.status == "EXECUTED"
        assert run.results[0]["command"] == "SEND_MESSAGE"

    def test_opt_out_blocks_before_anything_else(self, db, conversation, contact, inbound_message, channel):
        contact.no_contact = True
        db.commit()

        _, results = _execute(db, conversation, _send(conversation), channel=channel)

        assert results[0].blocked is True
        assert results[0].blocked_reason == "OPT_OUT"
        channel.send_text.assert_not_called()
        assert _outbound_logs(db, conversation)[0].blocked_reason == "OPT_OUT"
        assert db.query(Message).filter(Message.direction == "OUTBOUND").count() == 0

    def test_session_text_out_of_window_blocked(self, db, conversation, stale_inbound, channel):
        _, results = _execute(db, conversation, _send(conversation), channel=channel)

        assert results[0].blocked_reason == "WINDOW_VIOLATION"
        channel.send_text.assert_not_called()

    def test_template_allowed_out_of_window(self, db, conversation, stale_inbound, channel):
        command = _send(
            conversation,
            text=None,
            type="TEMPLATE",
            templateName="reactivacion",
            templateVars={"2": "10:00", "1": "Juan"},
        )

        _, results = _execute(db, conversation, command, channel=channel)

        assert results[0].ok is True
        channel.send_template.assert_called_once_with(
            "56911112222", "reactivacion", ["Juan", "10:00"], phone_number_id=None
        )
        outbound = db.query(Message).filter(Message.direction == "OUTBOUND").one()
        assert outbound.text == "[TEMPLATE] reactivacion"

    def test_same_dedupe_key_blocked(self, db, conversation, inbound_message, channel):
        _, results = _execute(
            db,
            conversation,
            _send(conversation, text="Hola"),
            _send(conversation, text="Hola de nuevo"),
            channel=channel,
        )

        assert results[0].blocked is False
        assert results[1].blocked_reason == "DUPLICATE_INTENT"
        assert channel.send_text.call_count == 1

    def test_same_content_blocked(self, db, conversation, inbound_message, channel):
        _, results = _execute(
            db,
            conversation,
            _send(conversation, text="Hola", dedupe_key="a"),
            _send(conversation, text="Hola", dedupe_key="b"),
            channel=channel,
        )

        assert results[1].blocked_reason == "REPEATED_CONTENT"

    def test_blocked_attempt_does_not_block_retry(self, db, conversation, contact, inbound_message, channel):
        contact.no_contact = True
        db.commit()
        _execute(db, conversation, _send(conversation), channel=channel)
        contact.no_contact = False
        db.commit()

        _, results = _execute(db, conversation, _send(conversation), channel=channel)

        assert results[0].blocked is False
        channel.send_text.assert_called_once()

    def test_loop_breaker_rewrites_repeated_question(self, db, conversation, inbound_message, channel):
        db.add(ConversationAskedField(conversation_id=conversation.id, field="location", ask_count=2))
        db.commit()

        _, results = _execute(db, conversation, _send(conversation, text="¿En qué comuna vives?"), channel=channel)

        assert results[0].details["override"]["type"] == "ASKED_FIELD_LOOP_BREAKER"
        assert results[0].details["override"]["originalText"] == "¿En qué comuna vives?"
        sent_text = channel.send_text.call_args[0][1]
        assert sent_text == "Para avanzar necesito tu comuna y ciudad."
        row = db.query(ConversationAskedField).filter(ConversationAskedField.field == "location").one()
        assert row.ask_count == 3

    def test_loop_breaker_confirms_known_value(self, db, conversation, contact, inbound_message, channel):
        contact.comuna = "Maipú"
        db.add(ConversationAskedField(conversation_id=conversation.id, field="location", ask_count=2))
        db.commit()

        _execute(db, conversation, _send(conversation, text="¿Cuál es tu comuna?"), channel=channel)

        assert "Tu comuna es Maipú" in channel.send_text.call_args[0][1]

    def test_successful_question_counts_asked_field(self, db, conversation, inbound_message, channel):
        _execute(db, conversation, _send(conversation, text="¿Me indicas tu RUT?"), channel=channel)

        row = db.query(ConversationAskedField).one()
        assert row.field == "rut"
        assert row.ask_count == 1

    def test_send_failure_is_recorded(self, db, conversation, inbound_message, channel):
        channel.send_text.return_value = SendResult(success=False, error="http_500")

        _, results = _execute(db, conversation, _send(conversation, text="¿Me indicas tu RUT?"), channel=channel)

        assert results[0].ok is False
        assert results[0].details["error"] == "http_500"
        assert _outbound_logs(db, conversation)[0].blocked_reason == "SEND_FAILED:http_500"
        assert db.query(ConversationAskedField).count() == 0

    def test_transport_exception_is_a_send_failure(self, db, conversation, inbound_message, channel):
        channel.send_text.side_effect = RuntimeError("socket closed")

        _, results = _execute(db, conversation, _send(conversation), channel=channel)

        assert results[0].ok is False
        assert _outbound_logs(db, conversation)[0].blocked_reason == "SEND_FAILED:socket closed"

    def test_null_transport_skips_channel(self, db, conversation, inbound_message, channel):
        _, results = _execute(db, conversation, _send(conversation), transport_mode=TransportMode.NULL, channel=channel)

        assert results[0].ok is True
        assert results[0].details["messageId"].startswith("null-")
        channel.send_text.assert_not_called()
        assert db.query(Message).filter(Message.direction == "OUTBOUND").count() == 1

    def test_missing_destination(self, db, conversation, contact, inbound_message, channel):
        contact.wa_id = None
        contact.phone = None
        db.commit()

        _, results = _execute(db, conversation, _send(conversation), channel=channel)

        assert results[0].ok is True
        assert results[0].blocked is True
        assert results[0].blocked_reason == "MISSING_DESTINATION"
        assert _outbound_logs(db, conversation)[0].blocked_reason == "MISSING_DESTINATION"
        channel.send_text.assert_not_called()

    def test_outbound_allowlist(self, db, conversation, inbound_message, channel):
        with patch.object(executor.settings, "outbound_policy", "ALLOWLIST_ONLY"), patch.object(
            executor.settings, "outbound_allowlist", "+56 9 0000 0000"
        ):
            _, results = _execute(db, conversation, _send(conversation), channel=channel)

        assert results[0].blocked_reason == "SAFE_OUTBOUND_BLOCKED"
        channel.send_text.assert_not_called()

    def test_allowlisted_destination_sent(self, db, conversation, inbound_message, channel):
        with patch.object(executor.settings, "outbound_policy", "ALLOWLIST_ONLY"), patch.object(
            executor.settings, "outbound_allowlist", "+56 9 1111 2222, +56 9 3333 4444"
        ):
            _, results = _execute(db, conversation, _send(conversation), channel=channel)

        assert results[0].blocked is False
        channel.send_text.assert_called_once()


class TestProfileCommands:
    def _upsert(self, contact, **patch_fields):
        return {"command": "UPSERT_PROFILE_FIELDS", "contactId": contact.id, "patch": patch_fields}

    def test_upsert_applies_fields(self, db, conversation, contact, channel):
        _, results = _execute(
            db, conversation, self._upsert(contact, comuna="Maipú", ciudad="Santiago", experienceYears=3), channel=channel
        )

        db.refresh(contact)
        assert contact.comuna == "Maipú"
        assert contact.experience_years == 3
        assert results[0].details["applied"] == ["ciudad", "comuna", "experience_years"]
        assert "automations" in results[0].details

    def test_null_clears_field(self, db, conversation, contact, channel):
        contact.email = "old@mail.cl"
        db.commit()

        _execute(db, conversation, self._upsert(contact, email=None), channel=channel)

        db.refresh(contact)
        assert contact.email is None

    def test_manual_name_wins(self, db, conversation, contact, channel):
        contact.candidate_name_manual = "Juan Pérez"
        db.commit()

        _, results = _execute(db, conversation, self._upsert(contact, candidateName="Pedro Soto"), channel=channel)

        db.refresh(contact)
        assert contact.candidate_name is None
        assert results[0].details["dropped"] == [{"field": "candidateName", "reason": "manual_name_present"}]

    def test_suspicious_name_dropped(self, db, conversation, contact, channel):
        _, results = _execute(db, conversation, self._upsert(contact, candidateName="Hola quiero postular"), channel=channel)

        db.refresh(contact)
        assert contact.candidate_name is None
        assert results[0].details["dropped"][0]["reason"] == "suspicious_name"

    def test_contact_from_another_workspace(self, db, conversation, channel):
        command = {"command": "UPSERT_PROFILE_FIELDS", "contactId": "someone-else", "patch": {"comuna": "Maipú"}}

        _, results = _execute(db, conversation, command, channel=channel)

        assert results[0].ok is False
        assert results[0].details["error"] == "contact_not_found"

    def test_opt_out_set_and_cleared(self, db, conversation, contact, channel):
        _execute(
            db,
            conversation,
            {"command": "SET_NO_CONTACTAR", "contactId": contact.id, "value": True, "reason": "Pidió no ser contactado"},
            channel=channel,
        )
        db.refresh(contact)
        assert contact.no_contact is True
        assert contact.no_contact_reason == "Pidió no ser contactado"
        assert contact.no_contact_at is not None

        _execute(db, conversation, {"command": "SET_NO_CONTACTAR", "contactId": contact.id, "value": False}, channel=channel)
        db.refresh(contact)
        assert contact.no_contact is False
        assert contact.no_contact_at is None


class TestConversationCommands:
    def test_status_and_stage(self, db, conversation, channel):
        _, results = _execute(
            db,
            conversation,
            {"command": "SET_CONVERSATION_STATUS", "conversationId": conversation.id, "status": "CLOSED"},
            {"command": "SET_CONVERSATION_STAGE", "conversationId": conversation.id, "stage": "SCREENING", "reason": "ok"},
            channel=channel,
        )

        db.refresh(conversation)
        assert conversation.status == "CLOSED"
        assert conversation.stage == "SCREENING"
        assert conversation.stage_changed_at is not None
        assert results[1].details["changed"] is True

    def test_unchanged_stage_fires_nothing(self, db, conversation, channel):
        conversation.stage = "SCREENING"
        db.commit()

        _, results = _execute(
            db,
            conversation,
            {"command": "SET_CONVERSATION_STAGE", "conversationId": conversation.id, "stage": "SCREENING"},
            channel=channel,
        )

        assert results[0].details == {"stage": "SCREENING", "changed": False}

    def test_program_must_exist_in_workspace(self, db, conversation, make_program, channel):
        program = make_program("Conductores", "conductores")

        _, results = _execute(
            db,
            conversation,
            {"command": "SET_CONVERSATION_PROGRAM", "conversationId": conversation.id, "programId": "nope"},
            {"command": "SET_CONVERSATION_PROGRAM", "conversationId": conversation.id, "programId": program.id},
            channel=channel,
        )

        assert results[0].details["error"] == "program_not_found"
        db.refresh(conversation)
        assert conversation.program_id == program.id

    def test_note_saved_as_system_message(self, db, conversation, channel):
        _execute(
            db,
            conversation,
            {"command": "ADD_CONVERSATION_NOTE", "conversationId": conversation.id, "note": "Pidió llamada", "visibility": "ADMIN"},
            channel=channel,
        )

        note = db.query(Message).one()
        assert note.text == "Pidió llamada"
        assert note.message_metadata["system"] is True
        assert note.message_metadata["visibility"] == "ADMIN"
        channel.send_text.assert_not_called()

    def test_schedule_interview(self, db, conversation, channel):
        _, results = _execute(
            db,
            conversation,
            {"command": "SCHEDULE_INTERVIEW", "conversationId": conversation.id, "datetimeISO": "2024-05-13T10:00:00"},
            channel=channel,
        )

        assert results[0].ok is True
        db.refresh(conversation)
        assert conversation.interview_day == "lunes"
        assert conversation.interview_time == "10:00"
        assert conversation.interview_status == "PENDING_CONFIRMATION"

    def test_schedule_interview_invalid_datetime(self, db, conversation, channel):
        _, results = _execute(
            db,
            conversation,
            {"command": "SCHEDULE_INTERVIEW", "conversationId": conversation.id, "datetimeISO": "el lunes"},
            channel=channel,
        )

        assert results[0].ok is False
        assert results[0].details["code"] == "invalid_datetime"

    @patch("agent_os.services.agent.executor.send_admin_notification")
    def test_notify_admin(self, mock_notify, db, workspace, conversation, channel):
        mock_notify.return_value = {"delivered": True, "summary": "Revisar"}

        _, results = _execute(
            db,
            conversation,
            {"command": "NOTIFY_ADMIN", "workspaceId": workspace.id, "eventType": "HOT_LEAD", "text": "Revisar"},
            channel=channel,
        )

        assert results[0].details == {"delivered": True, "summary": "Revisar"}
        assert mock_notify.call_args[1]["conversation_id"] == conversation.id
        assert mock_notify.call_args[1]["contact_name"] == "Juan"

    def test_run_tool_is_a_no_op(self, db, conversation, channel):
        _, results = _execute(db, conversation, {"command": "RUN_TOOL", "toolName": "validate_rut"}, channel=channel)
        assert results[0].details == {"toolName": "validate_rut", "skipped": True}


class TestBatchExecution:
    def test_batch_spanning_conversations_rejected(self, db, conversation, channel):
        run = _planned_run(db, conversation)
        response = _response(
            {"command": "SET_CONVERSATION_STATUS", "conversationId": conversation.id, "status": "CLOSED"},
            {"command": "SET_CONVERSATION_STATUS", "conversationId": "other-conv", "status": "CLOSED"},
        )

        with pytest.raises(MultiConversationBatchError):
            execute_agent_response(db, run.id, response, channel=channel)

        db.refresh(run)
        db.refresh(conversation)
        assert run.status == "ERROR"
        assert conversation.status == "OPEN"

    def test_failing_command_does_not_stop_the_batch(self, db, conversation, channel):
        with patch("agent_os.services.agent.executor.attempt_schedule_interview", side_effect=RuntimeError("boom")):
            _, results = _execute(
                db,
                conversation,
                {"command": "SCHEDULE_INTERVIEW", "conversationId": conversation.id, "day": "lunes", "time": "10:00"},
                {"command": "SET_CONVERSATION_STATUS", "conversationId": conversation.id, "status": "CLOSED"},
                channel=channel,
            )

        assert results[0].ok is False
        assert results[0].details["error"] == "boom"
        assert results[1].ok is True
        db.refresh(conversation)
        assert conversation.status == "CLOSED"

    def test_executed_run_is_not_replayed(self, db, conversation, channel):
        run, _ = _execute(db, conversation, {"command": "RUN_TOOL", "toolName": "x"}, channel=channel)

        with pytest.raises(InvalidTransitionError):
            execute_agent_response(db, run.id, _response({"command": "RUN_TOOL", "toolName": "x"}), channel=channel)

        assert db.query(AgentRun).filter(AgentRun.id == run.id).one().status == "EXECUTED"
