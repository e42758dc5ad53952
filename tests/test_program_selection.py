from agent_os.models import AgentRun, AutomationRun, OutboundMessageLog, PhoneLine, Program
from agent_os.services.automation_service import run_automations
from agent_os.services.program_selection import build_program_menu, resolve_program_choice


def _programs():
    return [
        Program(id="p1", name="Conductores", slug="conductores"),
        Program(id="p2", name="Guardias de Seguridad", slug="guardias"),
        Program(id="p3", name="Bodega Norte", slug="bodega-norte"),
    ]


class TestResolveProgramChoice:
    def test_number(self):
        assert resolve_program_choice("2", _programs()).id == "p2"
        assert resolve_program_choice(" 3) bodega", _programs()).id == "p3"

    def test_number_out_of_range(self):
        assert resolve_program_choice("9", _programs()) is None

    def test_slug_or_name(self):
        assert resolve_program_choice("me interesa bodega norte", _programs()).id == "p3"
        assert resolve_program_choice("Guardias de seguridad por favor", _programs()).id == "p2"

    def test_ambiguous_or_empty(self):
        programs = _programs() + [Program(id="p4", name="Conductores Sur", slug="conductores-sur")]
        assert resolve_program_choice("conductores sur", programs) is None
        assert resolve_program_choice("hola", programs) is None
        assert resolve_program_choice(None, programs) is None

    def test_menu(self):
        assert build_program_menu(_programs()) == (
            "¿Sobre qué programa necesitas ayuda?\nResponde con el número:\n"
            "1) Conductores\n2) Guardias de Seguridad\n3) Bodega Norte"
        )


class TestProgramSelectionFlow:
    def test_menu_sent_and_rules_halted(self, db, workspace, conversation, make_program, channel):
        for name, slug in (("Conductores", "conductores"), ("Guardias", "guardias"), ("Bodega", "bodega")):
            make_program(name, slug)

        summary = run_automations(
            db, workspace.id, "INBOUND_MESSAGE", conversation.id, inbound_text="Hola", channel=channel
        )

        assert summary.halted is True
        assert summary.program_selection["menuSent"] is True
        db.refresh(conversation)
        assert conversation.program_id is None
        assert conversation.stage is None
        sent = channel.send_text.call_args[0][1]
        assert sent.startswith("¿Sobre qué programa necesitas ayuda?")
        assert "2) Guardias" in sent
        run = db.query(AgentRun).one()
        assert run.event_type == "PROGRAM_SELECTION"
        assert run.status == "EXECUTED"
        assert db.query(AutomationRun).count() == 0

    def test_menu_not_resent_immediately(self, db, workspace, conversation, make_program, channel):
        make_program("Conductores", "conductores")
        make_program("Guardias", "guardias")

        run_automations(db, workspace.id, "INBOUND_MESSAGE", conversation.id, inbound_text="Hola", channel=channel)
        summary = run_automations(db, workspace.id, "INBOUND_MESSAGE", conversation.id, inbound_text="?", channel=channel)

        assert summary.halted is True
        assert channel.send_text.call_count == 1
        reasons = [log.blocked_reason for log in db.query(OutboundMessageLog).all()]
        assert "DUPLICATE_INTENT" in reasons

    def test_numeric_reply_assigns(self, db, workspace, conversation, make_program, channel):
        make_program("Conductores", "conductores")
        second = make_program("Guardias", "guardias")

        summary = run_automations(db, workspace.id, "INBOUND_MESSAGE", conversation.id, inbound_text="2", channel=channel)

        assert summary.halted is False
        db.refresh(conversation)
        assert conversation.program_id == second.id
        channel.send_text.assert_not_called()

    def test_single_program_assigned(self, db, workspace, conversation, make_program, channel):
        only = make_program("Conductores", "conductores")

        run_automations(db, workspace.id, "INBOUND_MESSAGE", conversation.id, inbound_text="Hola", channel=channel)

        db.refresh(conversation)
        assert conversation.program_id == only.id

    def test_phone_line_default(self, db, workspace, conversation, make_program, channel):
        make_program("Conductores", "conductores")
        default = make_program("Guardias", "guardias")
        line = PhoneLine(workspace_id=workspace.id, wa_phone_number_id="pn-1", default_program_id=default.id)
        db.add(line)
        db.commit()
        conversation.phone_line_id = line.id
        db.commit()

        summary = run_automations(db, workspace.id, "INBOUND_MESSAGE", conversation.id, inbound_text="Hola", channel=channel)

        assert summary.program_selection["reason"] == "phone_line_default"
        db.refresh(conversation)
        assert conversation.program_id == default.id

    def test_other_events_skip_selection(self, db, workspace, conversation, make_program, channel):
        make_program("Conductores", "conductores")
        make_program("Guardias", "guardias")

        summary = run_automations(db, workspace.id, "INACTIVITY", conversation.id, channel=channel)

        assert summary.halted is False
        channel.send_text.assert_not_called()
