from datetime import datetime, timezone

from agent_os.models import Program, Workspace
from agent_os.services.agent.tools import (
    TOOL_DECLARATIONS,
    normalize_rut,
    normalize_text,
    pii_sanitize_text,
    resolve_location,
    run_tool,
    validate_rut,
)


class TestNormalizeText:
    def test_strips_emoji_accents_and_case(self):
        assert normalize_text("✅ PUENTE ALTO") == "puente alto"
        assert normalize_text("  Ñuñoa   ") == "nunoa"

    def test_none_is_empty(self):
        assert normalize_text(None) == ""


class TestResolveLocation:
    def test_comuna_with_city(self):
        result = resolve_location("Santiago/Ñuñoa")
        assert result["comuna"] == "Ñuñoa"
        assert result["ciudad"] == "Santiago"
        assert result["region"] == "Región Metropolitana"
        assert result["confidence"] == 0.9

    def test_comuna_only_implies_santiago(self):
        result = resolve_location("vivo en maipu")
        assert result["comuna"] == "Maipú"
        assert result["ciudad"] == "Santiago"

    def test_region_only(self):
        result = resolve_location("Región Metropolitana")
        assert result["comuna"] is None
        assert result["region"] == "Región Metropolitana"
        assert result["confidence"] == 0.5

    def test_outside_known_list(self):
        result = resolve_location("Concón Valparaíso")
        assert result["comuna"] is None
        assert result["ciudad"] is None
        assert result["region"] is None
        assert result["confidence"] == 0.0


class TestRut:
    def test_valid_rut(self):
        assert validate_rut("12.345.678-5") == {"valid": True, "normalized": "12345678-5"}

    def test_wrong_check_digit(self):
        assert validate_rut("12.345.678-9")["valid"] is False

    def test_k_check_digit_normalized_upper(self):
        assert normalize_rut("10.000.013-k") == "10000013-K"

    def test_garbage(self):
        assert validate_rut("hola") == {"valid": False, "normalized": None}


class TestPiiSanitize:
    def test_masks_email_rut_and_phone(self):
        text = "Soy ana@mail.cl, rut 12.345.678-5, fono +56 9 1111 2222"
        sanitized = pii_sanitize_text(text)
        assert "[email]" in sanitized
        assert "[rut]" in sanitized
        assert "[phone]" in sanitized
        assert "ana@mail.cl" not in sanitized


class TestRunTool:
    def test_unknown_tool(self, db_session):
        result = run_tool(db_session, "delete_everything", {})
        assert result.ok is False
        assert result.error_code == "unknown_tool"

    def test_pure_tool(self, db_session):
        result = run_tool(db_session, "validate_rut", {"rut": "12345678-5"})
        assert result.ok is True
        assert result.value["valid"] is True

    def test_defaults_fill_missing_args(self, db, conversation, inbound_message):
        result = run_tool(db, "get_whatsapp_window_status", {}, {"conversationId": conversation.id})
        assert result.to_payload() == {"ok": True, "result": {"status": "IN_WINDOW"}}

    def test_missing_argument(self, db_session):
        result = run_tool(db_session, "get_available_programs", {})
        assert result.error_code == "missing_argument"

    def test_lists_programs(self, db, workspace, make_program):
        make_program("Conductores", "conductores")
        result = run_tool(db, "get_available_programs", {"workspaceId": workspace.id})
        assert [p["slug"] for p in result.value] == ["conductores"]

    def test_other_workspace_is_refused(self, db, workspace, make_program):
        make_program("Conductores", "conductores")
        other = Workspace(name="Otra Empresa", config={}, created_at=datetime.now(timezone.utc))
        db.add(other)
        db.flush()
        db.add(
            Program(
                workspace_id=other.id,
                name="Secreto",
                slug="secreto",
                agent_system_prompt="x",
                is_active=True,
                created_at=datetime.now(timezone.utc),
            )
        )
        db.commit()

        result = run_tool(db, "get_available_programs", {"workspaceId": other.id}, {"workspaceId": workspace.id})

        assert result.ok is False
        assert result.error_code == "forbidden"

    def test_other_conversation_is_refused(self, db_session):
        result = run_tool(
            db_session, "get_whatsapp_window_status", {"conversationId": "foreign"}, {"conversationId": "conv-1"}
        )
        assert result.error_code == "forbidden"
        db_session.query.assert_not_called()

    def test_matching_scope_is_allowed(self, db, workspace, make_program):
        make_program("Conductores", "conductores")
        result = run_tool(db, "get_available_programs", {"workspaceId": workspace.id}, {"workspaceId": workspace.id})
        assert [p["slug"] for p in result.value] == ["conductores"]

    def test_tool_exception_becomes_failure(self, db_session):
        db_session.query.side_effect = RuntimeError("db down")
        result = run_tool(db_session, "get_available_programs", {"workspaceId": "w1"})
        assert result.ok is False
        assert result.error_code == "tool_error"

    def test_every_declared_tool_is_runnable(self, db_session):
        for declaration in TOOL_DECLARATIONS:
            name = declaration["function"]["name"]
            assert run_tool(db_session, name, {}).error_code != "unknown_tool"
