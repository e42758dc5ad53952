"""Read-only tools the agent may call while planning, plus the text helpers they share."""

import hashlib
import re
import unicodedata
from typing import Any, Optional

from sqlalchemy.orm import Session

from agent_os.logging_config import get_logger
from agent_os.models import Program
from agent_os.services.result import Result
from agent_os.services.window_service import compute_window_status

logger = get_logger("agent.tools")

RM_COMMUNES = (
    "Puente Alto",
    "Ñuñoa",
    "Providencia",
    "Santiago",
    "Las Condes",
    "La Florida",
    "Maipú",
    "Pudahuel",
    "Estación Central",
    "Quilicura",
    "Renca",
    "Peñalolén",
    "San Miguel",
    "La Reina",
    "Independencia",
    "Cerrillos",
    "Conchalí",
    "Quinta Normal",
    "Macul",
    "Recoleta",
    "San Joaquín",
    "Vitacura",
    "Lo Barnechea",
    "La Cisterna",
    "San Bernardo",
)
RM_REGION = "Región Metropolitana"

_NON_TEXT = re.compile(r"[^\w\s/.,:-]")
_SPACES = re.compile(r"\s+")
_RM_PATTERN = re.compile(r"\b(region metropolitana|metropolitana|rm)\b")

_EMAIL = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")
_RUT = re.compile(r"\b\d{1,2}\.?\d{3}\.?\d{3}-?[\dkK]\b")
_PHONE = re.compile(r"\+?\d[\d\s-]{7,}\d")


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_text(value: Optional[str]) -> str:
    """Lowercase, accent-free, emoji-free text with single spaces."""
    text = strip_accents(value or "")
    text = _NON_TEXT.sub(" ", text).lower()
    return _SPACES.sub(" ", text).strip()


def stable_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def resolve_location(text: str, country: str = "CL") -> dict:
    normalized = normalize_text(text)
    comuna = None
    for candidate in RM_COMMUNES:
        if re.search(rf"\b{re.escape(normalize_text(candidate))}\b", normalized):
            comuna = candidate
            break

    region = RM_REGION if (comuna or _RM_PATTERN.search(normalized)) else None
    ciudad = "Santiago" if re.search(r"\bsantiago\b", normalized) or (comuna and region == RM_REGION) else None

    if comuna:
        confidence = 0.9
    elif ciudad:
        confidence = 0.7
    elif region:
        confidence = 0.5
    else:
        confidence = 0.0

    return {
        "comuna": comuna,
        "ciudad": ciudad,
        "region": region,
        "country": country,
        "confidence": confidence,
        "normalized": normalized,
    }


def normalize_rut(value: str) -> Optional[str]:
    cleaned = re.sub(r"[.\-\s]", "", value or "").upper()
    match = re.fullmatch(r"(\d{7,8})([\dK])", cleaned)
    if not match:
        return None
    return f"{match.group(1)}-{match.group(2)}"


def rut_check_digit(body: str) -> str:
    total = 0
    multiplier = 2
    for digit in reversed(body):
        total += int(digit) * multiplier
        multiplier = 2 if multiplier == 7 else multiplier + 1
    remainder = 11 - (total % 11)
    if remainder == 11:
        return "0"
    if remainder == 10:
        return "K"
    return str(remainder)


def validate_rut(value: str) -> dict:
    normalized = normalize_rut(value)
    if not normalized:
        return {"valid": False, "normalized": None}
    body, dv = normalized.split("-")
    return {"valid": rut_check_digit(body) == dv, "normalized": normalized}


def pii_sanitize_text(text: str) -> str:
    sanitized = _EMAIL.sub("[email]", text or "")
    sanitized = _RUT.sub("[rut]", sanitized)
    return _PHONE.sub("[phone]", sanitized)


def list_available_programs(db: Session, workspace_id: str) -> list[Program]:
    return (
        db.query(Program)
        .filter(Program.workspace_id == workspace_id, Program.is_active.is_(True))
        .order_by(Program.created_at.asc(), Program.name.asc())
        .all()
    )


def _string_param(description: str) -> dict:
    return {"type": "string", "description": description}


def _declare(name: str, description: str, properties: dict, required: list[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


SCOPED_ARGS = ("workspaceId", "conversationId")

TOOL_DECLARATIONS = [
    _declare("normalize_text", "Normalize free text (accents, emoji, case).", {"text": _string_param("Raw text")}, ["text"]),
    _declare(
        "resolve_location",
        "Resolve a fuzzy Chilean location into comuna/ciudad/region with a confidence.",
        {"text": _string_param("Location as written by the user"), "country": _string_param("ISO country, default CL")},
        ["text"],
    ),
    _declare("validate_rut", "Validate a Chilean RUT check digit.", {"rut": _string_param("RUT in any format")}, ["rut"]),
    _declare("pii_sanitize", "Mask emails, phones and RUTs in text.", {"text": _string_param("Text to mask")}, ["text"]),
    _declare(
        "get_whatsapp_window_status",
        "Current 24h session window status of a conversation.",
        {"conversationId": _string_param("Conversation id")},
        ["conversationId"],
    ),
    _declare(
        "get_available_programs",
        "List active programs of the workspace.",
        {"workspaceId": _string_param("Workspace id")},
        ["workspaceId"],
    ),
]


def run_tool(db: Session, name: str, args: dict[str, Any], defaults: Optional[dict] = None) -> Result[Any]:
    """Run one read-only tool. Failures come back as Result.failure, never raised.

    ``defaults`` carries the run's scope: a model argument naming a different
    workspace or conversation is refused.
    """
    defaults = defaults or {}
    args = args or {}
    for key in SCOPED_ARGS:
        if defaults.get(key) and args.get(key) and str(args[key]) != str(defaults[key]):
            logger.warning(f"Tool {name} refused out-of-scope {key}={args[key]}")
            return Result.failure(f"{key} is outside the current run", "forbidden")
    args = {**args, **{k: v for k, v in defaults.items() if v}}
    try:
        if name == "normalize_text":
            return Result.success({"normalized": normalize_text(str(args.get("text") or ""))})
        if name == "resolve_location":
            return Result.success(resolve_location(str(args.get("text") or ""), str(args.get("country") or "CL")))
        if name == "validate_rut":
            return Result.success(validate_rut(str(args.get("rut") or "")))
        if name == "pii_sanitize":
            return Result.success({"sanitized": pii_sanitize_text(str(args.get("text") or ""))})
        if name == "get_whatsapp_window_status":
            conversation_id = args.get("conversationId")
            if not conversation_id:
                return Result.failure("conversationId is required", "missing_argument")
            return Result.success({"status": compute_window_status(db, str(conversation_id)).value})
        if name == "get_available_programs":
            workspace_id = args.get("workspaceId")
            if not workspace_id:
                return Result.failure("workspaceId is required", "missing_argument")
            programs = list_available_programs(db, str(workspace_id))
            return Result.success(
                [{"id": p.id, "name": p.name, "slug": p.slug, "description": p.description} for p in programs]
            )
        return Result.failure(f"Unknown tool: {name}", "unknown_tool")
    except Exception as e:
        logger.warning(f"Tool {name} failed: {e}")
        return Result.failure(str(e), "tool_error")
