"""Narrow keyword checks used by the executor: which profile field a reply asks
for, loop-breaker questions, and names that are obviously not names."""

import re
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from agent_os.models import Contact, ConversationAskedField
from agent_os.services.agent.tools import normalize_text, stable_hash

LOOP_BREAKER_THRESHOLD = 2

_FIELD_PATTERNS = (
    ("candidateName", re.compile(r"\b(nombre|apellido)\b")),
    ("location", re.compile(r"\b(comuna|ciudad)\b")),
    ("rut", re.compile(r"\brut\b")),
    ("email", re.compile(r"\b(email|correo)\b")),
    ("experience", re.compile(r"\bexperienc\w*")),
    ("availability", re.compile(r"\bdisponib\w*")),
)

SUSPICIOUS_NAME_FRAGMENTS = (
    "hola",
    "buenas",
    "postular",
    "mas informacion",
    "mas info",
    "informacion",
    "info",
    "confirmo",
    "gracias",
    "tengo disponibilidad",
    "disponibilidad inmediata",
    "cancelar",
    "reagendar",
    "cambiar hora",
    "tengo cv",
    "adjunto cv",
    "curriculum",
    "cv",
    "pdf",
    "word",
    "docx",
)
_TIME_OF_DAY = re.compile(r"\b\d{1,2}:\d{2}\b")


def detect_asked_fields(text: Optional[str]) -> List[str]:
    normalized = normalize_text(text)
    return [field for field, pattern in _FIELD_PATTERNS if pattern.search(normalized)]


def is_suspicious_candidate_name(value: Optional[str]) -> bool:
    normalized = normalize_text(value)
    if not normalized:
        return True
    if _TIME_OF_DAY.search(normalized):
        return True
    return any(re.search(rf"\b{re.escape(fragment)}\b", normalized) for fragment in SUSPICIOUS_NAME_FRAGMENTS)


def _confirm(label: str, value) -> str:
    return f"Confirmación rápida: ¿{label} {value}? Responde sí o no (si es no, escríbelo de nuevo)."


def build_loop_breaker_question(field: str, contact: Optional[Contact]) -> str:
    """Closed confirmation when we already hold a value, open question otherwise."""
    name = (contact.candidate_name_manual or contact.candidate_name) if contact else None
    if field == "candidateName":
        return _confirm("Tu nombre es", name) if name else "Para avanzar necesito tu nombre y apellido en una sola línea."
    if field == "location":
        if contact and contact.comuna:
            return _confirm("Tu comuna es", contact.comuna)
        if contact and contact.ciudad:
            return _confirm("Tu ciudad es", contact.ciudad)
        return "Para avanzar necesito tu comuna y ciudad."
    if field == "rut":
        return _confirm("Tu RUT es", contact.rut) if contact and contact.rut else "Para avanzar necesito tu RUT (ej: 12.345.678-5)."
    if field == "email":
        return _confirm("Tu correo es", contact.email) if contact and contact.email else "¿Me indicas tu correo? Si no tienes, escribe \"no tengo\"."
    if field == "experience":
        if contact and contact.experience_years is not None:
            return _confirm("Tus años de experiencia son", contact.experience_years)
        return "¿Cuántos años de experiencia tienes y en qué rubros?"
    if field == "availability":
        if contact and contact.availability_text:
            return _confirm("Tu disponibilidad es", contact.availability_text)
        return "¿Qué días y horarios tienes disponibles?"
    return "¿Me confirmas ese dato, por favor?"


def load_asked_counts(db: Session, conversation_id: str) -> dict[str, int]:
    rows = db.query(ConversationAskedField).filter(ConversationAskedField.conversation_id == conversation_id).all()
    return {row.field: row.ask_count for row in rows}


def bump_asked_field(db: Session, conversation_id: str, field: str, text: str) -> ConversationAskedField:
    row = (
        db.query(ConversationAskedField)
        .filter(ConversationAskedField.conversation_id == conversation_id, ConversationAskedField.field == field)
        .first()
    )
    if not row:
        row = ConversationAskedField(conversation_id=conversation_id, field=field, ask_count=0)
        db.add(row)
    row.ask_count = (row.ask_count or 0) + 1
    row.last_asked_at = datetime.now(timezone.utc)
    row.last_asked_hash = stable_hash(text)
    db.flush()
    return row
