"""Best-effort salvage of near-miss agent answers, applied before validation.

Every helper returns a new object and never raises. Extraction helpers return
``NOT_FOUND`` when nothing usable exists so the caller can try the next source.
"""

import math
import re
from typing import Any, Callable, Iterable, Optional

NOT_FOUND = object()

PATCH_KEYS = (
    "candidateName",
    "email",
    "rut",
    "comuna",
    "ciudad",
    "region",
    "experienceYears",
    "terrainExperience",
    "availabilityText",
)
SEND_TEXT_KEYS = ("text", "message", "content", "body", "reply", "value")
TEMPLATE_NAME_KEYS = ("templateName", "template", "name")
TEMPLATE_VARS_KEYS = ("templateVars", "templateVariables", "variables", "vars")

_TRUE_WORDS = {"si", "sí", "s", "true", "yes", "y", "1"}
_FALSE_WORDS = {"no", "false", "0"}
_LEADING_INT = re.compile(r"^\s*(-?\d+)")


def normalize_string(value: Any) -> Any:
    if value is None:
        return None
    if not isinstance(value, str):
        return NOT_FOUND
    trimmed = value.strip()
    return trimmed or NOT_FOUND


def normalize_int(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, bool):
        return NOT_FOUND
    if isinstance(value, (int, float)):
        return math.floor(value) if math.isfinite(value) else NOT_FOUND
    if isinstance(value, str):
        match = _LEADING_INT.match(value)
        return int(match.group(1)) if match else NOT_FOUND
    return NOT_FOUND


def normalize_bool(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value == 1:
            return True
        if value == 0:
            return False
        return NOT_FOUND
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    return NOT_FOUND


PATCH_COERCERS: dict[str, Callable[[Any], Any]] = {
    "candidateName": normalize_string,
    "email": normalize_string,
    "rut": normalize_string,
    "comuna": normalize_string,
    "ciudad": normalize_string,
    "region": normalize_string,
    "experienceYears": normalize_int,
    "terrainExperience": normalize_bool,
    "availabilityText": normalize_string,
}


def _dicts(candidates: Iterable[Any]) -> list[dict]:
    return [c for c in candidates if isinstance(c, dict)]


def find_first(sources: Iterable[dict], keys: Iterable[str], coerce: Callable[[Any], Any]) -> Any:
    """First usable value for any of ``keys`` scanning sources in priority order."""
    keys = tuple(keys)
    for source in sources:
        for key in keys:
            if key not in source:
                continue
            value = coerce(source[key])
            if value is not NOT_FOUND:
                return value
    return NOT_FOUND


def build_profile_patch(sources: Iterable[dict]) -> dict:
    sources = list(sources)
    patch = {}
    for key, coerce in PATCH_COERCERS.items():
        value = find_first(sources, (key,), coerce)
        if value is not NOT_FOUND:
            patch[key] = value
    return patch


def _non_empty_text(value: Any) -> Any:
    value = normalize_string(value)
    return NOT_FOUND if value is None else value


def _template_vars(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): "" if v is None else str(v) for k, v in value.items()}
    if isinstance(value, list):
        return {str(idx + 1): "" if v is None else str(v) for idx, v in enumerate(value)}
    return NOT_FOUND


def repair_upsert_profile_fields(command: dict) -> dict:
    repaired = dict(command)
    patch = command.get("patch")
    if isinstance(patch, dict):
        # blank strings mean "not provided"; only an explicit null clears a field
        coerced = dict(patch)
        for key, coerce in PATCH_COERCERS.items():
            if key not in patch:
                continue
            if isinstance(patch[key], str) and not patch[key].strip():
                coerced.pop(key)
                continue
            value = coerce(patch[key])
            if value is not NOT_FOUND:
                coerced[key] = value
        repaired["patch"] = coerced
    else:
        sources = _dicts(
            [
                command.get("parameters"),
                command.get("fields"),
                command.get("profile"),
                command.get("data"),
                command,
            ]
        )
        rebuilt = build_profile_patch(sources)
        if rebuilt:
            repaired["patch"] = rebuilt

    if "confidenceByField" not in command and isinstance(command.get("confidence"), dict):
        repaired["confidenceByField"] = command["confidence"]
    return repaired


def _send_sources(command: dict) -> list[dict]:
    payload = command.get("payload")
    nested = payload.get("message") if isinstance(payload, dict) else None
    return _dicts(
        [
            command,
            command.get("parameters"),
            payload,
            command.get("message"),
            command.get("data"),
            command.get("content"),
            command.get("body"),
            nested,
        ]
    )


def _has_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def repair_send_message(command: dict) -> dict:
    repaired = dict(command)
    sources = _send_sources(command)

    if not _has_text(command.get("text")):
        text = find_first(sources, SEND_TEXT_KEYS, _non_empty_text)
        if text is not NOT_FOUND:
            repaired["text"] = text

    if not _has_text(command.get("templateName")):
        name = find_first(sources, TEMPLATE_NAME_KEYS, _non_empty_text)
        if name is not NOT_FOUND:
            repaired["templateName"] = name

    if not isinstance(command.get("templateVars"), dict):
        variables = find_first(sources, TEMPLATE_VARS_KEYS, _template_vars)
        if variables is not NOT_FOUND:
            repaired["templateVars"] = variables

    msg_type = str(repaired.get("type") or "").upper()
    has_text = _has_text(repaired.get("text"))
    has_template = _has_text(repaired.get("templateName"))
    if "TEMPLATE" in msg_type and not has_template and has_text:
        repaired["type"] = "SESSION_TEXT"
    elif ("TEXT" in msg_type or "SESSION" in msg_type) and not has_text and has_template:
        repaired["type"] = "TEMPLATE"
    return repaired


COMMAND_REPAIRS: dict[str, Callable[[dict], dict]] = {
    "UPSERT_PROFILE_FIELDS": repair_upsert_profile_fields,
    "SEND_MESSAGE": repair_send_message,
}


def repair_command(command: Any) -> Any:
    if not isinstance(command, dict):
        return command
    repair = COMMAND_REPAIRS.get(str(command.get("command") or "").upper())
    return repair(command) if repair else command


def repair_agent_response(data: Optional[Any]) -> Any:
    if not isinstance(data, dict) or not isinstance(data.get("commands"), list):
        return data
    repaired = dict(data)
    repaired["commands"] = [repair_command(command) for command in data["commands"]]
    return repaired
