from typing import Any, Literal, Optional

from pydantic import BaseModel


class EventRequest(BaseModel):
    workspace_id: str
    conversation_id: str
    event_type: Literal["INBOUND_MESSAGE", "INACTIVITY", "STAGE_CHANGED", "PROFILE_UPDATED"]
    inbound_message_id: Optional[str] = None
    inbound_text: Optional[str] = None
    transport_mode: Literal["REAL", "NULL"] = "REAL"


class EventResponse(BaseModel):
    success: bool
    halted: bool = False
    matched_rules: list[str] = []
    runs: list[dict[str, Any]] = []
    program_selection: dict[str, Any] = {}
