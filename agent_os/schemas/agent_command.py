"""Wire contract for the agent's answer: AgentResponse and the ten AgentCommand shapes."""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from pydantic.alias_generators import to_camel

COMMAND_TAGS = (
    "UPSERT_PROFILE_FIELDS",
    "SET_CONVERSATION_STATUS",
    "SET_CONVERSATION_STAGE",
    "SET_CONVERSATION_PROGRAM",
    "ADD_CONVERSATION_NOTE",
    "SET_NO_CONTACTAR",
    "SCHEDULE_INTERVIEW",
    "SEND_MESSAGE",
    "NOTIFY_ADMIN",
    "RUN_TOOL",
)

PROFILE_PATCH_KEYS = (
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

NonEmptyStr = Annotated[str, Field(min_length=1)]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_unset=True)


class ProfilePatch(WireModel):
    """Partial profile update. An explicit null clears the field."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    candidate_name: Optional[NonEmptyStr] = None
    email: Optional[NonEmptyStr] = None
    rut: Optional[NonEmptyStr] = None
    comuna: Optional[NonEmptyStr] = None
    ciudad: Optional[NonEmptyStr] = None
    region: Optional[NonEmptyStr] = None
    experience_years: Optional[int] = Field(default=None, ge=0, le=80)
    terrain_experience: Optional[bool] = None
    availability_text: Optional[NonEmptyStr] = None

    def provided_fields(self) -> dict:
        """Fields the model actually sent, explicit nulls included, keyed by attribute name."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class UpsertProfileFields(WireModel):
    command: Literal["UPSERT_PROFILE_FIELDS"]
    contact_id: NonEmptyStr
    patch: ProfilePatch
    confidence_by_field: Optional[Dict[str, float]] = None
    source_message_id: Optional[str] = None

    @model_validator(mode="after")
    def _confidence_in_range(self):
        for key, value in (self.confidence_by_field or {}).items():
            if value < 0 or value > 1:
                raise ValueError(f"confidenceByField.{key} must be between 0 and 1")
        return self


class SetConversationStatus(WireModel):
    command: Literal["SET_CONVERSATION_STATUS"]
    conversation_id: NonEmptyStr
    status: Literal["NEW", "OPEN", "CLOSED"]
    reason: Optional[str] = None


class SetConversationStage(WireModel):
    command: Literal["SET_CONVERSATION_STAGE"]
    conversation_id: NonEmptyStr
    stage: NonEmptyStr
    reason: Optional[str] = None


class SetConversationProgram(WireModel):
    command: Literal["SET_CONVERSATION_PROGRAM"]
    conversation_id: NonEmptyStr
    program_id: NonEmptyStr
    reason: Optional[str] = None


class AddConversationNote(WireModel):
    command: Literal["ADD_CONVERSATION_NOTE"]
    conversation_id: NonEmptyStr
    note: NonEmptyStr
    visibility: Literal["SYSTEM", "ADMIN"] = "SYSTEM"


class SetNoContactar(WireModel):
    command: Literal["SET_NO_CONTACTAR"]
    contact_id: NonEmptyStr
    value: bool
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _reason_required_when_on(self):
        if self.value and not (self.reason or "").strip():
            raise ValueError("reason is required when value is true")
        return self


class ScheduleInterview(WireModel):
    command: Literal["SCHEDULE_INTERVIEW"]
    conversation_id: NonEmptyStr
    datetime_iso: Optional[str] = Field(default=None, alias="datetimeISO")
    day: Optional[str] = None
    time: Optional[str] = None
    location_text: Optional[str] = None
    requires_confirmation: bool = True

    @model_validator(mode="after")
    def _needs_a_slot(self):
        if not self.datetime_iso and not (self.day and self.time):
            raise ValueError("datetimeISO or day and time are required")
        return self


class SendMessage(WireModel):
    command: Literal["SEND_MESSAGE"]
    conversation_id: NonEmptyStr
    channel: Literal["WHATSAPP"]
    type: Literal["SESSION_TEXT", "TEMPLATE"]
    text: Optional[str] = None
    template_name: Optional[str] = None
    template_vars: Optional[Dict[str, str]] = None
    dedupe_key: NonEmptyStr


class NotifyAdmin(WireModel):
    command: Literal["NOTIFY_ADMIN"]
    workspace_id: NonEmptyStr
    event_type: NonEmptyStr
    severity: Literal["INFO", "WARN", "ERROR"] = "INFO"
    text: NonEmptyStr
    conversation_id: Optional[str] = None


class RunTool(WireModel):
    command: Literal["RUN_TOOL"]
    tool_name: NonEmptyStr
    args: Optional[Dict[str, Any]] = None


AgentCommand = Annotated[
    Union[
        UpsertProfileFields,
        SetConversationStatus,
        SetConversationStage,
        SetConversationProgram,
        AddConversationNote,
        SetNoContactar,
        ScheduleInterview,
        SendMessage,
        NotifyAdmin,
        RunTool,
    ],
    Field(discriminator="command"),
]


class AgentResponse(WireModel):
    agent: NonEmptyStr
    version: int = Field(ge=1)
    commands: List[AgentCommand]
    notes: Optional[str] = None


_response_adapter = TypeAdapter(AgentResponse)


def issues_from_validation_error(exc: ValidationError) -> list[dict]:
    return [{"path": list(err["loc"]), "message": err["msg"]} for err in exc.errors()]


def validate_agent_response(data: Any) -> tuple[Optional[AgentResponse], list[dict]]:
    """Parse an already-normalized answer. Returns (response, []) or (None, issues)."""
    if not isinstance(data, dict):
        return None, [{"path": [], "message": "Expected a JSON object"}]
    try:
        return _response_adapter.validate_python(data), []
    except ValidationError as exc:
        return None, issues_from_validation_error(exc)
