from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from agent_os.database import get_db
from agent_os.logging_config import get_logger
from agent_os.schemas.event import EventRequest, EventResponse
from agent_os.services.agent.executor import TransportMode
from agent_os.services.agent.runtime import ConversationNotFoundError
from agent_os.services.automation_service import run_automations

logger = get_logger("events_router")

router = APIRouter()


@router.post("/events", response_model=EventResponse)
def handle_event(request: EventRequest, db: Session = Depends(get_db)):
    """Run the automation engine for one externally delivered event."""
    try:
        summary = run_automations(
            db,
            workspace_id=request.workspace_id,
            event_type=request.event_type,
            conversation_id=request.conversation_id,
            inbound_message_id=request.inbound_message_id,
            inbound_text=request.inbound_text,
            transport_mode=TransportMode(request.transport_mode),
        )
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return EventResponse(
        success=True,
        halted=summary.halted,
        matched_rules=summary.matched_rules,
        runs=summary.runs,
        program_selection=summary.program_selection,
    )
