from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from agent_os.logging_config import get_logger
from agent_os.models import Conversation
from agent_os.services.result import Result

logger = get_logger("interview_service")

WEEKDAYS_ES = ("lunes", "martes", "miércoles", "jueves", "viernes", "sábado", "domingo")


def slot_from_iso(datetime_iso: str) -> tuple[str, str]:
    moment = datetime.fromisoformat(datetime_iso.replace("Z", "+00:00"))
    return WEEKDAYS_ES[moment.weekday()], moment.strftime("%H:%M")


def attempt_schedule_interview(
    db: Session,
    conversation: Conversation,
    day: Optional[str] = None,
    time: Optional[str] = None,
    datetime_iso: Optional[str] = None,
    location_text: Optional[str] = None,
    requires_confirmation: bool = True,
) -> Result[dict]:
    """Record the requested interview slot on the conversation."""
    if datetime_iso:
        try:
            day, time = slot_from_iso(datetime_iso)
        except ValueError:
            return Result.failure(f"Invalid datetimeISO: {datetime_iso}", "invalid_datetime")
    if not day or not time:
        return Result.failure("Interview day and time are required", "missing_slot")

    conversation.interview_day = day
    conversation.interview_time = time
    if location_text:
        conversation.interview_location = location_text
    conversation.interview_status = "PENDING_CONFIRMATION" if requires_confirmation else "SCHEDULED"
    db.flush()

    logger.info(f"Interview requested: conversation={conversation.id}, day={day}, time={time}")
    return Result.success(
        {
            "day": day,
            "time": time,
            "location": conversation.interview_location,
            "status": conversation.interview_status,
        }
    )
