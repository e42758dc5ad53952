from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from agent_os.config import settings
from agent_os.models import Contact, Message


class WindowStatus(str, Enum):
    IN_WINDOW = "IN_WINDOW"
    OUT_OF_WINDOW = "OUT_OF_WINDOW"


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def window_status_for(last_inbound_at: Optional[datetime], now: Optional[datetime] = None) -> WindowStatus:
    # No inbound message ever recorded is treated as open.
    if last_inbound_at is None:
        return WindowStatus.IN_WINDOW
    now = now or datetime.now(timezone.utc)
    if as_utc(now) - as_utc(last_inbound_at) <= timedelta(hours=settings.window_hours):
        return WindowStatus.IN_WINDOW
    return WindowStatus.OUT_OF_WINDOW


def get_last_inbound_at(db: Session, conversation_id: str) -> Optional[datetime]:
    last_inbound = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id, Message.direction == "INBOUND")
        .order_by(Message.timestamp.desc())
        .first()
    )
    return last_inbound.timestamp if last_inbound else None


def compute_window_status(db: Session, conversation_id: str, now: Optional[datetime] = None) -> WindowStatus:
    """Session window state from the most recent inbound message."""
    return window_status_for(get_last_inbound_at(db, conversation_id), now=now)


def is_opted_out(contact: Optional[Contact]) -> bool:
    return bool(contact and contact.no_contact)
