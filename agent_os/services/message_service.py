from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from agent_os.models import Message


def save_message(
    db: Session,
    conversation_id: str,
    direction: str,
    text: Optional[str],
    message_metadata: Optional[dict] = None,
    wa_message_id: Optional[str] = None,
    transcript_text: Optional[str] = None,
    media_type: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> Message:
    """Append one turn. Messages are never updated afterwards."""
    message = Message(
        conversation_id=conversation_id,
        direction=direction,
        text=text,
        transcript_text=transcript_text,
        media_type=media_type,
        wa_message_id=wa_message_id,
        message_metadata=message_metadata or {},
        timestamp=timestamp or datetime.now(timezone.utc),
    )
    db.add(message)
    db.flush()
    return message


def get_recent_messages(db: Session, conversation_id: str, limit: int = 25) -> List[Message]:
    """Most recent messages in chronological order."""
    messages = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.timestamp.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(messages))


def message_text(message: Message) -> str:
    return message.transcript_text or message.text or ""
