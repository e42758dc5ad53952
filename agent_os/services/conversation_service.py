from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from agent_os.models import Contact, Conversation


def get_conversation(db: Session, conversation_id: str) -> Optional[Conversation]:
    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def get_contact(db: Session, contact_id: str) -> Optional[Contact]:
    return db.query(Contact).filter(Contact.id == contact_id).first()


def touch_conversation(db: Session, conversation: Conversation) -> Conversation:
    """Bump updated_at after any mutation or outbound message."""
    conversation.updated_at = datetime.now(timezone.utc)
    db.flush()
    return conversation


def contact_display_name(contact: Optional[Contact]) -> Optional[str]:
    if not contact:
        return None
    return contact.candidate_name_manual or contact.candidate_name or contact.display_name
