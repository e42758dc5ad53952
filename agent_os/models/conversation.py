from sqlalchemy import TIMESTAMP, Column, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from agent_os.database import Base, new_id


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    contact_id = Column(String(36), ForeignKey("contacts.id"), nullable=False)
    phone_line_id = Column(String(36), ForeignKey("phone_lines.id"))
    program_id = Column(String(36), ForeignKey("programs.id"))
    assigned_to_id = Column(String(36), ForeignKey("users.id"))
    channel = Column(Text, nullable=False, default="WHATSAPP")
    status = Column(Text, nullable=False, default="NEW")  # NEW, OPEN, CLOSED
    stage = Column(Text)
    stage_reason = Column(Text)
    stage_changed_at = Column(TIMESTAMP(timezone=True))

    interview_day = Column(Text)
    interview_time = Column(Text)
    interview_location = Column(Text)
    interview_status = Column(Text)  # PENDING_CONFIRMATION, SCHEDULED

    created_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True))

    contact = relationship("Contact", back_populates="conversations")
    program = relationship("Program")
    messages = relationship("Message", back_populates="conversation")
