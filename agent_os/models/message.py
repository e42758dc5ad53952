from sqlalchemy import TIMESTAMP, Column, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from agent_os.database import Base, JSONType, new_id


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=new_id)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False)
    direction = Column(Text, nullable=False)  # INBOUND, OUTBOUND
    text = Column(Text)
    transcript_text = Column(Text)
    media_type = Column(Text)
    wa_message_id = Column(Text)
    message_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    timestamp = Column(TIMESTAMP(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
