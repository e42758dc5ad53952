from sqlalchemy import TIMESTAMP, Column, ForeignKey, Index, Integer, String, Text, UniqueConstraint

from agent_os.database import Base, new_id


class OutboundMessageLog(Base):
    """One row per attempted send, blocked or not."""

    __tablename__ = "outbound_message_logs"
    __table_args__ = (Index("ix_outbound_logs_conversation_created", "conversation_id", "created_at"),)

    id = Column(String(36), primary_key=True, default=new_id)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False)
    agent_run_id = Column(String(36), ForeignKey("agent_runs.id"))
    channel = Column(Text, nullable=False, default="WHATSAPP")
    type = Column(Text, nullable=False)  # SESSION_TEXT, TEMPLATE
    template_name = Column(Text)
    dedupe_key = Column(Text, nullable=False)
    text_hash = Column(Text, nullable=False)
    blocked_reason = Column(Text)
    wa_message_id = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)


class ConversationAskedField(Base):
    """How many times the agent asked for a profile field in a conversation."""

    __tablename__ = "conversation_asked_fields"
    __table_args__ = (UniqueConstraint("conversation_id", "field", name="uq_asked_field"),)

    id = Column(String(36), primary_key=True, default=new_id)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False)
    field = Column(Text, nullable=False)
    ask_count = Column(Integer, nullable=False, default=0)
    last_asked_at = Column(TIMESTAMP(timezone=True))
    last_asked_hash = Column(Text)
