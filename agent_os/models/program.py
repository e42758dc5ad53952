from sqlalchemy import TIMESTAMP, Boolean, Column, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from agent_os.database import Base, new_id


class Program(Base):
    """Policy/prompt bundle that governs the agent for a conversation."""

    __tablename__ = "programs"

    id = Column(String(36), primary_key=True, default=new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    name = Column(Text, nullable=False)
    slug = Column(Text, nullable=False)
    description = Column(Text)
    agent_system_prompt = Column(Text)
    agent_model = Column(Text)
    is_active = Column(Boolean, default=True)
    created_at = Column(TIMESTAMP(timezone=True))

    workspace = relationship("Workspace", back_populates="programs")
