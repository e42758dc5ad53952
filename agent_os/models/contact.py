from sqlalchemy import TIMESTAMP, Boolean, Column, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from agent_os.database import Base, new_id


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(String(36), primary_key=True, default=new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    wa_id = Column(Text)
    phone = Column(Text)
    display_name = Column(Text)

    candidate_name = Column(Text)
    candidate_name_manual = Column(Text)  # operator-entered, always wins
    email = Column(Text)
    rut = Column(Text)
    comuna = Column(Text)
    ciudad = Column(Text)
    region = Column(Text)
    experience_years = Column(Integer)
    terrain_experience = Column(Boolean)
    availability_text = Column(Text)

    no_contact = Column(Boolean, nullable=False, default=False)
    no_contact_at = Column(TIMESTAMP(timezone=True))
    no_contact_reason = Column(Text)

    created_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True))

    conversations = relationship("Conversation", back_populates="contact")
