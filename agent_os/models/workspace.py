from sqlalchemy import TIMESTAMP, Boolean, Column, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from agent_os.database import Base, JSONType, new_id


class Workspace(Base):
    __tablename__ = "workspaces"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(Text, nullable=False)
    # {"role_holders": {"nurse_leader": "ops@example.com"}, ...}
    config = Column(JSONType, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True))

    users = relationship("User", back_populates="workspace")
    programs = relationship("Program", back_populates="workspace")


class User(Base):
    """Human operator that can be assigned to conversations."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    email = Column(Text, nullable=False)
    name = Column(Text)
    role = Column(Text, default="operator")
    is_active = Column(Boolean, default=True)

    workspace = relationship("Workspace", back_populates="users")


class PhoneLine(Base):
    __tablename__ = "phone_lines"

    id = Column(String(36), primary_key=True, default=new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    wa_phone_number_id = Column(Text)
    default_program_id = Column(String(36), ForeignKey("programs.id"))
    is_active = Column(Boolean, default=True)
