from sqlalchemy import TIMESTAMP, Boolean, Column, ForeignKey, Integer, String, Text

from agent_os.database import Base, JSONType, new_id


class AutomationRule(Base):
    __tablename__ = "automation_rules"

    id = Column(String(36), primary_key=True, default=new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    name = Column(Text, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=100)
    trigger = Column(Text, nullable=False)  # INBOUND_MESSAGE, INACTIVITY, STAGE_CHANGED, PROFILE_UPDATED
    scope_phone_line_id = Column(String(36), ForeignKey("phone_lines.id"))
    scope_program_id = Column(String(36), ForeignKey("programs.id"))
    conditions = Column(JSONType, nullable=False, default=list)  # [{field, op, value}]
    actions = Column(JSONType, nullable=False, default=list)  # [{type, ...}]
    created_at = Column(TIMESTAMP(timezone=True))


class AutomationRun(Base):
    __tablename__ = "automation_runs"

    id = Column(String(36), primary_key=True, default=new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    rule_id = Column(String(36), ForeignKey("automation_rules.id"), nullable=False)
    conversation_id = Column(String(36), ForeignKey("conversations.id"))
    event_type = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="RUNNING")  # RUNNING, SUCCESS, ERROR
    input_data = Column(JSONType)
    output_data = Column(JSONType)
    error = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True))
