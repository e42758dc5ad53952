from sqlalchemy import TIMESTAMP, Column, ForeignKey, String, Text

from agent_os.database import Base, JSONType, new_id


class AgentRun(Base):
    """Audit record of one model invocation and its execution."""

    __tablename__ = "agent_runs"

    id = Column(String(36), primary_key=True, default=new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False)
    program_id = Column(String(36), ForeignKey("programs.id"))
    event_type = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="RUNNING")  # RUNNING, PLANNED, EXECUTED, ERROR
    input_context = Column(JSONType)
    commands = Column(JSONType)
    results = Column(JSONType)
    error = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True))


class ToolCallLog(Base):
    __tablename__ = "tool_call_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    agent_run_id = Column(String(36), ForeignKey("agent_runs.id"), nullable=False)
    tool_name = Column(Text, nullable=False)
    args = Column(JSONType)
    result = Column(JSONType)
    error = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True))
