from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from agent_os.logging_config import get_logger
from agent_os.models import AgentRun
from agent_os.services.state_machine import AgentRunStatus, transition

logger = get_logger("agent_run_service")


def create_agent_run(
    db: Session,
    workspace_id: str,
    conversation_id: str,
    event_type: str,
    program_id: Optional[str] = None,
    input_context: Optional[dict] = None,
) -> AgentRun:
    now = datetime.now(timezone.utc)
    run = AgentRun(
        workspace_id=workspace_id,
        conversation_id=conversation_id,
        program_id=program_id,
        event_type=event_type,
        status=AgentRunStatus.RUNNING.value,
        input_context=input_context,
        created_at=now,
        updated_at=now,
    )
    db.add(run)
    db.commit()
    return run


def get_agent_run(db: Session, agent_run_id: str) -> Optional[AgentRun]:
    return db.query(AgentRun).filter(AgentRun.id == agent_run_id).first()


def update_agent_run_status(db: Session, run: AgentRun, status: AgentRunStatus, **fields) -> AgentRun:
    """Move the run to ``status`` and persist immediately; terminal runs cannot move."""
    run.status = transition(AgentRunStatus(run.status), status).value
    for name, value in fields.items():
        setattr(run, name, value)
    run.updated_at = datetime.now(timezone.utc)
    db.commit()
    logger.info(f"AgentRun {run.id} -> {run.status}")
    return run
