import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from agent_os.database import Base
from agent_os.models import Contact, Conversation, Message, Program, Workspace
from agent_os.services.llm import LLMProvider, LLMResponse, ToolCall
from agent_os.services.whatsapp_service import SendResult


class ScriptedLLM(LLMProvider):
    """Returns queued responses in order and records every call."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def generate(self, messages, model=None, **kwargs):
        self.calls.append({"messages": [dict(m) for m in messages], "model": model, **kwargs})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, LLMResponse):
            return item
        return LLMResponse(content=item, model=model or "test-model", usage={"total_tokens": 10})


def tool_call_response(*calls):
    """LLMResponse asking for tools: calls are (id, name, arguments_json)."""
    return LLMResponse(
        content="",
        model="test-model",
        tool_calls=[ToolCall(id=call_id, name=name, arguments=args) for call_id, name, args in calls],
    )


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def db():
    """Real session on a fresh in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def workspace(db):
    ws = Workspace(name="Acme Reclutamiento", config={}, created_at=datetime.now(timezone.utc))
    db.add(ws)
    db.commit()
    return ws


@pytest.fixture
def contact(db, workspace):
    c = Contact(
        workspace_id=workspace.id,
        wa_id="56911112222",
        phone="+56911112222",
        display_name="Juan",
        created_at=datetime.now(timezone.utc),
    )
    db.add(c)
    db.commit()
    return c


@pytest.fixture
def conversation(db, workspace, contact):
    now = datetime.now(timezone.utc)
    conv = Conversation(
        workspace_id=workspace.id,
        contact_id=contact.id,
        status="OPEN",
        created_at=now,
        updated_at=now,
    )
    db.add(conv)
    db.commit()
    return conv


@pytest.fixture
def inbound_message(db, conversation):
    message = Message(
        conversation_id=conversation.id,
        direction="INBOUND",
        text="Hola, quiero postular",
        message_metadata={},
        timestamp=datetime.now(timezone.utc) - timedelta(minutes=5),
    )
    db.add(message)
    db.commit()
    return message


@pytest.fixture
def make_program(db, workspace):
    created = []

    def _make(name, slug, prompt="Programa de prueba"):
        program = Program(
            workspace_id=workspace.id,
            name=name,
            slug=slug,
            agent_system_prompt=prompt,
            is_active=True,
            created_at=datetime.now(timezone.utc) + timedelta(seconds=len(created)),
        )
        db.add(program)
        db.commit()
        created.append(program)
        return program

    return _make


@pytest.fixture
def channel():
    """Messaging channel double that always succeeds."""
    mock = Mock()
    mock.send_text.return_value = SendResult(success=True, message_id="wamid.text")
    mock.send_template.return_value = SendResult(success=True, message_id="wamid.template")
    return mock
