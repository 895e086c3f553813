import json
import os
import tempfile

os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(tempfile.gettempdir(), "screener_chat_test.db")
os.environ["OPENAI_API_KEY"] = ""

import pytest
from fastapi.testclient import TestClient
from screener_chat.main import app
from screener_chat.core.db import Base, engine, SessionLocal
from screener_chat.core.security import create_access_token
from screener_chat.llm.openai_client import get_llm_client, LLMError
from screener_chat.models import User, Assessment
from screener_chat.conversation.states import UserType


class FakeLLM:
    """Scripted stand-in for OpenAIClient.

    `extractions` maps a user reply to (value, confidence); replies not in the
    map come back as value=None.
    """

    chat_model = "fake-chat"
    extraction_model = "fake-extract"

    def __init__(self, reply="Thanks for sharing. How often has that been happening?", extractions=None):
        self.reply = reply
        self.extractions = dict(extractions or {})
        self.configured = True
        self.fail = False
        self.calls = []
        self.stream_closed = False

    def _tool_message(self, messages):
        prompt = messages[-1]["content"]
        value, confidence = None, 0.0
        for text, (v, c) in self.extractions.items():
            if f'User response: "{text}"' in prompt:
                value, confidence = v, c
        args = {"value": value, "confidence": confidence, "reasoning": "scripted"}
        return {
            "role": "assistant",
            "content": None,
            "tool_calls": [{"type": "function", "function": {"name": "extract_response", "arguments": json.dumps(args)}}],
        }

    async def chat(self, messages, model=None, temperature=0.2, max_tokens=None, response_format=None, tools=None, tool_choice=None):
        self.calls.append({"kind": "extract" if tools else "chat", "model": model, "messages": messages})
        if self.fail:
            raise LLMError("scripted failure")
        if tools:
            return self._tool_message(messages)
        return {"role": "assistant", "content": self.reply}

    async def stream_chat(self, messages, model=None, temperature=0.2, max_tokens=None):
        self.calls.append({"kind": "stream", "model": model, "messages": messages})
        if self.fail:
            raise LLMError("scripted failure")
        try:
            for word in self.reply.split(" "):
                yield word + " "
        finally:
            self.stream_closed = True

    def kinds(self):
        return [c["kind"] for c in self.calls]


@pytest.fixture(autouse=True, scope="session")
def setup_db():
    # fresh db for tests
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)

@pytest.fixture(autouse=True)
def clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())

@pytest.fixture()
def db():
    session = SessionLocal()
    yield session
    session.close()

@pytest.fixture()
def fake_llm():
    llm = FakeLLM(extractions={
        "Not at all": (0, 0.95),
        "Several days": (1, 0.9),
        "I feel sad most days": (2, 0.85),
        "Nearly every day": (3, 0.95),
        "maybe, I'm not sure": (1, 0.4),
    })
    app.dependency_overrides[get_llm_client] = lambda: llm
    yield llm
    app.dependency_overrides.pop(get_llm_client, None)

@pytest.fixture()
def client(fake_llm):
    return TestClient(app)

def make_user(db, email="parent@example.com", clinician=False, user_type=UserType.PARENT):
    user = User(name="Test User", email=email, user_type=user_type, is_clinician=clinician)
    db.add(user)
    db.commit()
    return user

def auth(user):
    token, _ = create_access_token(user.id)
    return {"Authorization": f"Bearer {token}"}

@pytest.fixture()
def user(db):
    return make_user(db)

@pytest.fixture()
def headers(user):
    return auth(user)

@pytest.fixture()
def assessment(db, user):
    a = Assessment(user_id=user.id, screener_type="phq9a")
    db.add(a)
    db.commit()
    return a

@pytest.fixture()
def conversation_id(client, headers, assessment):
    r = client.post("/conversations", headers=headers, json={"assessmentId": assessment.id})
    assert r.status_code == 201, r.text
    return r.json()["conversation"]["id"]
