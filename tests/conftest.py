import asyncio
import json
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from aura_coach.core.security import encrypt_api_key, hash_password, issue_access_token
from aura_coach.db.models import User, UserAIConfig
from aura_coach.db.session import SessionLocal, configure_database, create_tables
from aura_coach.services.llm import (
    ModelConfig,
    StreamEvent,
    TextDelta,
    ToolCallDelta,
    TurnEnd,
    UpstreamError,
    UpstreamTimeout,
    get_llm_client,
)


class FakeScenario(str, Enum):
    OK_TEXT = "OK_TEXT"
    OK_WITH_TOOL = "OK_WITH_TOOL"
    MULTIPLE_TOOLS = "MULTIPLE_TOOLS"
    MALFORMED_TOOL_ARGS = "MALFORMED_TOOL_ARGS"
    UNKNOWN_TOOL = "UNKNOWN_TOOL"
    TIMEOUT = "TIMEOUT"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    STALL_AFTER_TEXT = "STALL_AFTER_TEXT"
    NO_TURN_END = "NO_TURN_END"
    REPEATED_TOOL_NAME = "REPEATED_TOOL_NAME"


OK_TEXT_DELTAS = [
    "Det låter tungt att inte kunna sova. ",
    "1. Skärmar av 45 minuter före sänggåendet.\n",
    "2. Prova 4-7-8-andning i sängen.\n",
    "3. Skriv ner tankarna på papper.\n",
    "Vilken tid brukar du lägga dig?",
]


def _tool_call(index: int, call_id: str, name: str, arguments: str) -> list[ToolCallDelta]:
    # Arguments arrive in two fragments, the way providers split them.
    middle = len(arguments) // 2
    return [
        ToolCallDelta(index=index, call_id=call_id, name=name, arguments=""),
        ToolCallDelta(index=index, arguments=arguments[:middle]),
        ToolCallDelta(index=index, arguments=arguments[middle:]),
    ]


class FakeStreamingLLM:
    def __init__(self, scenario: FakeScenario, stall_seconds: float = 5.0) -> None:
        self.scenario = scenario
        self.stall_seconds = stall_seconds
        self.calls: list[dict[str, Any]] = []

    def _events(self) -> list[StreamEvent]:
        text = [TextDelta(delta) for delta in OK_TEXT_DELTAS]
        if self.scenario == FakeScenario.OK_TEXT:
            return [*text, TurnEnd("stop")]
        if self.scenario == FakeScenario.OK_WITH_TOOL:
            return [*text, *_tool_call(0, "call_1", "suggest_exercises", json.dumps({"minutes": 10})), TurnEnd("tool_calls")]
        if self.scenario == FakeScenario.MULTIPLE_TOOLS:
            return [
                *text,
                *_tool_call(0, "call_1", "journal_prompt", json.dumps({"topic": "sleep"})),
                *_tool_call(1, "call_2", "build_plan", json.dumps({"goal": "sleep better", "days": 3})),
                TurnEnd("tool_calls"),
            ]
        if self.scenario == FakeScenario.REPEATED_TOOL_NAME:
            arguments = json.dumps({"minutes": 10})
            return [
                *text,
                ToolCallDelta(index=0, call_id="call_1", name="suggest_exercises", arguments=arguments[:6]),
                ToolCallDelta(index=0, name="suggest_exercises", arguments=arguments[6:]),
                TurnEnd("tool_calls"),
            ]
        if self.scenario == FakeScenario.MALFORMED_TOOL_ARGS:
            return [*text, *_tool_call(0, "call_1", "suggest_exercises", "{minutes: 10"), TurnEnd("tool_calls")]
        if self.scenario == FakeScenario.UNKNOWN_TOOL:
            return [*text, *_tool_call(0, "call_1", "book_therapist", "{}"), TurnEnd("tool_calls")]
        if self.scenario == FakeScenario.NO_TURN_END:
            return text[:2]
        return text[:1]

    async def stream_chat(
        self, config: ModelConfig, messages: list[dict[str, str]], tools: list[dict[str, Any]]
    ) -> AsyncIterator[StreamEvent]:
        self.calls.append({"config": config, "messages": messages, "tools": tools})
        if self.scenario == FakeScenario.TIMEOUT:
            raise UpstreamTimeout(config.provider, config.model, "simulated timeout")
        if self.scenario == FakeScenario.UPSTREAM_ERROR:
            raise UpstreamError(config.provider, config.model, "simulated provider error", status_code=500)
        for event in self._events():
            await asyncio.sleep(0)
            yield event
        if self.scenario == FakeScenario.STALL_AFTER_TEXT:
            await asyncio.sleep(self.stall_seconds)
            yield TurnEnd("stop")


@pytest.fixture
def model_config() -> ModelConfig:
    return ModelConfig(provider="openai", model="gpt-4o-mini", api_key="sk-test-12345678")


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "aura_coach_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from aura_coach.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def create_user(db_session: Session) -> Callable[..., User]:
    def _create_user(tier: str = "free", with_ai_config: bool = True) -> User:
        email = f"user_{uuid4().hex[:10]}@test.com"
        user = User(email=email, password_hash=hash_password("StrongPass123"), plan_tier=tier)
        db_session.add(user)
        db_session.flush()
        if with_ai_config:
            cfg = UserAIConfig(
                user_id=user.id,
                ai_provider="openai",
                ai_model="gpt-4o-mini",
                encrypted_api_key=encrypt_api_key("sk-test-12345678"),
            )
            db_session.add(cfg)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def auth_headers() -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {issue_access_token(user.id)}"}

    return _headers


@pytest.fixture
def auth_token(client: TestClient) -> str:
    email = f"auth_{uuid4().hex[:10]}@test.com"
    password = "StrongPass123"
    signup = client.post(
        "/auth/signup",
        json={
            "email": email,
            "password": password,
            "ai_config": {
                "ai_provider": "openai",
                "ai_model": "gpt-4o-mini",
                "ai_api_key": "sk-test-12345678",
            },
        },
    )
    assert signup.status_code == 201
    login = client.post("/auth/login", data={"username": email, "password": password})
    assert login.status_code == 200
    return login.json()["access_token"]


@pytest.fixture
def fake_llm_factory() -> Callable[..., FakeStreamingLLM]:
    def _factory(scenario: FakeScenario, stall_seconds: float = 5.0) -> FakeStreamingLLM:
        return FakeStreamingLLM(scenario=scenario, stall_seconds=stall_seconds)

    return _factory


@pytest.fixture
def override_llm(app, fake_llm_factory) -> Callable[[FakeScenario], FakeStreamingLLM]:
    def _override(scenario: FakeScenario) -> FakeStreamingLLM:
        fake = fake_llm_factory(scenario)
        app.dependency_overrides[get_llm_client] = lambda: fake
        return fake

    return _override


def conversation(*texts: str, lang: str = "sv") -> dict[str, Any]:
    """Alternate user/assistant messages, ending with the last user text."""
    roles = ["user", "assistant"]
    messages = [{"role": roles[i % 2], "content": text} for i, text in enumerate(texts)]
    return {"messages": messages, "lang": lang}
