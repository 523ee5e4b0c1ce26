import json
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Callable, Optional
from uuid import uuid4

os.environ.setdefault("DB_PATH", str(Path(tempfile.mkdtemp(prefix="fitcoach_")) / "import.db"))

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from fitcoach.api.auth import oauth2_scheme
from fitcoach.api.plans import PLAN_SYSTEM_PROMPT
from fitcoach.core.security import get_password_hash
from fitcoach.db.models import FitnessProfile, User, UserProfile, dump_json_field
from fitcoach.db.session import SessionLocal, configure_database, create_tables
from fitcoach.services.endpoints import EndpointClient, get_endpoint_client
from fitcoach.services.llm import LLMRequestError, LLMResponseFormatError, get_llm_client


class FakeScenario(str, Enum):
    PLAIN_REPLY = "PLAIN_REPLY"
    LOG_WORKOUT = "LOG_WORKOUT"
    GENERATE_PLANS_CONFIRM = "GENERATE_PLANS_CONFIRM"
    LOG_WEIGHT_MISSING_VALUE = "LOG_WEIGHT_MISSING_VALUE"
    UPDATE_BENCHMARK = "UPDATE_BENCHMARK"
    MALFORMED_BLOCK = "MALFORMED_BLOCK"
    UNKNOWN_ACTION = "UNKNOWN_ACTION"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    FAST_CHAT = "FAST_CHAT"
    FAST_LOG_MEAL = "FAST_LOG_MEAL"
    FAST_GENERATE_PLANS = "FAST_GENERATE_PLANS"
    FAST_INVALID_JSON = "FAST_INVALID_JSON"
    FAST_NONE_CONFIRM = "FAST_NONE_CONFIRM"


class FakeLLMClient:
    """Replays fixture replies; one scenario per chat turn, the last one repeats."""

    def __init__(self, scenarios: list[FakeScenario], fixture_dir: Path) -> None:
        self.scenarios = list(scenarios) or [FakeScenario.PLAIN_REPLY]
        self.fixture_dir = fixture_dir
        self.chat_calls: list[list[dict[str, str]]] = []
        self.json_calls: list[tuple[str, str]] = []

    def _scenario(self, index: int) -> FakeScenario:
        return self.scenarios[min(index, len(self.scenarios) - 1)]

    def _fail(self) -> None:
        raise LLMRequestError(provider="fake", model="fake-model", message="simulated upstream failure", status_code=500)

    def complete_chat(self, messages: list[dict[str, str]]) -> str:
        scenario = self._scenario(len(self.chat_calls))
        self.chat_calls.append(messages)
        if scenario == FakeScenario.UPSTREAM_ERROR:
            self._fail()
        return (self.fixture_dir / f"{scenario.value}.txt").read_text(encoding="utf-8")

    def generate_json(self, system_prompt: str, user_prompt: str) -> dict:
        self.json_calls.append((system_prompt, user_prompt))
        if system_prompt == PLAN_SYSTEM_PROMPT:
            if FakeScenario.UPSTREAM_ERROR in self.scenarios:
                self._fail()
            return json.loads((self.fixture_dir / "WEEK_PLAN.json").read_text(encoding="utf-8"))
        fast_calls = sum(1 for prompt, _ in self.json_calls if prompt != PLAN_SYSTEM_PROMPT)
        scenario = self._scenario(fast_calls - 1)
        if scenario == FakeScenario.UPSTREAM_ERROR:
            self._fail()
        if scenario == FakeScenario.FAST_INVALID_JSON:
            raise LLMResponseFormatError(
                provider="fake", model="fake-model", message="Model returned invalid JSON", status_code=200
            )
        return json.loads((self.fixture_dir / f"{scenario.value}.json").read_text(encoding="utf-8"))


@pytest.fixture(scope="session")
def fixture_dir() -> Path:
    return Path(__file__).resolve().parent / "fixtures" / "llm"


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "fitcoach_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from fitcoach.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:

        def _endpoints(token: str = Depends(oauth2_scheme)) -> EndpointClient:
            return EndpointClient(http=test_client, token=token)

        app.dependency_overrides[get_endpoint_client] = _endpoints
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
    def _create_user(name: Optional[str] = "Test User", with_profile: bool = True) -> User:
        email = f"user_{uuid4().hex[:10]}@test.com"
        user = User(email=email, name=name, password_hash=get_password_hash("StrongPass123"))
        db_session.add(user)
        db_session.flush()
        if with_profile:
            db_session.add(
                UserProfile(
                    user_id=user.id,
                    name=name,
                    height=180,
                    starting_weight=90.0,
                    current_weight=85.0,
                    goal_weight=80.0,
                )
            )
        db_session.commit()
        db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def signed_in(client: TestClient) -> dict:
    email = f"auth_{uuid4().hex[:10]}@test.com"
    password = "StrongPass123"
    signup = client.post("/auth/signup", json={"email": email, "password": password, "name": "Sam"})
    assert signup.status_code == 201
    login = client.post("/auth/login", data={"username": email, "password": password})
    assert login.status_code == 200
    token = login.json()["access_token"]
    headers = {"Authorization": f"Bearer {token}"}
    me = client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    return {"token": token, "headers": headers, "user_id": me.json()["id"]}


@pytest.fixture
def auth_token(signed_in: dict) -> str:
    return signed_in["token"]


@pytest.fixture
def seed_fitness_profile(db_session: Session):
    def _seed(user_id: int, **overrides) -> FitnessProfile:
        row = FitnessProfile(
            user_id=user_id,
            fitness_level=overrides.get("fitness_level", "intermediate"),
            primary_goals_json=dump_json_field(overrides.get("primary_goals", ["Strength"])),
            workout_days_json=dump_json_field(overrides.get("workout_days", ["Monday", "Wednesday", "Friday"])),
            available_equipment_json=dump_json_field(["barbell", "dumbbells"]),
            workout_duration=overrides.get("workout_duration", 45),
            exercise_benchmarks_json=dump_json_field(overrides.get("exercise_benchmarks", [])),
        )
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _seed


@pytest.fixture
def fake_llm_factory(fixture_dir: Path) -> Callable[..., FakeLLMClient]:
    def _factory(*scenarios: FakeScenario) -> FakeLLMClient:
        return FakeLLMClient(scenarios=list(scenarios), fixture_dir=fixture_dir)

    return _factory


@pytest.fixture
def override_llm(app, fake_llm_factory):
    def _override(*scenarios: FakeScenario) -> FakeLLMClient:
        fake = fake_llm_factory(*scenarios)
        app.dependency_overrides[get_llm_client] = lambda: fake
        return fake

    return _override
