import os

os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["LLM_PROVIDER"] = "openai"
os.environ.pop("OPENAI_API_KEY", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.db import Base, build_engine, get_db
from app.services import evaluation as evaluation_service
from app.services import simulator
from app.services.auth import get_current_user
from app.services.llm import reset_llm_service
from factories import CALLER_REPLY, GREETING, make_assignment, make_scenario, make_user, scoring_result

# Use SQLite in-memory for test DB
TEST_DATABASE_URL = "sqlite+pysqlite:///:memory:"
# For in-memory SQLite we must use a StaticPool so the TestClient request
# sessions and the test's own session see the same database.
engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# Dependency override
def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def setup_test_db():
    # recreate schema for each test to ensure isolation
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    reset_llm_service()
    yield
    app.dependency_overrides.pop(get_current_user, None)
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture
def counselor(db_session):
    return make_user(db_session, "counselor", "Casey Counselor")


@pytest.fixture
def other_counselor(db_session):
    return make_user(db_session, "counselor", "Robin Counselor")


@pytest.fixture
def supervisor(db_session):
    return make_user(db_session, "supervisor", "Sam Supervisor")


@pytest.fixture
def login():
    """Make subsequent requests run as ``user``."""
    def _login(user):
        app.dependency_overrides[get_current_user] = lambda: user
        return user
    return _login


@pytest.fixture
def scenario(db_session, supervisor):
    return make_scenario(db_session, supervisor.id)


@pytest.fixture
def assignment(db_session, scenario, counselor, supervisor):
    return make_assignment(db_session, scenario.id, counselor.id, supervisor.id)


@pytest.fixture
def fake_llm(monkeypatch):
    """Deterministic simulator and scorer; records what they were given.

    Set ``fake_llm["flags"]`` to make the scorer report flags.
    """
    calls = {"greeting": [], "reply": [], "score": [], "flags": []}

    def _greeting(prompt):
        calls["greeting"].append(prompt)
        return GREETING

    def _reply(prompt, history):
        calls["reply"].append(list(history))
        return CALLER_REPLY

    def _score(turns, title, description=None, evaluator_context=None):
        calls["score"].append(list(turns))
        return scoring_result(flags=calls["flags"])

    monkeypatch.setattr(simulator, "generate_initial_greeting", _greeting)
    monkeypatch.setattr(simulator, "generate_reply", _reply)
    monkeypatch.setattr(evaluation_service, "score_transcript", _score)
    return calls


@pytest.fixture
def file_db(tmp_path):
    """File-backed SQLite with BEGIN IMMEDIATE locking, for real concurrent writers."""
    file_engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(bind=file_engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    yield factory
    file_engine.dispose()
