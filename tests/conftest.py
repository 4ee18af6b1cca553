import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["SCHEDULER_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.db import build_engine, init_models
from app.main import (
    app,
    get_dispatcher,
    get_language_registry,
    get_session_factory,
    get_session_store,
)
from app.services.models import MovieCandidate
from app.services.providers import LanguageCapabilities
from app.services.sessions import InMemorySessionStore
from fakes import DUNE, DUNE_1984, FakeOracle, FakeSearchProvider, RecordingDispatcher


@pytest.fixture(autouse=True)
def reset_env(monkeypatch):
    # Ensure LangChain tracing flags don't pollute tests
    monkeypatch.setenv("LANGCHAIN_TRACING_V2", "false")
    monkeypatch.delenv("LANGCHAIN_API_KEY", raising=False)
    monkeypatch.delenv("LANGCHAIN_PROJECT", raising=False)
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    init_models(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    engine.dispose()


@pytest.fixture
def en_search():
    return FakeSearchProvider([DUNE, DUNE_1984])


@pytest.fixture
def ru_search():
    return FakeSearchProvider([MovieCandidate(id=DUNE.id, title="Дюна", year=2021)])


@pytest.fixture
def en_oracle():
    return FakeOracle()


@pytest.fixture
def ru_oracle():
    return FakeOracle()


@pytest.fixture
def registry(en_search, ru_search, en_oracle, ru_oracle):
    return {
        "en": LanguageCapabilities("en", en_search, en_oracle),
        "ru": LanguageCapabilities("ru", ru_search, ru_oracle),
    }


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def store():
    return InMemorySessionStore(ttl_seconds=600)


@pytest.fixture
def client(session_factory, registry, dispatcher, store):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_language_registry] = lambda: registry
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_session_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()
