import os
import sys
from typing import Iterator

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault("EXAMFLOW_DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")

from examflow.config import Settings  # noqa: E402
from examflow.models import ACTORS, EXAMS, PATIENTS  # noqa: E402
from examflow.store import MemoryDocumentStore, SqlDocumentStore  # noqa: E402
from tests.support import ALL_ACTORS, TEST_SECRET, exam_document, run  # noqa: E402


@pytest.fixture
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture
def seeded_store(store: MemoryDocumentStore) -> MemoryDocumentStore:
    async def _seed() -> None:
        for actor in ALL_ACTORS:
            await store.create(ACTORS, actor.to_document())
        await store.create(
            PATIENTS,
            {"id": "patient-1", "firstName": "Jane", "lastName": "Dupont", "email": "jane@example.org"},
        )
        await store.create(EXAMS, exam_document())

    run(_seed())
    return store


@pytest.fixture
def sql_engine() -> Iterator[sa.engine.Engine]:
    engine = sa.create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def sql_store(sql_engine) -> SqlDocumentStore:
    return SqlDocumentStore(sql_engine)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        jwt_secret=TEST_SECRET,
        search_debounce_ms=0,
        search_timeout_ms=500,
    )


@pytest.fixture
def api_client(seeded_store, test_settings) -> Iterator[TestClient]:
    from examflow import main

    main.configure_services(store=seeded_store, settings=test_settings)
    with TestClient(main.app) as client:
        yield client
    main._services = None
