from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.authz.schemas import User
from app.core.auth import get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.storage.memory import KeyValueStore


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def current_user() -> dict[str, User]:
    return {"user": User(id="metrics-admin", company_id="acme", role="admin")}


@pytest.fixture()
def client(db_session: Session, current_user: dict[str, User]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> User:
        return current_user["user"]

    app.state.kv_store = KeyValueStore()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_storage_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    pipeline = client.post(
        "/api/pipelines",
        json={
            "id": "students",
            "name": "Students",
            "entity_type": "students",
            "stages": [{"id": "new", "name": "New"}],
            "fields": [{"id": "f-name", "name": "name", "type": "text", "label": "Name"}],
        },
    )
    assert pipeline.status_code == 201

    created = client.post("/api/pipelines/students/entities", json={"name": "Ana"})
    assert created.status_code == 201
    fetched = client.get(f"/api/pipelines/students/entities/{created.json()['id']}")
    assert fetched.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "storage_operations_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/pipelines/{id}/entities/{id}"' in body
    assert 'backend="local"' in body
    assert created.json()["id"] not in body


def test_metrics_restricted_to_admin_and_dev(client: TestClient, current_user: dict[str, User]) -> None:
    current_user["user"] = User(id="sales-1", company_id="acme", role="sales")

    response = client.get("/metrics")

    assert response.status_code == 403
    assert response.json()["code"] == "permission_denied"

    current_user["user"] = User(id="dev-1", company_id="acme", role="dev")
    assert client.get("/metrics").status_code == 200


def test_metrics_disabled_returns_not_found(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404
