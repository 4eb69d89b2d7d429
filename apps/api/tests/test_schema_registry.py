from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.authz.schemas import User
from app.core.auth import get_current_user
from app.core.database import Base, get_db
from app.core.errors import NotFoundError
from app.ingest.models import IngestFile, IngestTableRow, IngestTableSchema
from app.ingest.schemas import ColumnReference, ColumnType
from app.ingest.service import SchemaRegistryService
from app.main import app


COMPANY = "acme"


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
def clear_audit() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    yield
    audit.audit_entries.clear()


@pytest.fixture()
def registry() -> SchemaRegistryService:
    return SchemaRegistryService(sample_limit=2)


def _ingest_pair(registry: SchemaRegistryService, session: Session) -> None:
    registry.ingest_file(session, COMPANY, "tutors.csv", [["id", "name"], ["xyz-789", "Marta"]])
    registry.ingest_file(
        session,
        COMPANY,
        "Leads Q3.csv",
        [["id", "name", "tutor_id"], ["abc-123", "John", "xyz-789"], ["abc-124", "Ana"]],
    )


def test_ingest_file_stores_schema_rows_and_relationships(
    registry: SchemaRegistryService, db_session: Session
) -> None:
    registry.ingest_file(db_session, COMPANY, "tutors.csv", [["id", "name"], ["xyz-789", "Marta"]])
    result = registry.ingest_file(
        db_session,
        COMPANY,
        "Leads Q3.csv",
        [["id", "name", "tutor_id"], ["abc-123", "John", "xyz-789"], ["abc-124", "Ana"]],
        actor_user_id="user-1",
    )

    assert result.file.table_name == "leads_q3"
    assert result.file.row_count == 2
    assert result.relationships_detected == 1
    assert result.table.column("tutor_id").references == ColumnReference(table="tutors", column="id")

    stored = registry.get_schema(db_session, COMPANY, "leads_q3")
    assert stored.column("tutor_id").is_foreign_key is True

    rows = registry.get_rows(db_session, COMPANY, "leads_q3")
    assert rows.total == 2
    assert rows.rows[1] == {"id": "abc-124", "name": "Ana", "tutor_id": ""}

    assert [item.table_name for item in registry.list_files(db_session, COMPANY)] == ["tutors", "leads_q3"]
    assert any(entry["action"] == "ingest" and entry["actor_user_id"] == "user-1" for entry in audit.audit_entries)


def test_later_file_links_to_earlier_tables(registry: SchemaRegistryService, db_session: Session) -> None:
    registry.ingest_file(db_session, COMPANY, "Leads Q3.csv", [["id", "name", "tutor_id"], ["abc-123", "John", "x"]])
    assert registry.get_schema(db_session, COMPANY, "leads_q3").column("tutor_id").references is None

    result = registry.ingest_file(db_session, COMPANY, "tutors.csv", [["id", "name"], ["x", "Marta"]])

    assert result.relationships_detected == 1
    leads = registry.get_schema(db_session, COMPANY, "leads_q3")
    assert leads.column("tutor_id").references == ColumnReference(table="tutors", column="id")


def test_rows_are_paged(registry: SchemaRegistryService, db_session: Session) -> None:
    rows = [["id"]] + [[str(index)] for index in range(10)]
    registry.ingest_file(db_session, COMPANY, "numbers.csv", rows)

    page = registry.get_rows(db_session, COMPANY, "numbers", limit=3, offset=6)

    assert page.total == 10
    assert [row["id"] for row in page.rows] == ["6", "7", "8"]
    assert len(registry.get_schema(db_session, COMPANY, "numbers").sample_rows) == 2


def test_delete_file_cascades_and_clears_references(registry: SchemaRegistryService, db_session: Session) -> None:
    _ingest_pair(registry, db_session)
    tutors_file = next(item for item in registry.list_files(db_session, COMPANY) if item.table_name == "tutors")

    registry.delete_file(db_session, COMPANY, tutors_file.id)

    with pytest.raises(NotFoundError):
        registry.get_schema(db_session, COMPANY, "tutors")
    leads = registry.get_schema(db_session, COMPANY, "leads_q3")
    assert leads.column("tutor_id").references is None
    assert leads.column("tutor_id").is_foreign_key is False
    assert db_session.scalar(select(func.count(IngestTableSchema.id))) == 1
    assert db_session.scalar(select(func.count(IngestFile.id))) == 1
    assert db_session.scalar(select(func.count(IngestTableRow.id))) == 2


def test_reingesting_same_table_replaces_it(registry: SchemaRegistryService, db_session: Session) -> None:
    _ingest_pair(registry, db_session)

    registry.ingest_file(db_session, COMPANY, "tutors.csv", [["id", "name", "email"], ["xyz-789", "Marta", "m@acme.io"]])

    files = registry.list_files(db_session, COMPANY)
    assert [item.table_name for item in files] == ["leads_q3", "tutors"]
    assert registry.get_schema(db_session, COMPANY, "tutors").column_names() == ["id", "name", "email"]
    assert registry.get_schema(db_session, COMPANY, "leads_q3").column("tutor_id").references == ColumnReference(
        table="tutors", column="id"
    )


def test_tenants_are_isolated(registry: SchemaRegistryService, db_session: Session) -> None:
    _ingest_pair(registry, db_session)

    assert registry.list_schemas(db_session, "other-co") == []
    with pytest.raises(NotFoundError):
        registry.get_schema(db_session, "other-co", "tutors")
    with pytest.raises(NotFoundError):
        registry.delete_file(db_session, "other-co", "missing")


class _TypingRefiner:
    def refine(self, schemas):  # type: ignore[no-untyped-def]
        return [
            {
                "table_name": "tutors",
                "columns": [{"name": "name", "type": "text"}, {"name": "id", "type": "bogus"}],
            }
        ]


def test_apply_refinement_persists_merged_types(registry: SchemaRegistryService, db_session: Session) -> None:
    _ingest_pair(registry, db_session)

    refined = registry.apply_refinement(db_session, COMPANY, _TypingRefiner())

    tutors = registry.get_schema(db_session, COMPANY, "tutors")
    assert tutors.column("name").type == ColumnType.TEXT
    assert tutors.column("id").type == ColumnType.VARCHAR
    assert tutors.column("id").is_primary_key is True
    assert [schema.table_name for schema in refined] == ["tutors", "leads_q3"]
    leads = registry.get_schema(db_session, COMPANY, "leads_q3")
    assert leads.column("tutor_id").references == ColumnReference(table="tutors", column="id")


@pytest.fixture()
def api_user() -> dict[str, User]:
    return {"user": User(id="admin-1", company_id=COMPANY, email="ana@acme.io", role="admin")}


@pytest.fixture()
def client(db_session: Session, api_user: dict[str, User]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> User:
        return api_user["user"]

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_schemas_api_round_trip(client: TestClient) -> None:
    created = client.post(
        "/api/schemas/files",
        json={"file_name": "tutors.csv", "content": "id,name\nxyz-789,Marta\n"},
    )
    assert created.status_code == 201
    file_id = created.json()["file"]["id"]
    assert created.json()["table"]["table_name"] == "tutors"

    listed = client.get("/api/schemas")
    assert listed.status_code == 200
    assert [item["table_name"] for item in listed.json()] == ["tutors"]

    rows = client.get("/api/schemas/tutors/rows", params={"limit": 5})
    assert rows.status_code == 200
    assert rows.json()["rows"] == [{"id": "xyz-789", "name": "Marta"}]

    deleted = client.delete(f"/api/schemas/files/{file_id}")
    assert deleted.status_code == 200

    missing = client.get("/api/schemas/tutors")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"


def test_schemas_api_rejects_ambiguous_payload(client: TestClient) -> None:
    response = client.post(
        "/api/schemas/files",
        json={"file_name": "tutors.csv", "content": "id\n1\n", "rows": [["id"], ["1"]]},
    )

    assert response.status_code == 422


def test_schemas_api_requires_pipeline_management(client: TestClient, api_user: dict[str, User]) -> None:
    api_user["user"] = User(id="sales-1", company_id=COMPANY, role="sales")

    response = client.post("/api/schemas/files", json={"file_name": "tutors.csv", "rows": [["id"], ["1"]]})

    assert response.status_code == 403
    assert response.json()["code"] == "permission_denied"
