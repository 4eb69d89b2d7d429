from __future__ import annotations

import json
import re
from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.core.errors import NotFoundError, TransportError, ValidationError
from app.storage import (
    DbConnectionConfig,
    InMemoryStorageAdapter,
    KeyValueStore,
    QueryFilters,
    RestStorageAdapter,
    SqlStorageAdapter,
    StorageAdapter,
    create_storage_adapter,
)
from app.storage.base import DateRange


COMPANY = "acme"
REST_URL = "https://store.acme.io"
_LIST_ITEM_RE = re.compile(r'"((?:[^"\\]|\\.)*)"|([^,]+)')


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _in_list(operand: str) -> list[str]:
    # in.("a,b","c") with backslash escapes inside quotes
    return [
        re.sub(r"\\(.)", r"\1", quoted) if not bare else bare
        for quoted, bare in _LIST_ITEM_RE.findall(operand[1:-1])
    ]


def _compare(left: Any, right: str) -> tuple[Any, Any]:
    try:
        return float(left), float(right)
    except (TypeError, ValueError):
        return str(left), right


class FakePostgrest:
    """Just enough of the PostgREST dialect to exercise ``RestStorageAdapter``."""

    reserved = {"order", "offset", "limit", "select"}

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.requests: list[httpx.Request] = []
        self.fail_status: int | None = None

    def _matches(self, row: dict[str, Any], key: str, expression: str) -> bool:
        op, _, operand = expression.partition(".")
        value = row.get(key)
        if op == "eq":
            return value is not None and _text(value) == operand
        if op == "in":
            return value is not None and _text(value) in _in_list(operand)
        if op == "is":
            return value is None
        if op == "not":
            return value is not None
        if op in {"gte", "lte"}:
            if value is None:
                return False
            left, right = _compare(value, operand)
            return left >= right if op == "gte" else left <= right
        raise AssertionError(f"unsupported operator {op}")

    def _select(self, rows: list[dict[str, Any]], params: list[tuple[str, str]]) -> list[dict[str, Any]]:
        selected = [
            row
            for row in rows
            if all(self._matches(row, key, value) for key, value in params if key not in self.reserved)
        ]
        order = dict(params).get("order")
        if order:
            field, direction, _ = order.split(".")
            present = [row for row in selected if row.get(field) is not None]
            missing = [row for row in selected if row.get(field) is None]
            present.sort(key=lambda row: row[field], reverse=direction == "desc")
            selected = present + missing
        return selected

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"message": "boom"})

        table = request.url.path.removeprefix("/rest/v1/").strip("/")
        if not table:
            return httpx.Response(200, json={})
        rows = self.tables.setdefault(table, [])
        params = list(request.url.params.multi_items())

        if request.method == "POST":
            body = json.loads(request.content)
            rows.append(body)
            return httpx.Response(201, json=[body])

        matched = self._select(rows, params)
        if request.method == "PATCH":
            patch = json.loads(request.content)
            for row in matched:
                row.update(patch)
            return httpx.Response(200, json=matched)
        if request.method == "DELETE":
            self.tables[table] = [row for row in rows if row not in matched]
            return httpx.Response(200, json=matched)

        total = len(matched)
        lookup = dict(params)
        offset = int(lookup.get("offset", 0))
        limit = int(lookup["limit"]) if "limit" in lookup else total
        page = matched[offset : offset + limit]
        if lookup.get("select") == "stage":
            page = [{"stage": row.get("stage")} for row in page]
        headers = {}
        if "count=exact" in request.headers.get("prefer", ""):
            headers["content-range"] = f"{offset}-{offset + len(page) - 1}/{total}" if page else f"*/{total}"
        return httpx.Response(200, json=page, headers=headers)


@pytest.fixture()
def fake_store() -> FakePostgrest:
    return FakePostgrest()


@pytest.fixture()
def session_factory() -> Generator[sessionmaker, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(params=["local", "sql", "rest"])
def adapter(request: pytest.FixtureRequest, fake_store: FakePostgrest, session_factory: sessionmaker) -> StorageAdapter:
    if request.param == "local":
        return InMemoryStorageAdapter(KeyValueStore(), COMPANY)
    if request.param == "sql":
        return SqlStorageAdapter(session_factory, COMPANY)
    client = httpx.Client(transport=httpx.MockTransport(fake_store.handler))
    return RestStorageAdapter(REST_URL, "service-key", COMPANY, client=client)


def _seed(adapter: StorageAdapter, count: int) -> list[dict[str, Any]]:
    stages = ["new", "contacted", "enrolled"]
    return [
        adapter.create(
            "students",
            {
                "stage": stages[index % 3],
                "name": f"Student {index:02d}",
                "score": index,
                "enrolled_on": 1_700_000_000_000 + index if index % 4 else None,
            },
        )
        for index in range(count)
    ]


def test_second_page_of_sixty(adapter: StorageAdapter) -> None:
    _seed(adapter, 60)

    result = adapter.get_all("students", QueryFilters(page=2, limit=25))

    assert len(result.items) == 25
    assert result.total == 60
    assert result.total_pages == 3
    assert result.page == 2


def test_create_assigns_identity_and_timestamps(adapter: StorageAdapter) -> None:
    created = adapter.create("students", {"name": "Ana", "id": "spoofed", "created_at": 1})

    assert created["id"] != "spoofed"
    assert created["stage"] == "new"
    assert created["created_at"] == created["updated_at"]
    assert created["created_at"] > 1
    assert adapter.get_by_id("students", created["id"])["name"] == "Ana"


def test_update_move_and_delete(adapter: StorageAdapter) -> None:
    created = adapter.create("students", {"name": "Ana", "stage": "new"})

    updated = adapter.update("students", created["id"], {"name": "Ana Lima", "id": "other"})
    assert updated["id"] == created["id"]
    assert updated["name"] == "Ana Lima"
    assert updated["created_at"] == created["created_at"]
    assert updated["updated_at"] >= created["updated_at"]

    moved = adapter.move_stage("students", created["id"], "contacted")
    assert moved["stage"] == "contacted"
    assert [entity["id"] for entity in adapter.get_by_stage("students", "contacted")] == [created["id"]]

    adapter.delete("students", created["id"])
    assert adapter.get_by_id("students", created["id"]) is None


def test_missing_entity_errors(adapter: StorageAdapter) -> None:
    assert adapter.get_by_id("students", "missing") is None
    with pytest.raises(NotFoundError):
        adapter.update("students", "missing", {"name": "x"})
    with pytest.raises(NotFoundError):
        adapter.delete("students", "missing")


def test_filters_behave_the_same_on_every_backend(adapter: StorageAdapter) -> None:
    _seed(adapter, 12)

    by_stage = adapter.get_all("students", QueryFilters(stage=["new", "enrolled"], limit=50))
    assert by_stage.total == 8
    assert {item["stage"] for item in by_stage.items} == {"new", "enrolled"}

    ranged = adapter.get_all(
        "students",
        QueryFilters(
            date_range=DateRange(field="enrolled_on", from_=1_700_000_000_002, to=1_700_000_000_007),
            limit=50,
        ),
    )
    assert sorted(item["score"] for item in ranged.items) == [2, 3, 5, 6, 7]

    custom = adapter.get_all("students", QueryFilters(custom_filters={"score": 4}))
    assert [item["name"] for item in custom.items] == ["Student 04"]

    ordered = adapter.get_all("students", QueryFilters(sort_by="enrolled_on", sort_order="desc", limit=12))
    scores = [item["score"] for item in ordered.items]
    assert scores[:3] == [11, 10, 9]
    assert scores[-3:] == [0, 4, 8]

    searched = adapter.get_all("students", QueryFilters(search="student 1", limit=1))
    assert searched.total == 2
    assert len(searched.items) == 1


def test_stats_count_every_stage(adapter: StorageAdapter) -> None:
    _seed(adapter, 7)

    stats = adapter.get_stats("students")

    assert stats.total == 7
    assert stats.by_stage == {"new": 3, "contacted": 2, "enrolled": 2}


def test_memory_adapter_isolates_tenants() -> None:
    store = KeyValueStore()
    acme = InMemoryStorageAdapter(store, "acme")
    globex = InMemoryStorageAdapter(store, "globex")

    acme.create("students", {"name": "Ana"})

    assert globex.get_all("students").total == 0
    assert store.keys("crm_data:acme:") == ["crm_data:acme:students"]


def test_memory_adapter_keeps_concurrent_writes_to_different_entities() -> None:
    adapter = InMemoryStorageAdapter(KeyValueStore(), COMPANY)
    seeded = _seed(adapter, 300)

    def create_batch(worker: int) -> None:
        for index in range(5):
            adapter.create("students", {"name": f"Worker {worker}-{index}"})

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(create_batch, range(8)))
        list(pool.map(lambda entity: adapter.update("students", entity["id"], {"score": -1}), seeded[:40]))

    assert adapter.get_stats("students").total == 340
    rescored = adapter.get_all("students", QueryFilters(custom_filters={"score": -1}, limit=100))
    assert rescored.total == 40


def test_rest_adapter_sends_postgrest_query(fake_store: FakePostgrest) -> None:
    client = httpx.Client(transport=httpx.MockTransport(fake_store.handler))
    adapter = RestStorageAdapter(REST_URL, "service-key", COMPANY, client=client)

    adapter.get_all(
        "students",
        QueryFilters(stage="new", sort_by="name", custom_filters={"owner": None}, page=3, limit=10),
    )

    request = fake_store.requests[-1]
    params = list(request.url.params.multi_items())
    assert params[0] == ("company_id", "eq.acme")
    assert ("stage", "eq.new") in params
    assert ("owner", "is.null") in params
    assert ("order", "name.asc.nullslast") in params
    assert ("offset", "20") in params
    assert ("limit", "10") in params
    assert request.headers["apikey"] == "service-key"
    assert request.headers["authorization"] == "Bearer service-key"
    assert request.headers["prefer"] == "count=exact"


def test_rest_adapter_isolates_tenants(fake_store: FakePostgrest) -> None:
    client = httpx.Client(transport=httpx.MockTransport(fake_store.handler))
    acme, globex = (
        create_storage_adapter(
            DbConnectionConfig(company_id=company, type="rest", api_url=REST_URL, api_key="service-key"),
            http_client=client,
        )
        for company in ("acme", "globex")
    )

    secret = acme.create("students", {"name": "Acme secret", "company_id": "globex"})

    assert "company_id" not in secret
    assert fake_store.tables["students"][0]["company_id"] == "acme"
    assert globex.get_all("students").total == 0
    assert globex.get_all("students", QueryFilters(search="secret")).total == 0
    assert globex.get_by_id("students", secret["id"]) is None
    assert globex.get_by_stage("students", "new") == []
    assert globex.get_stats("students").total == 0
    with pytest.raises(NotFoundError):
        globex.update("students", secret["id"], {"name": "Globex copy"})
    with pytest.raises(NotFoundError):
        globex.delete("students", secret["id"])

    acme.update("students", secret["id"], {"company_id": "globex"})
    assert acme.get_by_id("students", secret["id"])["name"] == "Acme secret"
    assert globex.get_all("students").total == 0


def test_rest_adapter_quotes_stage_lists(fake_store: FakePostgrest) -> None:
    client = httpx.Client(transport=httpx.MockTransport(fake_store.handler))
    adapter = RestStorageAdapter(REST_URL, "service-key", COMPANY, client=client)
    adapter.create("students", {"name": "Ana", "stage": 'won (paid), "final"'})
    adapter.create("students", {"name": "Bo", "stage": "won"})
    adapter.create("students", {"name": "Cy", "stage": "lost"})

    result = adapter.get_all("students", QueryFilters(stage=['won (paid), "final"', "lost"], limit=10))

    assert sorted(item["name"] for item in result.items) == ["Ana", "Cy"]
    params = list(fake_store.requests[-1].url.params.multi_items())
    assert ("stage", 'in.("won (paid), \\"final\\"","lost")') in params


def test_rest_adapter_surfaces_transport_errors(fake_store: FakePostgrest) -> None:
    fake_store.fail_status = 503
    adapter = RestStorageAdapter(
        REST_URL, "service-key", COMPANY, client=httpx.Client(transport=httpx.MockTransport(fake_store.handler))
    )

    with pytest.raises(TransportError) as exc_info:
        adapter.get_all("students")
    assert exc_info.value.status_code == 503
    assert adapter.test_connection() is False


def test_rest_adapter_rejects_non_json_success_body() -> None:
    def gateway_page(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway</html>", headers={"content-type": "text/html"})

    adapter = RestStorageAdapter(
        REST_URL, "service-key", COMPANY, client=httpx.Client(transport=httpx.MockTransport(gateway_page))
    )

    with pytest.raises(TransportError) as exc_info:
        adapter.get_all("students")
    assert exc_info.value.status_code == 200
    with pytest.raises(TransportError):
        adapter.get_by_id("students", "e-1")


def test_rest_adapter_wraps_network_failures() -> None:
    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    adapter = RestStorageAdapter(
        REST_URL, "service-key", COMPANY, client=httpx.Client(transport=httpx.MockTransport(unreachable))
    )

    with pytest.raises(TransportError):
        adapter.create("students", {"name": "Ana"})


def test_sql_adapter_wraps_database_failures() -> None:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    adapter = SqlStorageAdapter(sessionmaker(bind=engine), COMPANY)

    with pytest.raises(TransportError):
        adapter.get_all("students")
    assert adapter.test_connection() is True


def test_factory_builds_configured_backend(session_factory: sessionmaker) -> None:
    store = KeyValueStore()

    local = create_storage_adapter(DbConnectionConfig(company_id=COMPANY), store=store)
    sql = create_storage_adapter(DbConnectionConfig(company_id=COMPANY, type="sql"), session_factory=session_factory)
    rest = create_storage_adapter(
        DbConnectionConfig(company_id=COMPANY, type="rest", api_url=REST_URL, api_key="service-key")
    )

    assert isinstance(local, InMemoryStorageAdapter)
    assert isinstance(sql, SqlStorageAdapter)
    assert isinstance(rest, RestStorageAdapter)
    assert isinstance(local, StorageAdapter)
    with pytest.raises(ValidationError):
        create_storage_adapter(DbConnectionConfig(company_id=COMPANY, type="sql"))
    with pytest.raises(ValueError):
        DbConnectionConfig(company_id=COMPANY, type="rest")
