from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from app.context import get_correlation_id
from app.core.errors import NotFoundError, TransportError
from app.metrics import observe_storage_operation, observe_storage_transport_error
from app.otel import get_tracer
from app.storage.base import RESERVED_KEYS, Entity, PaginatedResult, QueryFilters, StageStats
from app.storage.query import count_by_stage, matches_search, new_entity, now_ms, paginate, total_pages


logger = logging.getLogger("app.storage.rest")
tracer = get_tracer("app.storage.rest")

TENANT_COLUMN = "company_id"


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _quoted(value: Any) -> str:
    # List items are always double-quoted so "," "(" and ")" stay inside the value.
    escaped = _literal(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _parse_total(content_range: str | None) -> int | None:
    # "0-24/60" or "*/0"
    if not content_range or "/" not in content_range:
        return None
    _, _, total = content_range.rpartition("/")
    return int(total) if total.isdigit() else None


class RestStorageAdapter:
    """Remote backend speaking the PostgREST dialect under ``/rest/v1/{entity_type}``.

    Every row carries a ``company_id`` column. Writes stamp it and every read,
    patch and delete filters on it, so tenants sharing one remote store never
    see each other's rows. The column is stripped from returned entities.
    Ids and timestamps are generated client-side so both backends produce the
    same entity shape. Failures surface as ``TransportError`` and are never
    retried here.
    """

    backend = "rest"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        company_id: str,
        *,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._company_id = company_id
        self._client = client or httpx.Client(timeout=timeout)
        self._timeout = timeout
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def close(self) -> None:
        self._client.close()

    def _tenant(self) -> tuple[str, str]:
        return (TENANT_COLUMN, f"eq.{self._company_id}")

    def _request(
        self,
        method: str,
        operation: str,
        entity_type: str | None,
        *,
        params: list[tuple[str, str]] | None = None,
        body: Any = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}/rest/v1/{entity_type}" if entity_type else f"{self._base_url}/rest/v1/"
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer

        with tracer.start_as_current_span(f"storage.rest.{operation}") as span:
            span.set_attribute("storage.backend", self.backend)
            span.set_attribute("http.method", method)
            if entity_type:
                span.set_attribute("entity_type", entity_type)
            correlation_id = get_correlation_id()
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)

            try:
                response = self._client.request(
                    method,
                    url,
                    params=params,
                    json=body,
                    headers=headers,
                    timeout=self._timeout,
                )
            except httpx.HTTPError as exc:
                self._record_failure(operation, entity_type, str(exc))
                raise TransportError(
                    f"remote store request failed: {exc.__class__.__name__}",
                    operation=operation,
                    entity_type=entity_type,
                ) from exc

            span.set_attribute("http.status_code", response.status_code)
            if not response.is_success:
                self._record_failure(operation, entity_type, f"status {response.status_code}")
                raise TransportError(
                    f"remote store returned {response.status_code}",
                    status_code=response.status_code,
                    operation=operation,
                    entity_type=entity_type,
                )

        observe_storage_operation(self.backend, operation)
        return response

    def _record_failure(self, operation: str, entity_type: str | None, error: str) -> None:
        observe_storage_operation(self.backend, operation, outcome="error")
        observe_storage_transport_error(self.backend)
        logger.warning(
            "storage.transport_error",
            extra={"backend": self.backend, "operation": operation, "entity_type": entity_type, "error": error},
        )

    def _rows(self, response: httpx.Response, operation: str, entity_type: str) -> list[Entity]:
        if not response.content:
            return []
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            payload = [payload]
        if not isinstance(payload, list) or not all(isinstance(row, dict) for row in payload):
            self._record_failure(operation, entity_type, "invalid body")
            raise TransportError(
                "remote store returned an invalid body",
                status_code=response.status_code,
                operation=operation,
                entity_type=entity_type,
            )
        return [{key: value for key, value in row.items() if key != TENANT_COLUMN} for row in payload]

    def _filter_params(self, filters: QueryFilters) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = [self._tenant()]
        stages = filters.stage_list()
        if stages is not None:
            if len(stages) == 1:
                params.append(("stage", f"eq.{stages[0]}"))
            else:
                params.append(("stage", f"in.({','.join(_quoted(stage) for stage in stages)})"))
        if filters.date_range is not None:
            field = filters.date_range.field
            params.append((field, "not.is.null"))
            if filters.date_range.from_ is not None:
                params.append((field, f"gte.{_literal(filters.date_range.from_)}"))
            if filters.date_range.to is not None:
                params.append((field, f"lte.{_literal(filters.date_range.to)}"))
        for key, value in (filters.custom_filters or {}).items():
            if key == TENANT_COLUMN:
                continue
            params.append((key, "is.null" if value is None else f"eq.{_literal(value)}"))
        if filters.sort_by:
            params.append(("order", f"{filters.sort_by}.{filters.sort_order}.nullslast"))
        return params

    def test_connection(self) -> bool:
        try:
            self._request("GET", "test_connection", None)
        except TransportError:
            return False
        return True

    def get_all(self, entity_type: str, filters: QueryFilters | None = None) -> PaginatedResult:
        filters = filters or QueryFilters()
        params = self._filter_params(filters)

        if filters.search:
            # No server-side equivalent: fetch the filtered set and finish locally.
            response = self._request("GET", "get_all", entity_type, params=params)
            rows = self._rows(response, "get_all", entity_type)
            selected = [row for row in rows if matches_search(row, filters.search)]
            return paginate(selected, filters.page, filters.limit)

        offset = (filters.page - 1) * filters.limit
        params.extend([("offset", str(offset)), ("limit", str(filters.limit))])
        response = self._request("GET", "get_all", entity_type, params=params, prefer="count=exact")
        items = self._rows(response, "get_all", entity_type)
        total = _parse_total(response.headers.get("content-range"))
        if total is None:
            total = offset + len(items)
        return PaginatedResult(
            items=items,
            total=total,
            page=filters.page,
            limit=filters.limit,
            total_pages=total_pages(total, filters.limit),
        )

    def get_by_id(self, entity_type: str, entity_id: str) -> Entity | None:
        params = [self._tenant(), ("id", f"eq.{entity_id}"), ("limit", "1")]
        rows = self._rows(self._request("GET", "get_by_id", entity_type, params=params), "get_by_id", entity_type)
        return rows[0] if rows else None

    def create(self, entity_type: str, data: dict[str, Any]) -> Entity:
        entity = new_entity({key: value for key, value in data.items() if key != TENANT_COLUMN})
        response = self._request(
            "POST",
            "create",
            entity_type,
            body={**entity, TENANT_COLUMN: self._company_id},
            prefer="return=representation",
        )
        rows = self._rows(response, "create", entity_type)
        return rows[0] if rows else entity

    def update(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> Entity:
        patch = {key: value for key, value in data.items() if key not in RESERVED_KEYS and key != TENANT_COLUMN}
        patch["updated_at"] = now_ms()
        response = self._request(
            "PATCH",
            "update",
            entity_type,
            params=[self._tenant(), ("id", f"eq.{entity_id}")],
            body=patch,
            prefer="return=representation",
        )
        rows = self._rows(response, "update", entity_type)
        if not rows:
            raise NotFoundError("entity not found", entity_type=entity_type, entity_id=entity_id)
        return rows[0]

    def delete(self, entity_type: str, entity_id: str) -> None:
        response = self._request(
            "DELETE",
            "delete",
            entity_type,
            params=[self._tenant(), ("id", f"eq.{entity_id}")],
            prefer="return=representation",
        )
        if not self._rows(response, "delete", entity_type):
            raise NotFoundError("entity not found", entity_type=entity_type, entity_id=entity_id)

    def move_stage(self, entity_type: str, entity_id: str, stage: str) -> Entity:
        return self.update(entity_type, entity_id, {"stage": stage})

    def get_by_stage(self, entity_type: str, stage: str) -> list[Entity]:
        params = [self._tenant(), ("stage", f"eq.{stage}")]
        return self._rows(self._request("GET", "get_by_stage", entity_type, params=params), "get_by_stage", entity_type)

    def get_stats(self, entity_type: str) -> StageStats:
        params = [self._tenant(), ("select", "stage")]
        return count_by_stage(
            self._rows(self._request("GET", "get_stats", entity_type, params=params), "get_stats", entity_type)
        )
