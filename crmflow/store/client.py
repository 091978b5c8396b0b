from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from crmflow.context import get_correlation_id
from crmflow.core.config import Settings
from crmflow.errors import StoreError


logger = logging.getLogger("crmflow.store")
tracer = trace.get_tracer("crmflow.store")

Row = dict[str, Any]
Filters = dict[str, str]


@dataclass(frozen=True)
class InsertResult:
    """Outcome of a POST; a store may answer with the row, a Location header, or neither."""

    status_code: int
    row: Row | None = None
    location: str | None = None


class EntityStore(Protocol):
    def select(
        self,
        resource: str,
        filters: Filters | None = None,
        *,
        columns: str = "*",
        order: str | None = None,
        limit: int | None = None,
    ) -> list[Row]: ...

    def insert(self, resource: str, row: Row) -> InsertResult: ...

    def update(self, resource: str, filters: Filters, patch: Row) -> list[Row]: ...

    def delete(self, resource: str, filters: Filters) -> None: ...


def eq(value: object) -> str:
    return f"eq.{value}"


def first_or_none(rows: list[Row]) -> Row | None:
    return rows[0] if rows else None


def id_from_location(location: str) -> str | None:
    url = httpx.URL(location)
    id_param = url.params.get("id")
    if id_param:
        return id_param.removeprefix("eq.")
    last_segment = url.path.rstrip("/").rsplit("/", 1)[-1]
    return last_segment or None


def follow_location(store: EntityStore, resource: str, location: str) -> Row | None:
    entity_id = id_from_location(location)
    if entity_id is None or entity_id == resource:
        return None
    return first_or_none(store.select(resource, {"id": eq(entity_id)}, limit=1))


class PostgrestEntityStore:
    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 10.0,
        return_representation: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self.return_representation = return_representation
        self._client = httpx.Client(base_url=base_url, headers=headers, timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings) -> PostgrestEntityStore:
        return cls(
            settings.store_url,
            api_key=settings.store_api_key,
            timeout=settings.store_timeout_seconds,
            return_representation=settings.store_return_representation,
        )

    def close(self) -> None:
        self._client.close()

    def select(
        self,
        resource: str,
        filters: Filters | None = None,
        *,
        columns: str = "*",
        order: str | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        params: dict[str, str] = dict(filters or {})
        params["select"] = columns
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)
        response = self._request("GET", resource, params=params)
        return self._rows(response)

    def insert(self, resource: str, row: Row) -> InsertResult:
        headers = {"Prefer": "return=representation"} if self.return_representation else {}
        response = self._request("POST", resource, json=row, headers=headers)
        rows = self._rows(response)
        return InsertResult(
            status_code=response.status_code,
            row=rows[0] if rows else None,
            location=response.headers.get("location"),
        )

    def update(self, resource: str, filters: Filters, patch: Row) -> list[Row]:
        headers = {"Prefer": "return=representation"} if self.return_representation else {}
        response = self._request("PATCH", resource, params=filters, json=patch, headers=headers)
        return self._rows(response)

    def delete(self, resource: str, filters: Filters) -> None:
        self._request("DELETE", resource, params=filters)

    def _request(
        self,
        method: str,
        resource: str,
        *,
        params: dict[str, str] | None = None,
        json: Row | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        correlation_id = get_correlation_id()
        request_headers = dict(headers or {})
        if correlation_id:
            request_headers["x-correlation-id"] = correlation_id

        with tracer.start_as_current_span(f"store.{method.lower()}") as span:
            span.set_attribute("resource", resource)
            span.set_attribute("correlation_id", correlation_id or "")
            try:
                response = self._client.request(method, f"/{resource}", params=params, json=json, headers=request_headers)
            except httpx.HTTPError as exc:
                logger.error("store.transport_failed", extra={"resource": resource, "error": str(exc)})
                raise StoreError(f"{method} /{resource} failed: {exc}") from exc

            span.set_attribute("status_code", response.status_code)
            if response.is_error:
                message = self._error_message(response)
                logger.warning(
                    "store.request_rejected",
                    extra={"resource": resource, "status_code": response.status_code, "error": message},
                )
                raise StoreError(
                    f"{method} /{resource} failed with {response.status_code}: {message}",
                    status_code=response.status_code,
                )
            return response

    @staticmethod
    def _rows(response: httpx.Response) -> list[Row]:
        if response.status_code == 204 or not response.content:
            return []
        try:
            payload = response.json()
        except ValueError as exc:
            resource = response.request.url.path
            logger.warning("store.malformed_body", extra={"resource": resource, "status_code": response.status_code})
            raise StoreError(
                f"{response.request.method} {resource} returned a non-JSON body: {response.text[:200]}",
                status_code=response.status_code,
            ) from exc
        if isinstance(payload, list):
            return [item for item in payload if isinstance(item, dict)]
        if isinstance(payload, dict) and payload:
            return [payload]
        return []

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(payload, dict):
            return str(payload.get("message") or payload.get("details") or payload)
        return str(payload)[:200]
