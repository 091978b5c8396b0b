from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Column, Date, DateTime, Numeric, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql import ColumnElement, Select

from crmflow.core.database import Base
from crmflow.errors import StoreError
from crmflow.store.client import Filters, InsertResult, Row
from crmflow.store.models import RESOURCE_MODELS


logger = logging.getLogger("crmflow.store")


class SqlEntityStore:
    """Entity store over a SQLAlchemy session, speaking the same filter dialect as PostgREST.

    Supported operators: ``eq``, ``neq``, ``lt``, ``lte``, ``gt``, ``gte``, ``ilike``
    (``*`` as wildcard), ``in.(a,b)``, ``is.null`` and ``not.is.null``. Inserts always
    return the created row, so callers never need the Location or recency fallbacks here.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def select(
        self,
        resource: str,
        filters: Filters | None = None,
        *,
        columns: str = "*",
        order: str | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        model = self._model(resource)
        stmt: Select[Any] = select(model)
        for clause in self._clauses(model, filters or {}):
            stmt = stmt.where(clause)
        for order_clause in self._order_by(model, order):
            stmt = stmt.order_by(order_clause)
        if limit is not None:
            stmt = stmt.limit(limit)

        with self._guard(resource, "select"):
            rows = self.session.scalars(stmt).all()
        wanted = None if columns.strip() == "*" else {item.strip() for item in columns.split(",") if item.strip()}
        return [self._to_row(row, wanted) for row in rows]

    def insert(self, resource: str, row: Row) -> InsertResult:
        model = self._model(resource)
        values = self._values(model, row)
        instance = model(**values)
        with self._guard(resource, "insert"):
            self.session.add(instance)
            self.session.commit()
            self.session.refresh(instance)
        created = self._to_row(instance, None)
        return InsertResult(status_code=201, row=created, location=f"/{resource}?id=eq.{created['id']}")

    def update(self, resource: str, filters: Filters, patch: Row) -> list[Row]:
        model = self._model(resource)
        clauses = self._clauses(model, filters)
        values = self._values(model, patch)
        with self._guard(resource, "update"):
            ids = self.session.scalars(select(model.id).where(*clauses)).all()  # type: ignore[attr-defined]
            if not ids:
                return []
            self.session.execute(update(model).where(model.id.in_(ids)).values(**values))  # type: ignore[attr-defined]
            self.session.commit()
            self.session.expire_all()
            refreshed = self.session.scalars(select(model).where(model.id.in_(ids))).all()  # type: ignore[attr-defined]
        return [self._to_row(item, None) for item in refreshed]

    def delete(self, resource: str, filters: Filters) -> None:
        model = self._model(resource)
        clauses = self._clauses(model, filters)
        with self._guard(resource, "delete"):
            self.session.execute(delete(model).where(*clauses))
            self.session.commit()

    @contextmanager
    def _guard(self, resource: str, action: str) -> Iterator[None]:
        """Roll back and re-raise database failures as ``StoreError``."""
        try:
            yield
        except IntegrityError as exc:
            self.session.rollback()
            raise StoreError(f"{resource} write conflicts with existing data: {exc.orig}", status_code=409) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error("store.query_failed", extra={"resource": resource, "error": str(exc)})
            raise StoreError(f"{action} {resource} failed: {exc}") from exc

    @staticmethod
    def _model(resource: str) -> type[Base]:
        model = RESOURCE_MODELS.get(resource)
        if model is None:
            raise StoreError(f"unknown resource {resource}", status_code=404)
        return model

    @staticmethod
    def _column(model: type[Base], name: str) -> Column[Any]:
        column = model.__table__.columns.get(name)  # type: ignore[attr-defined]
        if column is None:
            raise StoreError(f"column {model.__tablename__}.{name} does not exist", status_code=400)  # type: ignore[attr-defined]
        return column

    def _values(self, model: type[Base], row: Row) -> dict[str, Any]:
        return {key: _coerce(self._column(model, key), value) for key, value in row.items()}

    def _clauses(self, model: type[Base], filters: Filters) -> list[ColumnElement[bool]]:
        clauses: list[ColumnElement[bool]] = []
        for name, expression in filters.items():
            column = self._column(model, name)
            attr = getattr(model, column.key)
            if expression == "is.null":
                clauses.append(attr.is_(None))
                continue
            if expression == "not.is.null":
                clauses.append(attr.is_not(None))
                continue

            operator, _, raw = expression.partition(".")
            if operator == "eq":
                clauses.append(attr == _coerce(column, raw))
            elif operator == "neq":
                clauses.append(attr != _coerce(column, raw))
            elif operator == "lt":
                clauses.append(attr < _coerce(column, raw))
            elif operator == "lte":
                clauses.append(attr <= _coerce(column, raw))
            elif operator == "gt":
                clauses.append(attr > _coerce(column, raw))
            elif operator == "gte":
                clauses.append(attr >= _coerce(column, raw))
            elif operator == "ilike":
                clauses.append(attr.ilike(raw.replace("*", "%")))
            elif operator == "in":
                items = [item.strip() for item in raw.strip("()").split(",") if item.strip()]
                clauses.append(attr.in_([_coerce(column, item) for item in items]))
            else:
                raise StoreError(f"unsupported filter operator {operator!r} on {name}", status_code=400)
        return clauses

    def _order_by(self, model: type[Base], order: str | None) -> list[Any]:
        if not order:
            return []
        clauses = []
        for part in order.split(","):
            name, _, direction = part.strip().partition(".")
            attr = getattr(model, self._column(model, name).key)
            clauses.append(attr.desc() if direction == "desc" else attr.asc())
        return clauses

    @staticmethod
    def _to_row(instance: Base, wanted: set[str] | None) -> Row:
        row: Row = {}
        for column in instance.__table__.columns:  # type: ignore[attr-defined]
            if wanted is not None and column.name not in wanted:
                continue
            row[column.name] = _to_wire(getattr(instance, column.key))
        return row


def _coerce(column: Column[Any], value: Any) -> Any:
    if value is None:
        return None
    column_type = column.type
    if isinstance(column_type, DateTime):
        return datetime.fromisoformat(value) if isinstance(value, str) else value
    if isinstance(column_type, Date):
        return date.fromisoformat(value[:10]) if isinstance(value, str) else value
    if isinstance(column_type, Numeric) and column_type.asdecimal and not isinstance(value, Decimal):
        return Decimal(str(value))
    if column_type.python_type is int and isinstance(value, str):
        return int(value)
    return value


def _to_wire(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value
