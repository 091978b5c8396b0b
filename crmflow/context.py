from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
current_user_id_var: ContextVar[str | None] = ContextVar("current_user_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_current_user_id(value: str | None) -> Token[str | None]:
    return current_user_id_var.set(value)


def reset_current_user_id(token: Token[str | None]) -> None:
    current_user_id_var.reset(token)


def get_current_user_id() -> str | None:
    return current_user_id_var.get()


@contextmanager
def bound_context(correlation_id: str | None, user_id: str | None = None) -> Iterator[None]:
    """Bind the correlation id and acting user for one request or worker job."""
    correlation_token = set_correlation_id(correlation_id)
    user_token = set_current_user_id(user_id)
    try:
        yield
    finally:
        reset_current_user_id(user_token)
        reset_correlation_id(correlation_token)


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id(), "user_id": get_current_user_id()}
