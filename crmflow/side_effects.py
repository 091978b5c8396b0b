from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel

from crmflow.metrics import observe_side_effect_failure


logger = logging.getLogger("crmflow.side_effects")


class SideEffectOutcome(BaseModel):
    """Result of one best-effort step run after a primary operation succeeded."""

    name: str
    ok: bool
    error: str | None = None


def run_side_effect(name: str, fn: Callable[[], Any], **log_fields: Any) -> SideEffectOutcome:
    try:
        fn()
    except Exception as exc:
        observe_side_effect_failure(name)
        logger.warning("side_effect.failed", extra={"side_effect": name, "error": str(exc), **log_fields})
        return SideEffectOutcome(name=name, ok=False, error=str(exc))
    return SideEffectOutcome(name=name, ok=True)
