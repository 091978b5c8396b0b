from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class AutomationTrigger(StrEnum):
    QUOTE_CREATED = "quote_created"
    QUOTE_ACCEPTED = "quote_accepted"
    QUOTE_DECLINED = "quote_declined"
    ORDER_CREATED = "order_created"
    ORDER_CANCELLED = "order_cancelled"
    INVOICE_CREATED = "invoice_created"
    INVOICE_PAID = "invoice_paid"


RuleCondition = Callable[[dict[str, Any], dict[str, Any] | None], bool]


@dataclass(frozen=True)
class DealStageRule:
    """Move a deal to ``to_stage`` when ``trigger`` fires.

    ``from_stage`` restricts the rule to deals currently in that stage (case-insensitive)
    and ``condition`` receives the deal row and the related entity of the trigger.
    """

    trigger: AutomationTrigger
    to_stage: str
    from_stage: str | None = None
    condition: RuleCondition | None = None


# Order is priority: the first matching rule wins.
# quote_accepted has no rule of its own; the order it produces fires order_created.
DEFAULT_STAGE_RULES: tuple[DealStageRule, ...] = (
    DealStageRule(AutomationTrigger.QUOTE_CREATED, "Proposal", from_stage="Prospecting"),
    DealStageRule(AutomationTrigger.QUOTE_DECLINED, "Lost"),
    DealStageRule(AutomationTrigger.ORDER_CREATED, "Won"),
    DealStageRule(AutomationTrigger.ORDER_CANCELLED, "Negotiation"),
    DealStageRule(AutomationTrigger.INVOICE_CREATED, "Won"),
    DealStageRule(AutomationTrigger.INVOICE_PAID, "Won"),
)


def _same_stage(left: str | None, right: str) -> bool:
    return left is not None and left.strip().casefold() == right.strip().casefold()


def match_rule(
    rules: Iterable[DealStageRule],
    trigger: AutomationTrigger | str,
    current_stage_name: str | None,
    deal: dict[str, Any],
    related_entity: dict[str, Any] | None = None,
) -> DealStageRule | None:
    for rule in rules:
        if rule.trigger != trigger:
            continue
        if rule.from_stage is not None and not _same_stage(current_stage_name, rule.from_stage):
            continue
        if rule.condition is not None and not rule.condition(deal, related_entity):
            continue
        return rule
    return None
