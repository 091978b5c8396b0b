from __future__ import annotations

import dataclasses

import pytest

from crmflow.automation.rules import DEFAULT_STAGE_RULES, AutomationTrigger, DealStageRule, match_rule


DEAL = {"id": "d1", "stage_id": "s1", "expected_value_minor": 100000}


@pytest.mark.parametrize(
    ("trigger", "current_stage", "expected"),
    [
        (AutomationTrigger.QUOTE_CREATED, "Prospecting", "Proposal"),
        (AutomationTrigger.QUOTE_CREATED, "prospecting", "Proposal"),
        (AutomationTrigger.QUOTE_DECLINED, "Proposal", "Lost"),
        (AutomationTrigger.ORDER_CREATED, "Negotiation", "Won"),
        (AutomationTrigger.ORDER_CANCELLED, "Won", "Negotiation"),
        (AutomationTrigger.INVOICE_CREATED, "Proposal", "Won"),
        (AutomationTrigger.INVOICE_PAID, None, "Won"),
    ],
)
def test_default_rules(trigger: AutomationTrigger, current_stage: str | None, expected: str) -> None:
    rule = match_rule(DEFAULT_STAGE_RULES, trigger, current_stage, DEAL)
    assert rule is not None
    assert rule.to_stage == expected


def test_quote_created_outside_prospecting_has_no_rule() -> None:
    assert match_rule(DEFAULT_STAGE_RULES, AutomationTrigger.QUOTE_CREATED, "Negotiation", DEAL) is None


def test_quote_accepted_has_no_direct_rule() -> None:
    assert match_rule(DEFAULT_STAGE_RULES, AutomationTrigger.QUOTE_ACCEPTED, "Proposal", DEAL) is None


def test_trigger_accepts_plain_string() -> None:
    rule = match_rule(DEFAULT_STAGE_RULES, "order_created", "Proposal", DEAL)
    assert rule is not None
    assert rule.to_stage == "Won"


def test_table_order_is_priority() -> None:
    rules = (
        DealStageRule(AutomationTrigger.ORDER_CREATED, "Onboarding", from_stage="Negotiation"),
        DealStageRule(AutomationTrigger.ORDER_CREATED, "Won"),
    )

    guarded = match_rule(rules, AutomationTrigger.ORDER_CREATED, "NEGOTIATION", DEAL)
    fallback = match_rule(rules, AutomationTrigger.ORDER_CREATED, "Proposal", DEAL)

    assert guarded is rules[0]
    assert fallback is rules[1]


def test_condition_sees_deal_and_related_entity() -> None:
    seen: list[tuple[dict, dict | None]] = []

    def large_orders_only(deal: dict, related: dict | None) -> bool:
        seen.append((deal, related))
        return related is not None and related.get("total_minor", 0) >= 1_000_000

    rules = (
        DealStageRule(AutomationTrigger.ORDER_CREATED, "Enterprise Won", condition=large_orders_only),
        DealStageRule(AutomationTrigger.ORDER_CREATED, "Won"),
    )

    big = match_rule(rules, AutomationTrigger.ORDER_CREATED, "Proposal", DEAL, {"total_minor": 2_000_000})
    small = match_rule(rules, AutomationTrigger.ORDER_CREATED, "Proposal", DEAL, {"total_minor": 10})

    assert big is not None and big.to_stage == "Enterprise Won"
    assert small is not None and small.to_stage == "Won"
    assert seen[0] == (DEAL, {"total_minor": 2_000_000})


def test_rules_are_immutable() -> None:
    assert isinstance(DEFAULT_STAGE_RULES, tuple)
    with pytest.raises(dataclasses.FrozenInstanceError):
        DEFAULT_STAGE_RULES[0].to_stage = "Anything"  # type: ignore[misc]
