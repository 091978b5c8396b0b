from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace

from crmflow.activity.service import ActivityLogService
from crmflow.automation.rules import DEFAULT_STAGE_RULES, AutomationTrigger, DealStageRule, match_rule
from crmflow.automation.schemas import AutomationResult, BatchAutomationItem, BatchAutomationResult, BatchItemResult
from crmflow.context import get_correlation_id
from crmflow.metrics import observe_stage_automation
from crmflow.pipelines.service import StageResolver
from crmflow.projects.service import ProjectService
from crmflow.side_effects import SideEffectOutcome, run_side_effect
from crmflow.store.client import EntityStore, eq, first_or_none
from crmflow.store.models import utcnow


logger = logging.getLogger("crmflow.automation")
tracer = trace.get_tracer("crmflow.automation")

# Target stage name (casefolded) -> project status applied by the cascade.
PROJECT_STATUS_BY_STAGE = {"won": "completed", "lost": "cancelled"}


@dataclass(slots=True)
class DealStageAutomationService:
    store: EntityStore
    resolver: StageResolver
    activity_log: ActivityLogService
    projects: ProjectService
    rules: tuple[DealStageRule, ...] = DEFAULT_STAGE_RULES

    @classmethod
    def from_store(
        cls,
        store: EntityStore,
        rules: tuple[DealStageRule, ...] = DEFAULT_STAGE_RULES,
    ) -> DealStageAutomationService:
        return cls(
            store=store,
            resolver=StageResolver(store),
            activity_log=ActivityLogService(store),
            projects=ProjectService(store),
            rules=rules,
        )

    def automate_deal_stage(
        self,
        trigger: AutomationTrigger | str,
        deal_id: str,
        related_entity: dict[str, Any] | None = None,
    ) -> AutomationResult:
        """Apply the first rule matching ``trigger`` to the deal.

        Returns ``updated=False`` with a reason for every inapplicable case. Store errors
        while reading or patching the deal propagate; the activity record and project
        cascade after the patch are best-effort and reported in ``side_effects``.
        """
        trigger = AutomationTrigger(trigger)
        with tracer.start_as_current_span("automation.automate_deal_stage") as span:
            span.set_attribute("deal_id", deal_id)
            span.set_attribute("trigger", trigger.value)
            span.set_attribute("correlation_id", get_correlation_id() or "")

            result = self._automate(trigger, deal_id, related_entity)
            span.set_attribute("updated", result.updated)
            observe_stage_automation(trigger.value, "updated" if result.updated else "skipped")
            return result

    def _automate(
        self,
        trigger: AutomationTrigger,
        deal_id: str,
        related_entity: dict[str, Any] | None,
    ) -> AutomationResult:
        deal = first_or_none(self.store.select("deals", {"id": eq(deal_id)}, limit=1))
        if deal is None or deal.get("deleted_at") is not None:
            logger.warning("automation.deal_not_found", extra={"deal_id": deal_id, "trigger": trigger.value})
            return AutomationResult(updated=False, reason="Deal not found")

        current_stage_id = deal.get("stage_id")
        current_stage_name = self.resolver.resolve_stage_name(current_stage_id) if current_stage_id else None
        pipeline_id = self.resolver.resolve_pipeline_id(current_stage_id) if current_stage_id else None

        rule = match_rule(self.rules, trigger, current_stage_name, deal, related_entity)
        if rule is None:
            logger.info(
                "automation.no_rule",
                extra={"deal_id": deal_id, "trigger": trigger.value, "from_stage": current_stage_name},
            )
            return AutomationResult(updated=False, reason="No applicable rules", from_stage=current_stage_name)

        # Never fall back to an unscoped lookup: the target must live in the deal's pipeline.
        target_stage_id = self.resolver.resolve_stage_id(rule.to_stage, pipeline_id) if pipeline_id else None
        if target_stage_id is None:
            logger.warning(
                "automation.target_stage_missing",
                extra={"deal_id": deal_id, "trigger": trigger.value, "to_stage": rule.to_stage},
            )
            return AutomationResult(
                updated=False,
                reason="Target stage not found in current pipeline",
                from_stage=current_stage_name,
                to_stage=rule.to_stage,
            )

        if target_stage_id == current_stage_id:
            return AutomationResult(
                updated=False,
                reason="Already in target stage",
                from_stage=current_stage_name,
                to_stage=rule.to_stage,
            )

        self.store.update(
            "deals",
            {"id": eq(deal_id)},
            {"stage_id": target_stage_id, "updated_at": utcnow().isoformat()},
        )
        logger.info(
            "automation.stage_changed",
            extra={
                "deal_id": deal_id,
                "trigger": trigger.value,
                "from_stage": current_stage_name,
                "to_stage": rule.to_stage,
            },
        )

        side_effects = [
            run_side_effect(
                "activity.stage_changed",
                lambda: self.activity_log.log_activity(
                    "stage_changed",
                    deal_id,
                    {
                        "fromStage": current_stage_name,
                        "toStage": rule.to_stage,
                        "trigger": trigger.value,
                        "automated": True,
                    },
                ),
                deal_id=deal_id,
            ),
        ]
        project_status = PROJECT_STATUS_BY_STAGE.get(rule.to_stage.strip().casefold())
        if project_status is not None:
            side_effects.append(
                run_side_effect(
                    "project.status_cascade",
                    lambda: self.projects.update_status_by_deal_id(deal_id, project_status),
                    deal_id=deal_id,
                )
            )

        return AutomationResult(
            updated=True,
            reason=f"Automated stage change due to {trigger.value}",
            from_stage=current_stage_name,
            to_stage=rule.to_stage,
            side_effects=side_effects,
        )

    def trigger_deal_stage_automation(
        self,
        trigger: AutomationTrigger | str,
        deal_id: str | None,
        related_entity: dict[str, Any] | None = None,
    ) -> SideEffectOutcome:
        """Fire-and-forget entry point used by the document flows; never raises."""
        name = f"automation.{trigger}"
        if not deal_id:
            return SideEffectOutcome(name=name, ok=True)
        try:
            self.automate_deal_stage(trigger, deal_id, related_entity)
        except Exception as exc:
            observe_stage_automation(str(trigger), "failed")
            logger.exception("automation.trigger_failed", extra={"deal_id": deal_id, "trigger": str(trigger)})
            return SideEffectOutcome(name=name, ok=False, error=str(exc))
        return SideEffectOutcome(name=name, ok=True)

    def batch_automate_deal_stages(self, items: Iterable[BatchAutomationItem]) -> BatchAutomationResult:
        results: list[BatchItemResult] = []
        success = 0
        failed = 0
        for item in items:
            try:
                result = self.automate_deal_stage(item.trigger, item.deal_id, item.related_entity)
            except Exception as exc:
                failed += 1
                observe_stage_automation(item.trigger.value, "failed")
                logger.warning(
                    "automation.batch_item_failed",
                    extra={"deal_id": item.deal_id, "trigger": item.trigger.value, "error": str(exc)},
                )
                results.append(BatchItemResult(deal_id=item.deal_id, trigger=item.trigger, error=str(exc)))
                continue

            if result.updated:
                success += 1
            else:
                failed += 1
            results.append(BatchItemResult(deal_id=item.deal_id, trigger=item.trigger, result=result))

        logger.info("automation.batch_completed", extra={"success": success, "failed": failed})
        return BatchAutomationResult(success=success, failed=failed, results=results)
