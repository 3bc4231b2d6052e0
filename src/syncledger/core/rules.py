"""
Rule Runner - before/after hooks around target writes.

Rules applicable to the record's action and timing run in ``order``:
- A false condition vetoes the action (before) or skips the rule (after)
- mapping reshapes the target record (before) or the logged snapshot (after)
- error rejects the record with a ValidationError
- script is delegated to the optional ScriptRunner
- synchronization requests a follow-up run of another synchronization
"""

from __future__ import annotations

import logging
from typing import Any

from syncledger.connectors.base import Mapper, RuleEvaluator, ScriptRunner
from syncledger.errors import RuleAbort, SyncLedgerError, TransformationError, ValidationError
from syncledger.models import (
    CrudAction,
    ErrorRule,
    MappingRule,
    Rule,
    RuleTiming,
    ScriptRule,
    SynchronizationRule,
)
from syncledger.utils.logger import context as log_context, get_logger


class RuleRunner:
    """
    Applies rule hooks to a single record.

    Example:
        runner = RuleRunner(ConditionEvaluator(), KeyPathMapper())
        follow_ups: list[str] = []

        record = await runner.apply(
            sync.rules, CrudAction.CREATE, RuleTiming.BEFORE,
            {"origin": origin, "synchronization_id": sync.id},
            mapped, follow_ups,
        )
    """

    def __init__(
        self,
        evaluator: RuleEvaluator,
        mapper: Mapper,
        script_runner: ScriptRunner | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.evaluator = evaluator
        self.mapper = mapper
        self.script_runner = script_runner
        self.logger = logger or get_logger("rules")

    @staticmethod
    def applicable(rules: list[Rule], action: CrudAction, timing: RuleTiming) -> list[Rule]:
        return sorted(
            (rule for rule in rules if rule.applies_to(action, timing)),
            key=lambda rule: rule.order,
        )

    async def apply(
        self,
        rules: list[Rule],
        action: CrudAction,
        timing: RuleTiming,
        context: dict[str, Any],
        record: dict[str, Any],
        follow_ups: list[str],
    ) -> dict[str, Any]:
        """
        Run every applicable rule against ``record``.

        Args:
            rules: The synchronization's rules
            action: Action about to be (or just) applied
            timing: before or after
            context: Condition context (origin record, synchronization id, ...)
            record: Target record (before) or target snapshot (after)
            follow_ups: Collects synchronization ids requested by rules

        Returns:
            The (possibly reshaped) record

        Raises:
            RuleAbort: A before rule's conditions were not met
            ValidationError: An error rule fired
            TransformationError: A mapping or script rule failed
        """
        for rule in self.applicable(rules, action, timing):
            rule_context = {**context, "target": record, "action": action.value}

            if rule.conditions and not self.evaluator.evaluate(rule.conditions, rule_context):
                if timing == RuleTiming.BEFORE:
                    raise RuleAbort(rule.id, action.value)
                continue

            self.logger.debug(
                f"Applying {rule.type.value} rule {rule.id}",
                extra=log_context(rule_id=rule.id, timing=timing.value, action=action.value),
            )
            record = await self._apply_rule(rule, rule_context, record, follow_ups)

        return record

    async def _apply_rule(
        self,
        rule: Rule,
        context: dict[str, Any],
        record: dict[str, Any],
        follow_ups: list[str],
    ) -> dict[str, Any]:
        if isinstance(rule, MappingRule):
            return self.mapper.transform(record, rule.mapping)

        if isinstance(rule, ErrorRule):
            message = rule.message or rule.error_name
            raise ValidationError(f"{rule.error_name}: {message}", code=str(rule.code))

        if isinstance(rule, ScriptRule):
            if self.script_runner is None:
                raise TransformationError(
                    f"Rule {rule.id} needs a script runner but none is configured",
                    code="script_runner_missing",
                )
            try:
                result = await self.script_runner.run(rule.script, context)
            except SyncLedgerError:
                raise
            except Exception as e:
                raise TransformationError(f"Script rule {rule.id} failed: {e}") from e
            return result if isinstance(result, dict) else record

        if isinstance(rule, SynchronizationRule):
            if rule.synchronization_id not in follow_ups:
                follow_ups.append(rule.synchronization_id)
            return record

        raise TransformationError(f"Unsupported rule type: {rule.type.value}")
