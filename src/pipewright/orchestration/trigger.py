"""
pipewright.orchestration.trigger - Trigger Evaluator
======================================================

Decides whether an incoming event starts a pipeline run.

    Event(kind, ref, actor) ──→ TriggerEvaluator(rules) ──→ ADMIT | IGNORE

Rules are validated when the pipeline document is loaded (TriggerRule's
own validator), so evaluation itself never raises for bad configuration.

Matching:
    - manual_dispatch: admitted whenever the pipeline declares it, on any ref.
    - push: the pushed branch must pass the rule's branch filter.
    - pull_request: the PR's target branch (base_ref, falling back to ref)
      must pass the rule's branch filter.
"""

from __future__ import annotations

from typing import Iterable

import structlog

from pipewright.core.enums import EventKind, TriggerDecision
from pipewright.core.models import Event, TriggerRule


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


class TriggerEvaluator:
    """Evaluates events against a pipeline's declared trigger rules.

    Example:
        >>> evaluator = TriggerEvaluator([TriggerRule(kind=EventKind.PUSH, branches=["main"])])
        >>> evaluator.evaluate(Event(kind=EventKind.PUSH, ref="refs/heads/main"))
        <TriggerDecision.ADMIT: 'admit'>
    """

    def __init__(self, rules: Iterable[TriggerRule]) -> None:
        self._rules = list(rules)
        self._logger = logger.bind(component="trigger_evaluator")

    @property
    def rules(self) -> list[TriggerRule]:
        return list(self._rules)

    def evaluate(self, event: Event) -> TriggerDecision:
        """Return ADMIT if any rule matches the event, IGNORE otherwise."""
        for rule in self._rules:
            if rule.kind != event.kind:
                continue
            if event.kind == EventKind.MANUAL_DISPATCH or rule.matches_branch(event.filter_branch):
                self._logger.info(
                    "event_admitted",
                    event_id=event.event_id,
                    kind=event.kind.value,
                    ref=event.ref,
                    actor=event.actor,
                )
                return TriggerDecision.ADMIT

        self._logger.info(
            "event_ignored",
            event_id=event.event_id,
            kind=event.kind.value,
            ref=event.ref,
        )
        return TriggerDecision.IGNORE
