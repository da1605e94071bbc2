"""
Tests for pipewright.orchestration.trigger
============================================

What's Being Tested:
    - Push and pull request events against branch filters
    - Manual dispatch on any branch
    - Events with no matching rule are ignored
"""

from pipewright.core.enums import EventKind, TriggerDecision
from pipewright.core.models import Event, TriggerRule
from pipewright.orchestration.trigger import TriggerEvaluator


def _evaluator() -> TriggerEvaluator:
    return TriggerEvaluator(
        [
            TriggerRule(kind=EventKind.PUSH, branches=["main", "release/*"]),
            TriggerRule(kind=EventKind.PULL_REQUEST, branches_ignore=["wip/*"]),
            TriggerRule(kind=EventKind.MANUAL_DISPATCH),
        ]
    )


class TestTriggerEvaluator:
    """Tests for event admission."""

    def test_push_to_matching_branch_admitted(self) -> None:
        decision = _evaluator().evaluate(Event(kind=EventKind.PUSH, ref="refs/heads/release/2.0"))
        assert decision == TriggerDecision.ADMIT

    def test_push_to_other_branch_ignored(self) -> None:
        decision = _evaluator().evaluate(Event(kind=EventKind.PUSH, ref="refs/heads/feature/x"))
        assert decision == TriggerDecision.IGNORE

    def test_pull_request_matches_on_target_branch(self) -> None:
        evaluator = _evaluator()
        into_main = Event(kind=EventKind.PULL_REQUEST, ref="wip/spike", base_ref="main")
        into_wip = Event(kind=EventKind.PULL_REQUEST, ref="feature/x", base_ref="wip/next")

        assert evaluator.evaluate(into_main) == TriggerDecision.ADMIT
        assert evaluator.evaluate(into_wip) == TriggerDecision.IGNORE

    def test_manual_dispatch_on_any_branch(self) -> None:
        event = Event(kind=EventKind.MANUAL_DISPATCH, ref="feature/x", actor="octo")
        assert _evaluator().evaluate(event) == TriggerDecision.ADMIT

    def test_event_kind_without_rule_ignored(self) -> None:
        evaluator = TriggerEvaluator([TriggerRule(kind=EventKind.PUSH)])
        event = Event(kind=EventKind.MANUAL_DISPATCH, ref="main")
        assert evaluator.evaluate(event) == TriggerDecision.IGNORE

    def test_no_rules_ignores_everything(self) -> None:
        assert TriggerEvaluator([]).evaluate(Event(kind=EventKind.PUSH, ref="main")) == (
            TriggerDecision.IGNORE
        )

    def test_rules_property_is_a_copy(self) -> None:
        evaluator = _evaluator()
        evaluator.rules.clear()
        assert len(evaluator.rules) == 3
