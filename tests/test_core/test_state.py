"""
Tests for pipewright.core.state
=================================

What's Being Tested:
    - JobStatus:         Terminal-state classification
    - RunState:          Defaults, status helpers, duration
    - EnvironmentState:  Approval bookkeeping
"""

from datetime import timedelta

from pipewright.core.enums import EventKind, JobStatus, RunPhase, RunStatus
from pipewright.core.models import Event
from pipewright.core.state import EnvironmentState, JobState, RunState


def _make_run(**jobs: JobStatus) -> RunState:
    return RunState(
        run_id="run-1",
        pipeline_name="docs",
        event=Event(kind=EventKind.PUSH, ref="main"),
        jobs={name: JobState(name=name, status=status) for name, status in jobs.items()},
    )


class TestJobStatus:
    def test_terminal_states(self) -> None:
        assert JobStatus.SUCCEEDED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert JobStatus.CANCELLED.is_terminal
        assert not JobStatus.PENDING.is_terminal
        assert not JobStatus.RUNNING.is_terminal

    def test_str_enum_compares_with_strings(self) -> None:
        assert JobStatus.FAILED == "failed"


class TestRunState:
    """Tests for the RunState master record."""

    def test_new_run_defaults(self) -> None:
        state = _make_run(build=JobStatus.PENDING)
        assert state.phase == RunPhase.ADMITTED
        assert state.status == RunStatus.PENDING
        assert state.job_log == []
        assert state.error_log == []
        assert not state.is_finished
        assert state.duration_seconds is None

    def test_jobs_with_status_is_sorted(self) -> None:
        state = _make_run(
            deploy=JobStatus.PENDING,
            build=JobStatus.SUCCEEDED,
            lint=JobStatus.SUCCEEDED,
        )
        assert state.jobs_with_status(JobStatus.SUCCEEDED) == ["build", "lint"]
        assert state.job_status("deploy") == JobStatus.PENDING

    def test_finished_and_succeeded(self) -> None:
        state = _make_run(build=JobStatus.SUCCEEDED).model_copy(
            update={"phase": RunPhase.ARCHIVED, "status": RunStatus.SUCCEEDED}
        )
        assert state.is_finished
        assert state.succeeded

    def test_duration(self) -> None:
        state = _make_run()
        finished = state.model_copy(update={"completed_at": state.started_at + timedelta(seconds=5)})
        assert finished.duration_seconds == 5.0


class TestEnvironmentState:
    def test_defaults_are_unprotected(self) -> None:
        env = EnvironmentState(name="github-pages")
        assert env.required_approvals == 0
        assert env.deployment_branches is None
        assert env.last_deployed_url is None

    def test_approvals_for_returns_copy(self) -> None:
        env = EnvironmentState(name="prod", approvals={"run-1": ["alice"]})
        reviewers = env.approvals_for("run-1")
        reviewers.append("bob")
        assert env.approvals_for("run-1") == ["alice"]
        assert env.approvals_for("run-2") == []
