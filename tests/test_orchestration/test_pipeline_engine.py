"""
Tests for pipewright.orchestration.pipeline_engine
====================================================

What's Being Tested:
    - Admission:      ignored events create no run
    - Scheduling:     dependency order, job log, outputs, artifact visibility
    - Failure:        dependents of a failed job stay PENDING, run FAILED
    - Optional jobs:  a non-required failure does not fail the run
    - Preflight:      graph and permission errors reject the run before any step
    - Cancellation:   running jobs interrupted, unscheduled jobs CANCELLED,
                      a deployment already past the gate finishes
    - Gate timeout:   a queued deployment gives up and the run fails
    - Parallelism:    max_parallel_jobs bounds concurrently running jobs
"""

import asyncio

from pipewright.core.config import ExecutorConfig, GateConfig
from pipewright.core.enums import (
    EventKind,
    JobStatus,
    Permission,
    RunPhase,
    RunStatus,
    StepAction,
)
from pipewright.core.models import Event, JobDefinition, PipelineDefinition, StepDefinition, TriggerRule
from pipewright.orchestration.concurrency_gate import ConcurrencyGate
from pipewright.orchestration.pipeline_engine import PipelineEngine


# =============================================================================
# Helpers
# =============================================================================
async def _until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def _run_job(name: str, command: str, *needs: str, required: bool = True) -> JobDefinition:
    return JobDefinition(
        name=name,
        needs=list(needs),
        required=required,
        steps=[StepDefinition(action=StepAction.RUN, command=command)],
    )


def _pipeline(*jobs: JobDefinition) -> PipelineDefinition:
    return PipelineDefinition(
        name="ci",
        triggers=[TriggerRule(kind=EventKind.PUSH)],
        jobs=list(jobs),
    )


# =============================================================================
# Test: Admission
# =============================================================================
class TestAdmission:
    async def test_ignored_event_creates_no_run(self, engine, pages_pipeline, state_manager) -> None:
        event = Event(kind=EventKind.PUSH, ref="refs/heads/feature/x")

        assert await engine.run(pages_pipeline, event) is None
        assert await state_manager.list_runs() == []

    async def test_admit_creates_pending_jobs(self, engine, pages_pipeline, push_event) -> None:
        state = await engine.admit(pages_pipeline, push_event, run_id="run-1")

        assert state.run_id == "run-1"
        assert state.phase == RunPhase.ADMITTED
        assert {name: job.status for name, job in state.jobs.items()} == {
            "build": JobStatus.PENDING,
            "deploy": JobStatus.PENDING,
        }
        assert engine.active_runs == ["run-1"]


# =============================================================================
# Test: Successful Runs
# =============================================================================
class TestSuccessfulRun:
    async def test_build_then_deploy(
        self, engine, pages_pipeline, push_event, state_manager, hosting, artifact_store
    ) -> None:
        state = await engine.run(pages_pipeline, push_event, run_id="run-1")

        assert state.status == RunStatus.SUCCEEDED
        assert state.phase == RunPhase.ARCHIVED
        assert state.job_status("build") == JobStatus.SUCCEEDED
        assert state.job_status("deploy") == JobStatus.SUCCEEDED
        assert engine.active_runs == []

        env = await state_manager.get_environment("github-pages")
        assert env.last_deployed_url == "https://pages.example.test/github-pages/"
        assert env.last_deployed_run_id == "run-1"
        assert [d["run_id"] for d in hosting.deployments] == ["run-1"]
        assert [ref.name for ref in await artifact_store.list_by_run("run-1")] == ["github-pages"]

    async def test_job_log_follows_dependency_order(self, engine, pages_pipeline, push_event) -> None:
        state = await engine.run(pages_pipeline, push_event)

        transitions = [(entry["job"], entry["status"]) for entry in state.job_log]
        assert transitions == [
            ("build", "running"),
            ("build", "succeeded"),
            ("deploy", "running"),
            ("deploy", "succeeded"),
        ]

    async def test_step_outputs_recorded_on_job_state(self, engine, pages_pipeline, push_event) -> None:
        state = await engine.run(pages_pipeline, push_event)

        outputs = state.jobs["deploy"].outputs
        assert outputs["deployment"]["page_url"] == "https://pages.example.test/github-pages/"

    async def test_job_results_persisted(self, engine, pages_pipeline, push_event, state_manager) -> None:
        await engine.run(pages_pipeline, push_event, run_id="run-1")
        results = await state_manager.get_job_results("run-1")
        assert [r.job for r in results] == ["build", "deploy"]

    async def test_independent_jobs_share_a_level(self, engine, runner, push_event) -> None:
        pipeline = _pipeline(
            _run_job("lint", "make lint"),
            _run_job("test", "make test"),
            _run_job("package", "make package", "lint", "test"),
        )
        state = await engine.run(pipeline, push_event)

        assert state.succeeded
        assert runner.commands[-1] == "make package"
        assert set(runner.commands[:2]) == {"make lint", "make test"}


# =============================================================================
# Test: Failures
# =============================================================================
class TestFailedRun:
    async def test_failed_build_leaves_deploy_pending(
        self, engine, pages_pipeline, push_event, runner, hosting
    ) -> None:
        runner.script("cargo test", exit_code=101, stderr="test failed")

        state = await engine.run(pages_pipeline, push_event)

        assert state.status == RunStatus.FAILED
        assert state.job_status("build") == JobStatus.FAILED
        assert state.job_status("deploy") == JobStatus.PENDING
        assert state.jobs["build"].failed_step_index == 1
        assert hosting.deployments == []

        [error] = state.error_log
        assert error["job"] == "build"
        assert error["error_code"] == "STEP_FAILED"
        assert error["details"]["exit_code"] == 101

    async def test_optional_job_failure_does_not_fail_run(self, engine, runner, push_event) -> None:
        runner.script("make lint", exit_code=1)
        pipeline = _pipeline(
            _run_job("lint", "make lint", required=False),
            _run_job("test", "make test"),
        )

        state = await engine.run(pipeline, push_event)

        assert state.job_status("lint") == JobStatus.FAILED
        assert state.succeeded

    async def test_cycle_rejects_run_before_any_step(self, engine, runner, push_event) -> None:
        pipeline = _pipeline(_run_job("a", "make a", "b"), _run_job("b", "make b", "a"))

        state = await engine.run(pipeline, push_event)

        assert state.status == RunStatus.FAILED
        assert state.error_log[0]["error_code"] == "GRAPH_CYCLE"
        assert runner.calls == []
        assert state.jobs_with_status(JobStatus.PENDING) == ["a", "b"]

    async def test_undeclared_permission_rejects_run(
        self, engine, make_pages_pipeline, push_event, runner
    ) -> None:
        pipeline = make_pages_pipeline()
        deploy = pipeline.job("deploy").model_copy(
            update={"permissions": frozenset({Permission.READ_SOURCE})}
        )
        pipeline = pipeline.model_copy(update={"jobs": [pipeline.job("build"), deploy]})

        state = await engine.run(pipeline, push_event)

        assert state.status == RunStatus.FAILED
        error = state.error_log[0]
        assert error["error_code"] == "PERMISSION_DENIED"
        assert error["details"]["job"] == "deploy"
        assert error["details"]["step_index"] == 0
        assert runner.calls == []


# =============================================================================
# Test: Cancellation
# =============================================================================
class TestCancellation:
    async def test_cancel_interrupts_running_job(
        self, engine, pages_pipeline, push_event, runner, state_manager
    ) -> None:
        runner.script("cargo test", delay=5.0)
        task = asyncio.ensure_future(engine.run(pages_pipeline, push_event, run_id="run-1"))

        async def build_running() -> bool:
            state = await state_manager.get_run("run-1")
            return state is not None and state.jobs["build"].status == JobStatus.RUNNING

        await _until(build_running)
        assert await engine.cancel_run("run-1") is True

        state = await asyncio.wait_for(task, timeout=2.0)
        assert state.status == RunStatus.FAILED
        assert state.cancel_requested
        assert state.job_status("build") == JobStatus.CANCELLED
        assert state.job_status("deploy") == JobStatus.CANCELLED

    async def test_cancel_leaves_deployment_in_flight_to_finish(
        self, engine, gate, pages_pipeline, push_event, hosting, state_manager
    ) -> None:
        hosting.delay = 0.3
        task = asyncio.ensure_future(engine.run(pages_pipeline, push_event, run_id="run-1"))

        async def deploy_holds_gate() -> bool:
            state = await state_manager.get_run("run-1")
            return (
                gate.occupant("pages") == "run-1"
                and state.jobs["deploy"].status == JobStatus.RUNNING
            )

        await _until(deploy_holds_gate)
        await asyncio.sleep(0.05)
        assert await engine.cancel_run("run-1") is True

        state = await asyncio.wait_for(task, timeout=2.0)
        assert state.status == RunStatus.FAILED
        assert state.cancel_requested
        assert state.job_status("deploy") == JobStatus.SUCCEEDED
        assert [d["run_id"] for d in hosting.deployments] == ["run-1"]

        env = await state_manager.get_environment("github-pages")
        assert env.last_deployed_url == "https://pages.example.test/github-pages/"
        assert gate.occupant("pages") is None

    async def test_cancel_abandons_gate_wait(
        self, engine, gate, pages_pipeline, push_event, hosting, state_manager
    ) -> None:
        blocker = await gate.acquire("pages", "run-other")
        task = asyncio.ensure_future(engine.run(pages_pipeline, push_event, run_id="run-1"))

        async def build_done() -> bool:
            state = await state_manager.get_run("run-1")
            return state is not None and state.jobs["build"].status == JobStatus.SUCCEEDED

        await _until(build_done)
        await asyncio.sleep(0.02)
        assert await engine.cancel_run("run-1") is True

        state = await asyncio.wait_for(task, timeout=2.0)
        assert state.job_status("deploy") == JobStatus.CANCELLED
        assert hosting.deployments == []
        assert gate.occupant("pages") == "run-other"
        await gate.release(blocker.lease)

    async def test_cancel_unknown_run(self, engine) -> None:
        assert await engine.cancel_run("nope") is False


# =============================================================================
# Test: Gate & Parallelism
# =============================================================================
class TestGateTimeout:
    async def test_queued_deploy_times_out(
        self, executor, state_manager, artifact_store, pages_pipeline, push_event, hosting
    ) -> None:
        gate = ConcurrencyGate(GateConfig(queue_timeout_seconds=0.05))
        engine = PipelineEngine(executor, state_manager, gate, artifact_store)
        blocker = await gate.acquire("pages", "run-other")

        state = await engine.run(pages_pipeline, push_event)

        assert state.status == RunStatus.FAILED
        assert state.job_status("build") == JobStatus.SUCCEEDED
        assert state.job_status("deploy") == JobStatus.CANCELLED
        assert state.error_log[-1]["error_code"] == "GATE_TIMEOUT"
        assert hosting.deployments == []
        assert gate.occupant("pages") == "run-other"
        await gate.release(blocker.lease)


class TestParallelism:
    async def test_max_parallel_jobs_serializes(
        self, executor, state_manager, gate, artifact_store, runner, push_event
    ) -> None:
        runner.script("make", delay=0.1)
        engine = PipelineEngine(
            executor,
            state_manager,
            gate,
            artifact_store,
            config=ExecutorConfig(max_parallel_jobs=1),
        )
        pipeline = _pipeline(_run_job("a", "make a"), _run_job("b", "make b"))

        loop = asyncio.get_running_loop()
        started = loop.time()
        state = await engine.run(pipeline, push_event)

        assert state.succeeded
        assert loop.time() - started >= 0.2
