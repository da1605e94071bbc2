"""
End-to-End Integration Tests for Pipewright
=============================================

These tests exercise the full pipeline from the facade down through every
internal component. Nothing is mocked except the outside world (shell
commands and the hosting target).

Test Scenarios:
    1. Single run on main: build publishes, deploy occupies the group,
       fetches, deploys, releases; run succeeds and the URL is updated
    2. Run B queued behind run A's in-flight deployment
    3. A third run supersedes the queued second run
    4. cancel_in_progress: the occupant is cancelled, the newcomer deploys
       only after the occupant released
    5. Build failure: deploy never leaves PENDING, run fails
    6. Environment protection: approvals and deployment branches
    7. The shipped YAML pipeline document
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from pipewright.core.enums import EventKind, JobStatus, RunStatus, StepAction
from pipewright.core.models import Event
from pipewright.facade import Pipewright
from pipewright.integrations.hosting import InMemoryHostingTarget


EXAMPLE_PIPELINE = Path(__file__).resolve().parents[2] / "examples" / "pages.yaml"
PAGES_URL = "https://pages.example.test/github-pages/"


# =============================================================================
# Helpers
# =============================================================================
async def _until(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def _push(actor: str, ref: str = "refs/heads/main") -> Event:
    return Event(kind=EventKind.PUSH, ref=ref, actor=actor)


def _timestamp(state, job: str, status: str) -> str:
    for entry in state.job_log:
        if entry["job"] == job and entry["status"] == status:
            return entry["timestamp"]
    raise AssertionError(f"{job} never reached {status}")


@pytest.fixture
def slow_hosting():
    """Hosting target whose publish takes long enough to overlap runs."""
    return InMemoryHostingTarget(delay=0.3)


# =============================================================================
# Test: Single Run
# =============================================================================
class TestSingleRun:
    async def test_build_publish_deploy(self, pipewright, pages_pipeline, push_event, hosting) -> None:
        async with pipewright as pw:
            state = await pw.handle_event(pages_pipeline, push_event, run_id="run-a")

            assert state.status == RunStatus.SUCCEEDED
            assert pw.gate.is_idle("pages")

            env = await pw.get_environment("github-pages")
            assert env.last_deployed_url == PAGES_URL
            assert env.history[0]["artifact"] == "github-pages"
            assert hosting.deployments[0]["run_id"] == "run-a"

            archived = await pw.get_run("run-a")
            assert archived.succeeded

    async def test_build_failure_blocks_deploy(
        self, pipewright, pages_pipeline, push_event, runner, hosting
    ) -> None:
        runner.script("cargo test", exit_code=1)

        async with pipewright as pw:
            state = await pw.handle_event(pages_pipeline, push_event)

            assert state.status == RunStatus.FAILED
            assert state.job_status("build") == JobStatus.FAILED
            assert state.job_status("deploy") == JobStatus.PENDING
            assert hosting.deployments == []
            assert await pw.get_environment("github-pages") is None

    async def test_missing_artifact_fails_deploy(
        self, pipewright, make_pages_pipeline, push_event
    ) -> None:
        pipeline = make_pages_pipeline()
        build = pipeline.job("build")
        build = build.model_copy(
            update={"steps": [s for s in build.steps if s.action != StepAction.UPLOAD_ARTIFACT]}
        )
        pipeline = pipeline.model_copy(update={"jobs": [build, pipeline.job("deploy")]})

        async with pipewright as pw:
            state = await pw.handle_event(pipeline, push_event)

        assert state.job_status("deploy") == JobStatus.FAILED
        assert state.jobs["deploy"].error["error_code"] == "ARTIFACT_MISSING"


# =============================================================================
# Test: Queued Deployments
# =============================================================================
class TestQueuedDeployments:
    """cancel_in_progress=false: the in-flight deployment always completes."""

    async def test_second_run_waits_for_first_deploy(
        self, config, runner, source, slow_hosting, pages_pipeline
    ) -> None:
        async with Pipewright(config, runner=runner, source=source, hosting=slow_hosting) as pw:
            run_a = asyncio.ensure_future(
                pw.handle_event(pages_pipeline, _push("alice"), run_id="run-a")
            )
            await _until(lambda: pw.gate.occupant("pages") == "run-a")

            run_b = asyncio.ensure_future(
                pw.handle_event(pages_pipeline, _push("bob"), run_id="run-b")
            )
            await _until(lambda: pw.gate.waiter("pages") == "run-b")

            queued = await pw.get_run("run-b")
            assert queued.job_status("build") == JobStatus.SUCCEEDED
            assert queued.job_status("deploy") == JobStatus.PENDING
            assert slow_hosting.deployments == []

            state_a, state_b = await asyncio.gather(run_a, run_b)

            assert state_a.succeeded and state_b.succeeded
            assert [d["run_id"] for d in slow_hosting.deployments] == ["run-a", "run-b"]
            assert _timestamp(state_b, "deploy", "running") >= _timestamp(
                state_a, "deploy", "succeeded"
            )

            env = await pw.get_environment("github-pages")
            assert env.last_deployed_run_id == "run-b"
            assert [h["run_id"] for h in env.history] == ["run-a", "run-b"]

    async def test_newest_queued_run_supersedes_older(
        self, config, runner, source, slow_hosting, pages_pipeline
    ) -> None:
        async with Pipewright(config, runner=runner, source=source, hosting=slow_hosting) as pw:
            run_a = asyncio.ensure_future(
                pw.handle_event(pages_pipeline, _push("alice"), run_id="run-a")
            )
            await _until(lambda: pw.gate.occupant("pages") == "run-a")
            run_b = asyncio.ensure_future(
                pw.handle_event(pages_pipeline, _push("bob"), run_id="run-b")
            )
            await _until(lambda: pw.gate.waiter("pages") == "run-b")
            run_c = asyncio.ensure_future(
                pw.handle_event(pages_pipeline, _push("carol"), run_id="run-c")
            )

            state_a, state_b, state_c = await asyncio.gather(run_a, run_b, run_c)

            assert state_a.succeeded
            assert state_c.succeeded
            assert state_b.status == RunStatus.FAILED
            assert state_b.job_status("deploy") == JobStatus.CANCELLED
            assert state_b.jobs["deploy"].error["error_code"] == "SUPERSEDED"
            assert [d["run_id"] for d in slow_hosting.deployments] == ["run-a", "run-c"]


# =============================================================================
# Test: Preemptive Deployments
# =============================================================================
class TestCancelInProgress:
    async def test_newcomer_cancels_occupant(
        self, config, runner, source, slow_hosting, make_pages_pipeline
    ) -> None:
        pipeline = make_pages_pipeline(cancel_in_progress=True)

        async with Pipewright(config, runner=runner, source=source, hosting=slow_hosting) as pw:
            run_a = asyncio.ensure_future(
                pw.handle_event(pipeline, _push("alice"), run_id="run-a")
            )
            await _until(lambda: pw.gate.occupant("pages") == "run-a")
            run_b = asyncio.ensure_future(
                pw.handle_event(pipeline, _push("bob"), run_id="run-b")
            )

            state_a, state_b = await asyncio.gather(run_a, run_b)

            assert state_a.status == RunStatus.FAILED
            assert state_a.job_status("deploy") == JobStatus.CANCELLED
            assert state_b.succeeded
            assert [d["run_id"] for d in slow_hosting.deployments] == ["run-b"]
            # run-b's deployment started only once run-a had let go of the group.
            assert _timestamp(state_b, "deploy", "running") >= _timestamp(
                state_a, "deploy", "cancelled"
            )

            env = await pw.get_environment("github-pages")
            assert env.last_deployed_run_id == "run-b"


# =============================================================================
# Test: Environment Protection
# =============================================================================
class TestEnvironmentProtection:
    async def test_deploy_requires_approval(
        self, pipewright, pages_pipeline, push_event, hosting
    ) -> None:
        async with pipewright as pw:
            await pw.register_environment("github-pages", required_approvals=1)

            state = await pw.handle_event(pages_pipeline, push_event, run_id="run-a")

            assert state.job_status("deploy") == JobStatus.FAILED
            assert state.jobs["deploy"].error["error_code"] == "APPROVAL_REQUIRED"
            assert hosting.deployments == []
            assert (await pw.get_environment("github-pages")).last_deployed_url is None

    async def test_approval_checked_before_artifact(
        self, pipewright, make_pages_pipeline, push_event, hosting
    ) -> None:
        pipeline = make_pages_pipeline()
        build = pipeline.job("build")
        build = build.model_copy(
            update={"steps": [s for s in build.steps if s.action != StepAction.UPLOAD_ARTIFACT]}
        )
        pipeline = pipeline.model_copy(update={"jobs": [build, pipeline.job("deploy")]})

        async with pipewright as pw:
            await pw.register_environment("github-pages", required_approvals=1)

            state = await pw.handle_event(pipeline, push_event, run_id="run-a")

            assert state.job_status("deploy") == JobStatus.FAILED
            assert state.jobs["deploy"].error["error_code"] == "APPROVAL_REQUIRED"
            assert hosting.deployments == []

    async def test_approved_run_deploys(self, pipewright, pages_pipeline, push_event) -> None:
        async with pipewright as pw:
            await pw.register_environment("github-pages", required_approvals=1)
            await pw.approve_deployment("github-pages", "run-a", reviewer="alice")

            state = await pw.handle_event(pages_pipeline, push_event, run_id="run-a")

            assert state.succeeded

    async def test_branch_restriction(self, pipewright, pages_pipeline) -> None:
        async with pipewright as pw:
            await pw.register_environment("github-pages", deployment_branches=["main"])
            event = Event(kind=EventKind.MANUAL_DISPATCH, ref="feature/x", actor="octo")

            state = await pw.handle_event(pages_pipeline, event)

            assert state.job_status("build") == JobStatus.SUCCEEDED
            assert state.jobs["deploy"].error["error_code"] == "DEPLOYMENT_BRANCH_DENIED"


# =============================================================================
# Test: YAML Pipeline Document
# =============================================================================
class TestPipelineDocument:
    async def test_example_document_runs(self, pipewright, runner) -> None:
        async with pipewright as pw:
            pipeline = pw.load_pipeline(EXAMPLE_PIPELINE)
            state = await pw.handle_event(pipeline, _push("alice"))

            assert state.succeeded
            assert state.jobs["build"].outputs["pages"]["base_url"] == PAGES_URL
            assert state.jobs["deploy"].outputs["deployment"]["page_url"] == PAGES_URL
            assert any("cargo test --verbose" in c for c in runner.commands)

            env_vars = runner.calls[0][2]
            assert env_vars["CARGO_TERM_COLOR"] == "always"

    async def test_example_document_ignores_feature_push(self, pipewright) -> None:
        async with pipewright as pw:
            pipeline = pw.load_pipeline(EXAMPLE_PIPELINE)
            assert await pw.handle_event(pipeline, _push("alice", ref="feature/x")) is None
