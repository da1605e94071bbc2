"""
pipewright.orchestration.pipeline_engine - Run Orchestration
==============================================================

The Pipeline Engine takes an admitted event through a complete run:

    ┌────────────────────────────────────────────────────────────────┐
    │                       Pipeline Engine                          │
    │                                                                │
    │  Event ──→ TriggerEvaluator ──→ admit ──→ RunState (ADMITTED)  │
    │                                             │                  │
    │  JobGraph built once at run start ◄─────────┘                  │
    │    (cycles / unknown needs / undeclared permissions → FAILED   │
    │     before any job starts)                                     │
    │                                                                │
    │  Scheduling loop:                                              │
    │    ready_jobs(succeeded, scheduled) ──→ one task per job       │
    │      ├── ungated job ──────────────────→ JobExecutor.run       │
    │      └── deployment job ──→ ConcurrencyGate ──→ JobExecutor    │
    │    wait FIRST_COMPLETED, record result, repeat                 │
    │                                                                │
    │  Exit: SUCCEEDED iff every required job SUCCEEDED              │
    │  Finished runs are archived in the StateManager                │
    └────────────────────────────────────────────────────────────────┘

Failure propagation:
    A failed job never stops its siblings. Its dependents are simply never
    ready and stay PENDING; the run ends FAILED if any of them is required.

Gated jobs:
    A gated job stays PENDING while it waits for the gate. If a newer run
    supersedes it in the queue, or the queued wait times out, the job ends
    CANCELLED and the reason is written to the run's error log. The gate
    is released on every exit path of the gated job, after the job's
    terminal state has been recorded.

Cancellation:
    ``cancel_run`` stops running jobs promptly, abandons gate waits and
    marks jobs that never started CANCELLED. A gated job that already holds
    its group runs to completion; only the gate's ``cancel_in_progress``
    path interrupts it.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Optional, Union

import structlog

from pipewright.core.config import ExecutorConfig
from pipewright.core.enums import (
    JobStatus,
    RunPhase,
    RunStatus,
    StepStatus,
    TriggerDecision,
)
from pipewright.core.exceptions import GateTimeoutError, PipewrightError
from pipewright.core.models import (
    ConcurrencySettings,
    Event,
    JobDefinition,
    JobResult,
    PipelineDefinition,
    StepResult,
)
from pipewright.core.state import JobState, RunState
from pipewright.infrastructure.artifact_store import ArtifactStore
from pipewright.orchestration.concurrency_gate import AcquireResult, ConcurrencyGate
from pipewright.orchestration.job_graph import JobGraph
from pipewright.orchestration.state_manager import StateManager
from pipewright.orchestration.trigger import TriggerEvaluator

if TYPE_CHECKING:
    from pipewright.execution.executor import JobExecutor


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


class _RunHandle:
    """In-process bookkeeping for one active run."""

    def __init__(self, pipeline: PipelineDefinition, state: RunState) -> None:
        self.pipeline = pipeline
        self.state = state
        self.cancel_requested = False
        self.rejected = False
        self.cancel_events: dict[str, asyncio.Event] = {}
        self.in_flight_gated: set[str] = set()

    @property
    def run_id(self) -> str:
        return self.state.run_id


class PipelineEngine:
    """Runs pipelines end to end.

    Attributes:
        _executor: Runs individual jobs.
        _state_manager: Persists RunState snapshots and job results.
        _gate: Serializes deployment jobs per concurrency group.
        _artifact_store: Told when a producing job succeeded.
        _config: ``max_parallel_jobs`` bounds jobs running at once.

    Example:
        >>> engine = PipelineEngine(executor, state_manager, gate, store)
        >>> state = await engine.run(pipeline, Event(kind=EventKind.PUSH, ref="main"))
        >>> state.status
        <RunStatus.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        executor: JobExecutor,
        state_manager: StateManager,
        gate: ConcurrencyGate,
        artifact_store: ArtifactStore,
        config: Optional[ExecutorConfig] = None,
    ) -> None:
        self._executor = executor
        self._state_manager = state_manager
        self._gate = gate
        self._artifact_store = artifact_store
        self._config = config or ExecutorConfig()
        self._semaphore = asyncio.Semaphore(self._config.max_parallel_jobs)
        self._handles: dict[str, _RunHandle] = {}
        self._logger = logger.bind(component="pipeline_engine")

    @property
    def gate(self) -> ConcurrencyGate:
        return self._gate

    @property
    def active_runs(self) -> list[str]:
        return sorted(self._handles)

    # =========================================================================
    # Admission
    # =========================================================================
    async def admit(
        self,
        pipeline: PipelineDefinition,
        event: Event,
        run_id: Optional[str] = None,
    ) -> Optional[RunState]:
        """Evaluate the pipeline's triggers and create a run if admitted.

        Returns:
            The new RunState (phase ADMITTED), or None if the event is
            ignored.
        """
        decision = TriggerEvaluator(pipeline.triggers).evaluate(event)
        if decision == TriggerDecision.IGNORE:
            return None

        state = RunState(
            run_id=run_id or _new_run_id(),
            pipeline_name=pipeline.name,
            event=event,
            jobs={
                job.name: JobState(name=job.name, required=job.required)
                for job in pipeline.jobs
            },
        )
        self._handles[state.run_id] = _RunHandle(pipeline, state)
        await self._state_manager.save_run(state)

        self._logger.info(
            "run_admitted",
            run_id=state.run_id,
            pipeline=pipeline.name,
            event_kind=event.kind.value,
            ref=event.ref,
        )
        return state

    async def run(
        self,
        pipeline: PipelineDefinition,
        event: Event,
        run_id: Optional[str] = None,
    ) -> Optional[RunState]:
        """Admit and execute in one call. None if the event was ignored."""
        state = await self.admit(pipeline, event, run_id=run_id)
        if state is None:
            return None
        return await self.execute_run(state.run_id)

    # =========================================================================
    # Execution
    # =========================================================================
    async def execute_run(self, run_id: str) -> RunState:
        """Execute an admitted run to completion and archive it.

        Returns:
            The archived RunState.

        Raises:
            KeyError: If ``run_id`` is not an admitted, unfinished run.
        """
        handle = self._handles[run_id]
        pipeline = handle.pipeline

        handle.state = handle.state.model_copy(
            update={"phase": RunPhase.EXECUTING, "status": RunStatus.RUNNING}
        )
        await self._state_manager.save_run(handle.state)
        self._logger.info(
            "run_starting",
            run_id=run_id,
            pipeline=pipeline.name,
            jobs=len(pipeline.jobs),
        )

        try:
            graph = JobGraph(pipeline.jobs)
            for job in pipeline.jobs:
                self._executor.check_permissions(job, pipeline)
        except PipewrightError as e:
            self._logger.error(
                "run_rejected",
                run_id=run_id,
                error_code=e.error_code,
                error=e.message,
            )
            handle.rejected = True
            self._record_error(handle, e.to_dict())
            return await self._finish(handle)

        await self._schedule(handle, graph)
        return await self._finish(handle)

    async def _schedule(self, handle: _RunHandle, graph: JobGraph) -> None:
        succeeded: set[str] = set()
        scheduled: set[str] = set()
        running: dict[asyncio.Task, str] = {}

        while True:
            if not handle.cancel_requested:
                for name in sorted(graph.ready_jobs(succeeded, scheduled)):
                    scheduled.add(name)
                    handle.cancel_events[name] = asyncio.Event()
                    task = asyncio.ensure_future(self._run_job(handle, graph.job(name)))
                    running[task] = name

            if not running:
                break

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                name = running.pop(task)
                result = task.result()
                await self._state_manager.save_job_result(result)
                if result.status == JobStatus.SUCCEEDED:
                    succeeded.add(name)

        if handle.cancel_requested:
            for name in graph.names:
                if name not in scheduled:
                    await self._set_job(handle, name, JobStatus.CANCELLED)

    # =========================================================================
    # Single Job
    # =========================================================================
    async def _run_job(self, handle: _RunHandle, job: JobDefinition) -> JobResult:
        cancel_event = handle.cancel_events[job.name]
        settings = handle.pipeline.concurrency_for(job)
        if settings is None:
            result = await self._attempt(handle, job, self._execute(handle, job, cancel_event))
            return await self._complete(handle, job, result)
        return await self._run_gated(handle, job, settings, cancel_event)

    async def _run_gated(
        self,
        handle: _RunHandle,
        job: JobDefinition,
        settings: ConcurrencySettings,
        cancel_event: asyncio.Event,
    ) -> JobResult:
        try:
            acquired = await self._acquire_or_cancel(handle, job, settings, cancel_event)
        except Exception as e:
            return await self._complete(handle, job, self._crashed(handle, job, e))
        if not isinstance(acquired, AcquireResult):
            return await self._complete(handle, job, acquired)

        try:
            if not acquired.proceed:
                self._logger.warning(
                    "job_superseded",
                    run_id=handle.run_id,
                    job=job.name,
                    group=settings.group,
                )
                result = self._not_started(
                    handle,
                    job,
                    error={
                        "error_code": "SUPERSEDED",
                        "message": (
                            f"Queued deployment superseded by a newer run "
                            f"in group '{settings.group}'"
                        ),
                        "details": {"group": settings.group},
                    },
                )
            elif cancel_event.is_set():
                result = self._not_started(handle, job)
            else:
                handle.in_flight_gated.add(job.name)
                result = await self._attempt(
                    handle, job, self._execute(handle, job, cancel_event)
                )
            # The terminal state is recorded while the group is still held.
            return await self._complete(handle, job, result)
        finally:
            if acquired.lease is not None:
                await self._gate.release(acquired.lease)

    async def _attempt(
        self,
        handle: _RunHandle,
        job: JobDefinition,
        work: Awaitable[JobResult],
    ) -> JobResult:
        try:
            return await work
        except Exception as e:
            return self._crashed(handle, job, e)

    def _crashed(self, handle: _RunHandle, job: JobDefinition, exc: Exception) -> JobResult:
        self._logger.error(
            "job_crashed",
            run_id=handle.run_id,
            job=job.name,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        if isinstance(exc, PipewrightError):
            error = exc.to_dict()
        else:
            error = {
                "error_type": type(exc).__name__,
                "message": str(exc),
                "error_code": "INTERNAL_ERROR",
                "details": {},
            }
        return JobResult(
            job=job.name,
            run_id=handle.run_id,
            status=JobStatus.FAILED,
            error=error,
            completed_at=_now(),
        )

    async def _complete(
        self,
        handle: _RunHandle,
        job: JobDefinition,
        result: JobResult,
    ) -> JobResult:
        """Publish a job's terminal state to the artifact store and run record."""
        if result.status == JobStatus.SUCCEEDED:
            await self._artifact_store.mark_producer_succeeded(handle.run_id, job.name)
        if result.error is not None:
            self._record_error(handle, {"job": job.name, **result.error})

        await self._set_job(
            handle,
            job.name,
            result.status,
            completed_at=result.completed_at or _now(),
            failed_step_index=result.failed_step_index,
            error=result.error,
            outputs=result.outputs,
        )
        return result

    async def _execute(
        self,
        handle: _RunHandle,
        job: JobDefinition,
        cancel_event: asyncio.Event,
    ) -> JobResult:
        async with self._semaphore:
            await self._set_job(handle, job.name, JobStatus.RUNNING, started_at=_now())
            return await self._executor.run(
                job,
                pipeline=handle.pipeline,
                event=handle.state.event,
                run_id=handle.run_id,
                cancel_event=cancel_event,
            )

    async def _acquire_or_cancel(
        self,
        handle: _RunHandle,
        job: JobDefinition,
        settings: ConcurrencySettings,
        cancel_event: asyncio.Event,
    ) -> Union[AcquireResult, JobResult]:
        """Wait for the gate unless the run is cancelled first."""
        acquire = asyncio.ensure_future(
            self._gate.acquire(
                settings.group,
                handle.run_id,
                cancel_in_progress=settings.cancel_in_progress,
                on_cancel=cancel_event.set,
            )
        )
        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancelled.cancel()

        if acquire not in done:
            acquire.cancel()
            try:
                late = await acquire
            except asyncio.CancelledError:
                late = None
            except GateTimeoutError:
                late = None
            if late is not None and late.lease is not None:
                await self._gate.release(late.lease)
            return self._not_started(handle, job)

        try:
            return acquire.result()
        except GateTimeoutError as e:
            return self._not_started(handle, job, error=e.to_dict())

    # =========================================================================
    # Cancellation
    # =========================================================================
    async def cancel_run(self, run_id: str) -> bool:
        """Cancel an active run.

        Running jobs are interrupted, gate waits abandoned and jobs that
        have not started end CANCELLED. Gated jobs past the gate are left
        to finish.

        Returns:
            False if ``run_id`` is not an active run.
        """
        handle = self._handles.get(run_id)
        if handle is None:
            return False

        handle.cancel_requested = True
        for name, event in handle.cancel_events.items():
            if name not in handle.in_flight_gated:
                event.set()
        handle.state = handle.state.model_copy(update={"cancel_requested": True})
        await self._state_manager.save_run(handle.state)

        self._logger.warning("run_cancel_requested", run_id=run_id)
        return True

    # =========================================================================
    # Internal Helpers
    # =========================================================================
    def _not_started(
        self,
        handle: _RunHandle,
        job: JobDefinition,
        error: Optional[dict[str, Any]] = None,
    ) -> JobResult:
        return JobResult(
            job=job.name,
            run_id=handle.run_id,
            status=JobStatus.CANCELLED,
            steps=[
                StepResult(index=i, name=step.display_name, status=StepStatus.CANCELLED)
                for i, step in enumerate(job.steps)
            ],
            error=error,
            completed_at=_now(),
        )

    async def _set_job(
        self,
        handle: _RunHandle,
        name: str,
        status: JobStatus,
        **fields: Any,
    ) -> None:
        jobs = dict(handle.state.jobs)
        jobs[name] = jobs[name].model_copy(update={"status": status, **fields})
        entry: dict[str, Any] = {
            "job": name,
            "status": status.value,
            "timestamp": _now().isoformat(),
        }
        if fields.get("failed_step_index") is not None:
            entry["step_index"] = fields["failed_step_index"]
        handle.state = handle.state.model_copy(
            update={"jobs": jobs, "job_log": [*handle.state.job_log, entry]}
        )
        await self._state_manager.save_run(handle.state)

    def _record_error(self, handle: _RunHandle, error: dict[str, Any]) -> None:
        entry = {"timestamp": _now().isoformat(), **error}
        handle.state = handle.state.model_copy(
            update={"error_log": [*handle.state.error_log, entry]}
        )

    async def _finish(self, handle: _RunHandle) -> RunState:
        state = handle.state
        ok = not handle.rejected and not handle.cancel_requested
        ok = ok and all(
            job.status == JobStatus.SUCCEEDED for job in state.jobs.values() if job.required
        )
        status = RunStatus.SUCCEEDED if ok else RunStatus.FAILED

        handle.state = state.model_copy(
            update={
                "phase": RunPhase.FINISHED,
                "status": status,
                "completed_at": _now(),
            }
        )
        await self._state_manager.save_run(handle.state)
        archived = await self._state_manager.archive_run(handle.run_id)
        self._handles.pop(handle.run_id, None)

        log = self._logger.info if status == RunStatus.SUCCEEDED else self._logger.warning
        log(
            "run_finished",
            run_id=handle.run_id,
            status=status.value,
            succeeded=handle.state.jobs_with_status(JobStatus.SUCCEEDED),
            failed=handle.state.jobs_with_status(JobStatus.FAILED),
            cancelled=handle.state.jobs_with_status(JobStatus.CANCELLED),
            pending=handle.state.jobs_with_status(JobStatus.PENDING),
        )
        return archived or handle.state
