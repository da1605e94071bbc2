"""
pipewright.execution.deployment - Deployment Stage
====================================================

The deployment stage publishes a run's artifact to an environment's hosting
target. It runs inside a deploy step, which itself runs inside a gated job:

    JobGraph (build succeeded) ──→ ConcurrencyGate (group occupied) ──→ deploy()

deploy() / deploy_named() sequence:
    1. Enforce environment policies     → ApprovalRequiredError / DeploymentBranchError
    2. Verify the artifact was published → ArtifactMissingError
    3. Fetch the content and publish it to the HostingTarget
    4. Record the new URL on the EnvironmentState

Step 4 is always the LAST action: the environment record only changes
after the hosting target accepted the deployment, and nothing happens after
it, so by the time the gate is released the record matches what is live.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import structlog

from pipewright.core.exceptions import ArtifactMissingError, NotFoundError
from pipewright.core.models import ArtifactRef, DeployResult
from pipewright.core.state import EnvironmentState
from pipewright.infrastructure.artifact_store import ArtifactStore
from pipewright.integrations.hosting import HostingTarget
from pipewright.orchestration.policy_engine import PolicyEngine
from pipewright.orchestration.state_manager import StateManager


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


class DeploymentStage:
    """Publishes artifacts to protected environments.

    Args:
        artifact_store: Where the run's artifacts live.
        hosting: External publishing endpoint.
        state_manager: Holds EnvironmentState records.
        policy_engine: Environment protection policies. Defaults to the
            branch and approval policies.
    """

    def __init__(
        self,
        artifact_store: ArtifactStore,
        hosting: HostingTarget,
        state_manager: StateManager,
        policy_engine: Optional[PolicyEngine] = None,
    ) -> None:
        self._artifact_store = artifact_store
        self._hosting = hosting
        self._state_manager = state_manager
        self._policy_engine = policy_engine or PolicyEngine.with_default_policies()
        self._logger = logger.bind(component="deployment_stage")

    @property
    def hosting(self) -> HostingTarget:
        return self._hosting

    async def resolve_artifact(self, run_id: str, name: str) -> ArtifactRef:
        """Look up a published artifact by name.

        Raises:
            ArtifactMissingError: If ``name`` was never published in the run.
        """
        ref = await self._artifact_store.get_ref(run_id, name)
        if ref is None:
            raise ArtifactMissingError(run_id=run_id, name=name)
        return ref

    async def deploy(
        self,
        artifact_ref: ArtifactRef,
        environment: str,
        ref: str,
    ) -> DeployResult:
        """Deploy an artifact to an environment.

        Args:
            artifact_ref: The artifact to deploy.
            environment: Target environment name.
            ref: Git ref of the deploying run (for branch policies).

        Returns:
            DeployResult with the URL reported by the hosting target.

        Raises:
            ApprovalRequiredError: The environment's approvals are missing.
            DeploymentBranchError: ``ref`` may not deploy to the environment.
            ArtifactMissingError: The artifact was never published.
            NotFoundError: The artifact exists but is not readable (expired,
                or its producer has not succeeded).
        """
        env_state = await self._enforce(artifact_ref.run_id, artifact_ref.name, environment, ref)
        return await self._publish(artifact_ref, environment, env_state)

    async def deploy_named(
        self,
        run_id: str,
        name: str,
        environment: str,
        ref: str,
    ) -> DeployResult:
        """Deploy the artifact ``name`` of ``run_id``.

        Policies are enforced before the artifact is looked up, so an
        unapproved deployment is refused even if nothing was published.
        """
        env_state = await self._enforce(run_id, name, environment, ref)
        artifact_ref = await self.resolve_artifact(run_id, name)
        return await self._publish(artifact_ref, environment, env_state)

    async def _enforce(
        self,
        run_id: str,
        name: str,
        environment: str,
        ref: str,
    ) -> EnvironmentState:
        self._logger.info(
            "deployment_starting",
            run_id=run_id,
            environment=environment,
            artifact=name,
        )

        env_state = await self._state_manager.get_environment(environment)
        if env_state is None:
            env_state = EnvironmentState(name=environment)

        await self._policy_engine.enforce(
            {"environment": env_state, "run_id": run_id, "ref": ref}
        )
        return env_state

    async def _publish(
        self,
        artifact_ref: ArtifactRef,
        environment: str,
        env_state: EnvironmentState,
    ) -> DeployResult:
        run_id = artifact_ref.run_id
        if await self._artifact_store.get_ref(run_id, artifact_ref.name) is None:
            raise ArtifactMissingError(run_id=run_id, name=artifact_ref.name)
        try:
            content = await self._artifact_store.fetch(run_id, artifact_ref.name)
        except NotFoundError as e:
            if e.reason == "not published":
                raise ArtifactMissingError(run_id=run_id, name=artifact_ref.name) from e
            raise

        url = await self._hosting.publish(environment, content, run_id)
        result = DeployResult(
            environment=environment,
            url=url,
            run_id=run_id,
            artifact=artifact_ref,
            deployed_at=datetime.now(timezone.utc),
        )

        # Must remain the final action of a deployment.
        latest = await self._state_manager.get_environment(environment) or env_state
        await self._state_manager.save_environment(
            latest.model_copy(
                update={
                    "last_deployed_url": url,
                    "last_deployed_run_id": run_id,
                    "last_deployed_at": result.deployed_at,
                    "history": [
                        *latest.history,
                        {
                            "run_id": run_id,
                            "url": url,
                            "artifact": artifact_ref.name,
                            "digest": artifact_ref.digest,
                            "deployed_at": result.deployed_at.isoformat(),
                        },
                    ],
                }
            )
        )
        self._logger.info(
            "deployment_completed",
            run_id=run_id,
            environment=environment,
            url=url,
        )
        return result
