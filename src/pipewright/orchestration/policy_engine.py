"""
pipewright.orchestration.policy_engine - Environment Protection Policies
==========================================================================

The Policy Engine is the gatekeeper in front of every deployment. Before
the deployment stage publishes anything, it evaluates the registered
policies against the target environment; no deployment proceeds unless
ALL policies approve it.

    ┌──────────────────┐  "May run X deploy   ┌─────────────────────────┐
    │ DeploymentStage  │ ── to github-pages?" →│      Policy Engine      │
    │                  │                       │  ┌───────────────────┐  │
    │                  │ ←── ok / violation ── │  │ Approval policy   │  │
    └──────────────────┘                       │  │ Branch policy     │  │
                                               │  └───────────────────┘  │
                                               └─────────────────────────┘

Evaluation Modes:
    1. ``evaluate_all(context)`` - Returns all results (for inspection)
    2. ``enforce(context)``      - Raises the first violation's error
    3. ``check(context)``        - Returns bool (for conditionals)

Context Dict Convention:

    Key            Type               Used By
    ───            ────               ───────
    environment    EnvironmentState   both built-in policies
    run_id         str                EnvironmentApprovalPolicy
    ref            str                DeploymentBranchPolicy

Policies fail open for missing context and fail closed for violated rules
or evaluation errors.

Built-in Policies:
    1. EnvironmentApprovalPolicy - Enough distinct reviewers approved the run
    2. DeploymentBranchPolicy    - The run's ref may deploy to the environment
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from pipewright.core.exceptions import (
    ApprovalRequiredError,
    DeploymentBranchError,
    PolicyViolationError,
)
from pipewright.core.models import branch_from_ref, branch_matches
from pipewright.core.state import EnvironmentState


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


# =============================================================================
# Policy Result
# =============================================================================
class PolicyResult(BaseModel):
    """Result of a single policy evaluation.

    Attributes:
        allowed: Whether the policy permits the deployment.
        policy_name: Name of the policy that produced this result.
        reason: Human-readable explanation of the decision.
        metadata: Extra context for programmatic handling.
    """

    allowed: bool = Field(description="Whether the action is permitted by this policy")
    policy_name: str = Field(description="Name of the policy that produced this result")
    reason: str = Field(default="", description="Human-readable explanation of the decision")
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context about the evaluation",
    )


# =============================================================================
# Abstract Base Class: Policy
# =============================================================================
class Policy(ABC):
    """Abstract base class for deployment policies.

    Subclasses implement ``name``, ``description`` and ``evaluate()``.
    ``violation()`` turns a denying result into the error ``enforce()``
    raises; override it to raise a more specific error type.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @abstractmethod
    async def evaluate(self, context: dict[str, Any]) -> PolicyResult:
        """Evaluate this policy against the provided context."""
        ...

    def violation(self, result: PolicyResult, context: dict[str, Any]) -> PolicyViolationError:
        return PolicyViolationError(
            message=f"Policy '{result.policy_name}' denied the deployment: {result.reason}",
            policy_name=result.policy_name,
            violation_details=result.reason,
            details=dict(result.metadata),
        )


# =============================================================================
# Built-in Policy: EnvironmentApprovalPolicy
# =============================================================================
# Counts distinct reviewers recorded on the EnvironmentState for the run.
# Environments with required_approvals == 0 always pass.
# =============================================================================
class EnvironmentApprovalPolicy(Policy):
    """Requires the environment's approval quota for the run."""

    @property
    def name(self) -> str:
        return "EnvironmentApprovalPolicy"

    @property
    def description(self) -> str:
        return "Deployments wait for the environment's required number of approvals"

    async def evaluate(self, context: dict[str, Any]) -> PolicyResult:
        environment: Optional[EnvironmentState] = context.get("environment")
        run_id: Optional[str] = context.get("run_id")
        if environment is None or run_id is None:
            return PolicyResult(
                allowed=True,
                policy_name=self.name,
                reason="No environment or run_id in context; skipping check",
            )

        required = environment.required_approvals
        granted = len(set(environment.approvals_for(run_id)))
        metadata = {
            "environment": environment.name,
            "run_id": run_id,
            "required": required,
            "granted": granted,
        }
        if granted >= required:
            return PolicyResult(
                allowed=True,
                policy_name=self.name,
                reason=f"{granted} of {required} approval(s) granted",
                metadata=metadata,
            )
        return PolicyResult(
            allowed=False,
            policy_name=self.name,
            reason=f"{granted} of {required} approval(s) granted",
            metadata=metadata,
        )

    def violation(self, result: PolicyResult, context: dict[str, Any]) -> PolicyViolationError:
        return ApprovalRequiredError(
            environment=result.metadata["environment"],
            run_id=result.metadata["run_id"],
            required=result.metadata["required"],
            granted=result.metadata["granted"],
        )


# =============================================================================
# Built-in Policy: DeploymentBranchPolicy
# =============================================================================
class DeploymentBranchPolicy(Policy):
    """Restricts which branches may deploy to an environment.

    Environments without ``deployment_branches`` accept every ref.
    """

    @property
    def name(self) -> str:
        return "DeploymentBranchPolicy"

    @property
    def description(self) -> str:
        return "Only refs matching the environment's branch patterns may deploy"

    async def evaluate(self, context: dict[str, Any]) -> PolicyResult:
        environment: Optional[EnvironmentState] = context.get("environment")
        ref: Optional[str] = context.get("ref")
        if environment is None or ref is None:
            return PolicyResult(
                allowed=True,
                policy_name=self.name,
                reason="No environment or ref in context; skipping check",
            )
        if environment.deployment_branches is None:
            return PolicyResult(
                allowed=True,
                policy_name=self.name,
                reason="Environment accepts every branch",
            )

        branch = branch_from_ref(ref)
        metadata = {
            "environment": environment.name,
            "ref": ref,
            "allowed": list(environment.deployment_branches),
        }
        if branch_matches(branch, environment.deployment_branches):
            return PolicyResult(
                allowed=True,
                policy_name=self.name,
                reason=f"Branch '{branch}' may deploy",
                metadata=metadata,
            )
        return PolicyResult(
            allowed=False,
            policy_name=self.name,
            reason=f"Branch '{branch}' is not in {environment.deployment_branches}",
            metadata=metadata,
        )

    def violation(self, result: PolicyResult, context: dict[str, Any]) -> PolicyViolationError:
        return DeploymentBranchError(
            environment=result.metadata["environment"],
            ref=result.metadata["ref"],
            allowed=result.metadata["allowed"],
        )


# =============================================================================
# Policy Engine
# =============================================================================
class PolicyEngine:
    """Central registry that evaluates and enforces policies.

    Policies are evaluated sequentially in registration order.

    Example:
        >>> engine = PolicyEngine()
        >>> engine.register_policy(DeploymentBranchPolicy())
        >>> engine.register_policy(EnvironmentApprovalPolicy())
        >>> await engine.enforce({"environment": env, "run_id": run_id, "ref": "main"})
    """

    def __init__(self) -> None:
        self._policies: list[Policy] = []
        self._logger = logger.bind(component="policy_engine")

    @classmethod
    def with_default_policies(cls) -> PolicyEngine:
        """Engine with the branch policy followed by the approval policy."""
        engine = cls()
        engine.register_policy(DeploymentBranchPolicy())
        engine.register_policy(EnvironmentApprovalPolicy())
        return engine

    @property
    def policies(self) -> list[Policy]:
        return list(self._policies)

    @property
    def policy_count(self) -> int:
        return len(self._policies)

    def register_policy(self, policy: Policy) -> None:
        self._policies.append(policy)
        self._logger.info(
            "policy_registered",
            policy_name=policy.name,
            total_policies=len(self._policies),
        )

    def unregister_policy(self, policy_name: str) -> bool:
        """Remove the first policy with the given name.

        Returns:
            True if a policy was removed.
        """
        for i, policy in enumerate(self._policies):
            if policy.name == policy_name:
                self._policies.pop(i)
                self._logger.info(
                    "policy_unregistered",
                    policy_name=policy_name,
                    total_policies=len(self._policies),
                )
                return True
        self._logger.warning("policy_not_found_for_unregister", policy_name=policy_name)
        return False

    async def _evaluate(self, context: dict[str, Any]) -> list[tuple[Policy, PolicyResult]]:
        evaluated: list[tuple[Policy, PolicyResult]] = []
        for policy in self._policies:
            try:
                result = await policy.evaluate(context)
            except Exception as exc:
                # Fail closed: a broken policy denies the deployment.
                self._logger.error(
                    "policy_evaluation_error",
                    policy_name=policy.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                result = PolicyResult(
                    allowed=False,
                    policy_name=policy.name,
                    reason=f"Policy evaluation failed with error: {exc}",
                    metadata={"error": str(exc), "error_type": type(exc).__name__},
                )
            self._logger.debug(
                "policy_evaluated",
                policy_name=policy.name,
                allowed=result.allowed,
                reason=result.reason,
            )
            evaluated.append((policy, result))
        return evaluated

    async def evaluate_all(self, context: dict[str, Any]) -> list[PolicyResult]:
        """Evaluate every registered policy and return all results."""
        return [result for _, result in await self._evaluate(context)]

    async def enforce(self, context: dict[str, Any]) -> None:
        """Raise the error of the first denying policy.

        Raises:
            PolicyViolationError: Or its subclasses ApprovalRequiredError
                and DeploymentBranchError for the built-in policies.
        """
        for policy, result in await self._evaluate(context):
            if result.allowed:
                continue
            self._logger.warning(
                "policy_violation_enforced",
                policy_name=result.policy_name,
                reason=result.reason,
            )
            if "error_type" in result.metadata:
                raise Policy.violation(policy, result, context)
            raise policy.violation(result, context)
        self._logger.debug("all_policies_passed", policy_count=len(self._policies))

    async def check(self, context: dict[str, Any]) -> bool:
        """True if every registered policy allows the deployment."""
        return all(result.allowed for result in await self.evaluate_all(context))
