"""Control-plane public API."""

from build_orchestrator.control_plane.budgets import BudgetDecision, BuildBudget
from build_orchestrator.control_plane.controller import (
    BuildNotFoundError,
    BuildOrchestrator,
    BuildOutcome,
    OrchestratorError,
)
from build_orchestrator.control_plane.escalation import (
    FailureKind,
    RetryController,
    RetryDecision,
    RetryRequest,
    TaskFailure,
)
from build_orchestrator.control_plane.features import feature_flags, install_feature_hooks
from build_orchestrator.control_plane.hooks import (
    HookContext,
    HookFailure,
    HookPhase,
    HookRegistry,
    LifecycleHook,
    ResolvedHooks,
)

__all__ = [
    "BudgetDecision",
    "BuildBudget",
    "BuildNotFoundError",
    "BuildOrchestrator",
    "BuildOutcome",
    "FailureKind",
    "HookContext",
    "HookFailure",
    "HookPhase",
    "HookRegistry",
    "LifecycleHook",
    "OrchestratorError",
    "ResolvedHooks",
    "RetryController",
    "RetryDecision",
    "RetryRequest",
    "TaskFailure",
    "feature_flags",
    "install_feature_hooks",
]
