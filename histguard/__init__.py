"""
histguard - Safe repository history rewrites and multi-remote deployment.

histguard removes paths from a repository's entire history, keeps the
ignore file in step, retargets remotes and pushes to them, rolling back
local changes when a step fails and refusing to guess when a remote ends
up in an unexpected state.

Quick Start:
    from histguard import DeploymentOrchestrator, DeployOptions, GitRepository, PurgeSpec

    orchestrator = DeploymentOrchestrator(GitRepository("."))
    plan = orchestrator.plan_deploy(DeployOptions(
        target="origin",
        purge=PurgeSpec.for_paths(["config/secrets.env"]),
        allow_history_rewrite=True,
    ))
    report = orchestrator.execute(plan)
    print(report.outcome, report.exit_code)

Domain Objects:
    Revision - Immutable history node
    PurgeSpec / RewriteResult - What to purge and what a purge did
    RemoteEndpoint / AuthBinding - Named remote with role and token reference
    DeploymentPlan / PlanReport - Steps with rollbacks, and their outcome

Services:
    HistoryPurgeEngine - History rewrite
    RemoteRegistry - Endpoint registration and retargeting
    VerificationProbe - Read-only post-operation checks
    DeploymentOrchestrator - Plan execution with rollback
"""

__version__ = "0.3.0"

# Domain objects
from .domain import (
    AuthBinding,
    DeploymentPlan,
    DeploymentState,
    PlanReport,
    PurgeMode,
    PurgeSpec,
    PredicateKind,
    RemoteEndpoint,
    RemoteRole,
    RetargetRecord,
    Revision,
    RewriteResult,
)

# Infrastructure
from .infra import GitRepository, InMemoryRepository, RepositoryHandle

# Services
from .services import (
    DeployOptions,
    DeploymentOrchestrator,
    HistoryPurgeEngine,
    RemoteRegistry,
    VerificationProbe,
)

# Configuration
from .config import load_config, save_config

__all__ = [
    # Version
    "__version__",
    # Domain objects
    "AuthBinding",
    "DeploymentPlan",
    "DeploymentState",
    "PlanReport",
    "PurgeMode",
    "PurgeSpec",
    "PredicateKind",
    "RemoteEndpoint",
    "RemoteRole",
    "RetargetRecord",
    "Revision",
    "RewriteResult",
    # Infrastructure
    "GitRepository",
    "InMemoryRepository",
    "RepositoryHandle",
    # Services
    "DeployOptions",
    "DeploymentOrchestrator",
    "HistoryPurgeEngine",
    "RemoteRegistry",
    "VerificationProbe",
    # Configuration
    "load_config",
    "save_config",
]
