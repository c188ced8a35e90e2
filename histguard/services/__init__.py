"""
Service layer for histguard.

Contains the operations that coordinate domain objects and infrastructure:
- HistoryPurgeEngine: Rewrites history to remove or keep selected paths
- RemoteRegistry: Named endpoints, roles and retargeting
- VerificationProbe: Read-only post-operation checks
- DeploymentOrchestrator: Runs deployment plans with rollback

Services are the primary API for commands to use.
"""

from .purge_service import HistoryPurgeEngine
from .remote_registry import RemoteRegistry
from .verification import VerificationProbe
from .orchestrator import DeployOptions, DeploymentOrchestrator, PlanBuilder

__all__ = [
    'HistoryPurgeEngine',
    'RemoteRegistry',
    'VerificationProbe',
    'DeployOptions',
    'DeploymentOrchestrator',
    'PlanBuilder',
]
