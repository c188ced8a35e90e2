"""
Domain layer for histguard.

Contains pure domain objects with no I/O or side effects:
- Revision: Immutable history node with a content-derived identifier
- PurgeSpec / RewriteResult: What to purge, and what a purge did
- RemoteEndpoint: Named push target with role and auth binding
- DeploymentPlan / PlanReport: Ordered steps with rollbacks, and their outcome
"""

from .revision import Revision, RevisionMeta, Signature, TreeEntry, compute_revision_id
from .purge import REMOVED, PredicateKind, PurgeMode, PurgeSpec, RewriteResult
from .remote import AuthBinding, RemoteEndpoint, RemoteRole, RetargetRecord
from .plan import (
    DeploymentPlan,
    DeploymentState,
    PlanContext,
    PlanReport,
    PlanStep,
    StepKind,
    StepRecord,
    StepStatus,
)

__all__ = [
    'Revision',
    'RevisionMeta',
    'Signature',
    'TreeEntry',
    'compute_revision_id',
    'REMOVED',
    'PredicateKind',
    'PurgeMode',
    'PurgeSpec',
    'RewriteResult',
    'AuthBinding',
    'RemoteEndpoint',
    'RemoteRole',
    'RetargetRecord',
    'DeploymentPlan',
    'DeploymentState',
    'PlanContext',
    'PlanReport',
    'PlanStep',
    'StepKind',
    'StepRecord',
    'StepStatus',
]
