"""
Deployment plan domain objects for histguard.

A DeploymentPlan is an ordered list of steps, each carrying its own
rollback action. Running a plan produces a PlanReport, which is what the
CLI prints and what the audit log records.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .purge import RewriteResult
from .remote import RetargetRecord


class DeploymentState(Enum):
    """Orchestrator state machine."""
    IDLE = "idle"
    PURGING = "purging"
    IGNORE_UPDATING = "ignore_updating"
    RETARGETING = "retargeting"
    PUSHING = "pushing"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"


class StepKind(Enum):
    PURGE = "purge"
    IGNORE_UPDATE = "ignore-update"
    RETARGET = "retarget"
    PUSH = "push"
    VERIFY = "verify"

    @property
    def state(self) -> DeploymentState:
        return _STEP_STATES[self]

    @property
    def order(self) -> int:
        return _STEP_ORDER.index(self)


_STEP_ORDER = [StepKind.PURGE, StepKind.IGNORE_UPDATE, StepKind.RETARGET, StepKind.PUSH, StepKind.VERIFY]

_STEP_STATES = {
    StepKind.PURGE: DeploymentState.PURGING,
    StepKind.IGNORE_UPDATE: DeploymentState.IGNORE_UPDATING,
    StepKind.RETARGET: DeploymentState.RETARGETING,
    StepKind.PUSH: DeploymentState.PUSHING,
    StepKind.VERIFY: DeploymentState.VERIFYING,
}


class StepStatus(Enum):
    """Status of an individual step or rollback."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


@dataclass
class PlanContext:
    """State handed from one step to the next during a single run."""
    rewrite: Optional[RewriteResult] = None
    retargets: List[RetargetRecord] = field(default_factory=list)
    ignore_commit: Optional[str] = None
    pushed: Dict[str, str] = field(default_factory=dict)       # ref -> tip the remote should now hold
    pre_push: Dict[str, Optional[str]] = field(default_factory=dict)  # ref -> remote tip before push
    notes: Dict[str, Any] = field(default_factory=dict)


StepAction = Callable[[PlanContext], Any]


@dataclass
class PlanStep:
    """
    One step of a deployment plan.

    `rollback` is the compensating action; None means the step made no
    local change that needs undoing.
    """
    kind: StepKind
    description: str
    execute: StepAction
    rollback: Optional[StepAction] = None

    @property
    def name(self) -> str:
        return self.kind.value


@dataclass
class DeploymentPlan:
    """Ordered steps for one orchestrator invocation."""
    name: str
    allow_history_rewrite: bool = False
    dry_run: bool = False
    steps: List[PlanStep] = field(default_factory=list)

    def add(self, step: PlanStep) -> 'DeploymentPlan':
        if self.steps and step.kind.order < self.steps[-1].kind.order:
            raise ValueError(
                f"Step '{step.name}' cannot follow '{self.steps[-1].name}'"
            )
        self.steps.append(step)
        return self

    def describe(self) -> List[Dict[str, Any]]:
        return [
            {'step': s.name, 'description': s.description, 'rollback': s.rollback is not None}
            for s in self.steps
        ]

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)


@dataclass
class StepRecord:
    """What happened to one step during a run."""
    step: str
    status: StepStatus = StepStatus.PENDING
    message: Optional[str] = None
    error: Optional[str] = None
    rollback_status: Optional[StepStatus] = None
    rollback_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'step': self.step,
            'status': self.status.value,
        }
        if self.message:
            result['message'] = self.message
        if self.error:
            result['error'] = self.error
        if self.rollback_status:
            result['rollback'] = self.rollback_status.value
        if self.rollback_error:
            result['rollback_error'] = self.rollback_error
        return result


@dataclass
class PlanReport:
    """
    Summary of one plan run.

    Collects per-step records, the rollback trail and the final outcome.
    """
    plan: str
    allow_history_rewrite: bool = False
    dry_run: bool = False
    state: DeploymentState = DeploymentState.IDLE
    records: List[StepRecord] = field(default_factory=list)
    rollback_order: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[BaseException] = None
    exit_code: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    context: PlanContext = field(default_factory=PlanContext)

    @property
    def success(self) -> bool:
        """True if the plan reached its terminal state."""
        return self.error is None and self.state == DeploymentState.COMMITTED

    def record(self, step: str) -> StepRecord:
        for existing in self.records:
            if existing.step == step:
                return existing
        rec = StepRecord(step=step)
        self.records.append(rec)
        return rec

    @property
    def outcome(self) -> str:
        if self.dry_run and self.error is None:
            return "dry_run"
        if self.success:
            return "committed"
        if self.error is None:
            return "incomplete"
        category = getattr(self.error, 'category', 'fatal')
        if category == 'divergence':
            return "divergence"
        if category in ('policy', 'conflict'):
            return "refused"
        return "aborted"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization and the audit log."""
        result = {
            'type': 'plan',
            'plan': self.plan,
            'timestamp': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'allow_history_rewrite': self.allow_history_rewrite,
            'dry_run': self.dry_run,
            'state': self.state.value,
            'outcome': self.outcome,
            'exit_code': self.exit_code,
            'steps': [r.to_dict() for r in self.records],
            'rollback_order': list(self.rollback_order),
        }
        if self.failed_step:
            result['failed_step'] = self.failed_step
        if self.error is not None:
            result['error'] = str(self.error)
            result['error_type'] = type(self.error).__name__
        if self.context.rewrite is not None:
            result['purge'] = self.context.rewrite.to_dict()
        if self.context.retargets:
            result['retargets'] = [r.to_dict() for r in self.context.retargets]
        if self.context.pushed:
            result['pushed'] = dict(self.context.pushed)
        return result
