"""
Deployment orchestrator for histguard.

Sequences purge -> ignore-list update -> remote retarget -> authenticated
push -> verification as one DeploymentPlan, under an exclusive advisory
lock on the repository. When a step fails, the step's own rollback and
then every earlier step's rollback run in reverse order.

Pushes are the exception: a push that fails part way cannot be undone
locally, so the orchestrator looks at the remote instead and reports
divergence rather than retrying or claiming success.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Generator, List, Optional, Tuple

from ..config import load_config
from ..domain.plan import (
    DeploymentPlan,
    DeploymentState,
    PlanContext,
    PlanReport,
    PlanStep,
    StepKind,
    StepStatus,
)
from ..domain.purge import PurgeSpec
from ..domain.remote import RemoteEndpoint
from ..exceptions import (
    DirtyWorkingState,
    DivergenceError,
    HistGuardError,
    NonFastForwardRejected,
    OperationInProgress,
    PartialPushDivergence,
    PushFailed,
    StepFailed,
    TransientError,
    UnknownRemote,
    VerificationFailed,
)
from .. import exit_codes
from ..ignore import merge_ignore_content
from ..infra.audit_log import AuditLog
from ..infra.credentials import CredentialResolver
from ..infra.lock import AdvisoryLock
from ..infra.repository import RepositoryHandle
from .purge_service import HistoryPurgeEngine
from .remote_registry import RemoteRegistry
from .verification import VerificationProbe

logger = logging.getLogger(__name__)

OPERATION_LOCK_NAME = "operation.lock"
AUDIT_FILENAME = "audit.jsonl"


def open_audit_log(config: Dict[str, Any], handle: RepositoryHandle,
                   credentials: Optional[CredentialResolver] = None) -> Optional[AuditLog]:
    """The audit log configured for `handle`, or None when auditing is off."""
    audit_config = config.get('audit', {})
    if not audit_config.get('enabled', True):
        return None
    path = audit_config.get('path') or (handle.metadata_dir / AUDIT_FILENAME)
    return AuditLog(path, secrets=credentials.secrets if credentials else None)


@dataclass
class DeployOptions:
    """Options for a deploy plan."""
    target: Optional[str] = None            # Remote name; the primary when None
    refs: Tuple[str, ...] = ()              # Refs to push; the checked-out branch when empty
    purge: Optional[PurgeSpec] = None
    update_ignore: bool = True
    ignore_file: str = ".gitignore"
    retarget_url: Optional[str] = None      # Point the target alias here before pushing
    allow_history_rewrite: bool = False
    dry_run: bool = False


class PlanBuilder:
    """
    Fluent construction of a DeploymentPlan.

    Steps are bound to the orchestrator that will run them and must be
    added in state-machine order.

    Example:
        plan = (orchestrator.builder("deploy", allow_history_rewrite=True)
                .purge(spec)
                .update_ignore()
                .push("mirror")
                .verify()
                .build())
    """

    def __init__(self, orchestrator: 'DeploymentOrchestrator', name: str,
                 allow_history_rewrite: bool = False, dry_run: bool = False):
        self._orc = orchestrator
        self._plan = DeploymentPlan(name=name, allow_history_rewrite=allow_history_rewrite, dry_run=dry_run)
        self._purge_spec: Optional[PurgeSpec] = None
        self._push_target: Optional[str] = None

    def purge(self, spec: PurgeSpec) -> 'PlanBuilder':
        self._purge_spec = spec
        orc = self._orc
        self._plan.add(PlanStep(
            kind=StepKind.PURGE,
            description=f"Purge {', '.join(spec.patterns)} from history ({spec.mode.value})",
            execute=lambda ctx: orc._purge(ctx, spec),
            rollback=orc._undo_purge,
        ))
        return self

    def update_ignore(self, ignore_file: str = ".gitignore", patterns: Optional[List[str]] = None) -> 'PlanBuilder':
        orc = self._orc
        spec = self._purge_spec
        self._plan.add(PlanStep(
            kind=StepKind.IGNORE_UPDATE,
            description=f"Add purged paths to {ignore_file}",
            execute=lambda ctx: orc._update_ignore(ctx, ignore_file, patterns, spec),
            rollback=lambda ctx: orc._undo_update_ignore(ctx, ignore_file),
        ))
        return self

    def retarget(self, remote: str, url: str) -> 'PlanBuilder':
        orc = self._orc
        self._plan.add(PlanStep(
            kind=StepKind.RETARGET,
            description=f"Point remote '{remote}' at a new URL",
            execute=lambda ctx: orc._retarget(ctx, remote, url),
            rollback=orc._undo_retarget,
        ))
        return self

    def push(self, remote: str, refs: Tuple[str, ...] = ()) -> 'PlanBuilder':
        self._push_target = remote
        orc = self._orc
        allow = self._plan.allow_history_rewrite
        self._plan.add(PlanStep(
            kind=StepKind.PUSH,
            description=f"Push {', '.join(refs) if refs else 'current branch'} to '{remote}'",
            execute=lambda ctx: orc._push(ctx, remote, refs, allow),
            rollback=None,  # remote state is external; divergence is checked instead
        ))
        return self

    def verify(self) -> 'PlanBuilder':
        orc = self._orc
        spec = self._purge_spec
        remote = self._push_target
        self._plan.add(PlanStep(
            kind=StepKind.VERIFY,
            description="Verify repository and remote state",
            execute=lambda ctx: orc._verify(ctx, spec, remote),
            rollback=None,
        ))
        return self

    def build(self) -> DeploymentPlan:
        return self._plan


class DeploymentOrchestrator:
    """
    Runs deployment plans against one repository.

    Example:
        orchestrator = DeploymentOrchestrator(GitRepository("."))
        plan = orchestrator.plan_deploy(DeployOptions(target="mirror", allow_history_rewrite=True,
                                                      purge=PurgeSpec.for_paths(["secrets.env"])))
        for message in orchestrator.run(plan):
            print(message)
        report = orchestrator.last_report
    """

    def __init__(
        self,
        handle: RepositoryHandle,
        config: Optional[Dict[str, Any]] = None,
        registry: Optional[RemoteRegistry] = None,
        engine: Optional[HistoryPurgeEngine] = None,
        probe: Optional[VerificationProbe] = None,
        credentials: Optional[CredentialResolver] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.handle = handle
        self.config = config or load_config()
        network = self.config.get('network', {})
        self.timeout = network.get('timeout_seconds')
        self.credentials = credentials or CredentialResolver()
        self.registry = registry or RemoteRegistry(handle)
        self.engine = engine or HistoryPurgeEngine(handle)
        self.probe = probe or VerificationProbe(
            handle,
            credentials=self.credentials,
            retries=network.get('retries', 3),
            backoff_seconds=network.get('backoff_seconds', 1.0),
            timeout=self.timeout,
        )
        self.audit = audit if audit is not None else open_audit_log(self.config, handle, self.credentials)
        self.state = DeploymentState.IDLE
        self.transitions: List[DeploymentState] = []
        self.last_report: Optional[PlanReport] = None

    def _transition(self, state: DeploymentState) -> None:
        logger.debug(f"State {self.state.value} -> {state.value}")
        self.state = state
        self.transitions.append(state)

    # Plan construction

    def builder(self, name: str, allow_history_rewrite: bool = False, dry_run: bool = False) -> PlanBuilder:
        return PlanBuilder(self, name, allow_history_rewrite=allow_history_rewrite, dry_run=dry_run)

    def _target_name(self, target: Optional[str]) -> str:
        self.registry.sync_from_handle()
        if target:
            self.registry.resolve(target)
            return target
        return self.registry.primary().name

    def plan_deploy(self, options: DeployOptions) -> DeploymentPlan:
        """Purge (optional) -> ignore update -> retarget (optional) -> push -> verify."""
        target = self._target_name(options.target)
        builder = self.builder("deploy", allow_history_rewrite=options.allow_history_rewrite,
                               dry_run=options.dry_run)
        if options.purge is not None:
            builder.purge(options.purge)
            if options.update_ignore and options.purge.ignore_patterns():
                builder.update_ignore(options.ignore_file)
        if options.retarget_url:
            builder.retarget(target, options.retarget_url)
        return builder.push(target, tuple(options.refs)).verify().build()

    def plan_purge(self, spec: PurgeSpec, update_ignore: bool = True, ignore_file: str = ".gitignore",
                   dry_run: bool = False) -> DeploymentPlan:
        """Local-only plan: purge -> ignore update -> verify."""
        builder = self.builder("purge", dry_run=dry_run).purge(spec)
        if update_ignore and spec.ignore_patterns():
            builder.update_ignore(ignore_file)
        return builder.verify().build()

    def plan_revert_origin(self, url: str, remote: Optional[str] = None) -> DeploymentPlan:
        """Point the primary (or named) remote back at its original URL."""
        target = self._target_name(remote)
        return self.builder("revert-origin").retarget(target, url).verify().build()

    # Running

    def execute(self, plan: DeploymentPlan) -> PlanReport:
        """Run a plan to completion and return its report."""
        for message in self.run(plan):
            logger.info(message)
        return self.last_report

    def run(self, plan: DeploymentPlan) -> Generator[str, None, PlanReport]:
        """
        Run a plan, yielding progress messages.

        Returns:
            PlanReport (also stored as last_report)
        """
        report = PlanReport(plan=plan.name, allow_history_rewrite=plan.allow_history_rewrite,
                            dry_run=plan.dry_run)
        self.last_report = report
        self.transitions = []
        self.state = DeploymentState.IDLE

        if plan.dry_run:
            for step in plan:
                rec = report.record(step.name)
                rec.status = StepStatus.DRY_RUN
                rec.message = step.description
                yield f"Would {step.description[0].lower()}{step.description[1:]}"
            self._finish(report)
            return report

        lock = AdvisoryLock(self.handle.metadata_dir / OPERATION_LOCK_NAME, purpose=plan.name)
        try:
            lock.acquire()
        except OperationInProgress as e:
            report.error = e
            self._finish(report)
            return report

        try:
            yield from self._run_locked(plan, report)
        finally:
            lock.release()
            self._finish(report)
        return report

    def _preflight(self, plan: DeploymentPlan) -> None:
        kinds = {step.kind for step in plan}
        if kinds & {StepKind.PURGE, StepKind.IGNORE_UPDATE} and self.handle.is_dirty():
            raise DirtyWorkingState()

    def _run_locked(self, plan: DeploymentPlan, report: PlanReport) -> Generator[str, None, None]:
        ctx = report.context
        try:
            self._preflight(plan)
        except HistGuardError as e:
            report.error = e
            return

        completed: List[PlanStep] = []
        for step in plan:
            self._transition(step.kind.state)
            report.state = self.state
            rec = report.record(step.name)
            yield f"{step.description}..."
            try:
                message = step.execute(ctx)
            except (Exception, KeyboardInterrupt) as e:
                rec.status = StepStatus.FAILED
                rec.error = str(e) or type(e).__name__
                report.failed_step = step.name
                completed.append(step)
                yield f"Step '{step.name}' failed: {rec.error}"
                yield from self._handle_failure(e, step, completed, report)
                return
            rec.status = StepStatus.SUCCESS
            rec.message = message
            completed.append(step)

        self._transition(DeploymentState.COMMITTED)
        report.state = DeploymentState.COMMITTED
        yield f"Plan '{plan.name}' committed"

    def _handle_failure(self, exc: BaseException, step: PlanStep, completed: List[PlanStep],
                        report: PlanReport) -> Generator[str, None, None]:
        ctx = report.context
        if isinstance(exc, (HistGuardError, KeyboardInterrupt)):
            error = exc
        else:
            error = StepFailed(f"{step.name}: {exc}", step=step.name)
            error.__cause__ = exc
        report.error = error

        if isinstance(error, DivergenceError) and ctx.notes.get('push_attempted'):
            # Remote may hold part of the push; any further write could make it worse
            for done in completed:
                rec = report.record(done.name)
                rec.rollback_status = StepStatus.SKIPPED
            self._transition(DeploymentState.IDLE)
            report.state = DeploymentState.IDLE
            yield "Remote state diverged; no rollback attempted, manual intervention required"
            return

        self._transition(DeploymentState.ROLLING_BACK)
        report.state = DeploymentState.ROLLING_BACK
        for done in reversed(completed):
            rec = report.record(done.name)
            if done.rollback is None:
                rec.rollback_status = StepStatus.SKIPPED
                continue
            yield f"Rolling back '{done.name}'..."
            try:
                done.rollback(ctx)
            except Exception as rb:
                rec.rollback_status = StepStatus.ROLLBACK_FAILED
                rec.rollback_error = str(rb)
                logger.error(f"Rollback of '{done.name}' failed: {rb}")
            else:
                rec.rollback_status = StepStatus.ROLLED_BACK
            report.rollback_order.append(done.name)

        self._transition(DeploymentState.IDLE)
        report.state = DeploymentState.IDLE

    def _exit_code(self, report: PlanReport) -> int:
        if report.error is None:
            return exit_codes.SUCCESS
        if any(r.rollback_status == StepStatus.ROLLBACK_FAILED for r in report.records):
            return exit_codes.DIVERGENCE
        if isinstance(report.error, KeyboardInterrupt):
            return exit_codes.INTERRUPTED
        if isinstance(report.error, DivergenceError) and not report.rollback_order:
            return exit_codes.DIVERGENCE
        code = exit_codes.get_exit_code_for_exception(report.error)
        if code == exit_codes.DIVERGENCE:
            # Local-only divergence was rolled back
            return exit_codes.FATAL
        return code

    def _finish(self, report: PlanReport) -> None:
        report.finished_at = datetime.now()
        report.exit_code = self._exit_code(report)
        if report.state not in (DeploymentState.COMMITTED, DeploymentState.IDLE):
            report.state = DeploymentState.IDLE
        if report.state == DeploymentState.IDLE and self.state != DeploymentState.IDLE:
            self._transition(DeploymentState.IDLE)
        if self.audit is not None:
            try:
                self.audit.append(report.to_dict())
            except OSError as e:
                logger.error(f"Could not write audit record: {e}")

    # Step actions

    def _purge(self, ctx: PlanContext, spec: PurgeSpec) -> str:
        result = self.engine.purge(spec)
        ctx.rewrite = result
        if result.no_match:
            return str(result.warning)
        return (f"rewrote {result.rewritten} revisions, removed {result.removed}, "
                f"purged {result.objects_purged} objects")

    def _undo_purge(self, ctx: PlanContext) -> None:
        if ctx.rewrite is not None and ctx.rewrite.ref_updates:
            self.engine.rollback(ctx.rewrite)

    def _update_ignore(self, ctx: PlanContext, ignore_file: str, patterns: Optional[List[str]],
                       spec: Optional[PurgeSpec]) -> str:
        if ctx.rewrite is not None and ctx.rewrite.no_match:
            return "nothing was purged; ignore file unchanged"
        if patterns is None:
            patterns = spec.ignore_patterns() if spec else []
        previous = self.handle.read_worktree_file(ignore_file)
        text = previous.decode('utf-8') if previous is not None else None
        merged = merge_ignore_content(text, patterns)
        if merged is None:
            return f"{ignore_file} already covers purged paths"

        ctx.notes['ignore_previous'] = previous
        ctx.notes['ignore_head'] = self.handle.resolve_ref('HEAD')
        self.handle.write_worktree_file(ignore_file, merged.encode('utf-8'))
        rev = self.handle.commit_files([ignore_file], "Ignore paths purged from history\n")
        ctx.ignore_commit = rev.id
        return f"committed {ignore_file} as {rev.short_id}"

    def _undo_update_ignore(self, ctx: PlanContext, ignore_file: str) -> None:
        if 'ignore_previous' not in ctx.notes:
            return
        head = self.handle.head_ref()
        previous_tip = ctx.notes.get('ignore_head')
        if ctx.ignore_commit and head and previous_tip:
            self.handle.update_ref(head, previous_tip, ctx.ignore_commit)
        # The file may be staged even when the commit itself failed
        self.handle.reset_index()
        self.handle.write_worktree_file(ignore_file, ctx.notes['ignore_previous'])

    def _retarget(self, ctx: PlanContext, remote: str, url: str) -> str:
        if self.registry.find(remote) is None:
            self.registry.sync_from_handle()
        record = self.registry.retarget(remote, url)
        ctx.retargets.append(record)
        return f"'{remote}' retargeted"

    def _undo_retarget(self, ctx: PlanContext) -> None:
        for record in reversed(ctx.retargets):
            if record.old_url:
                self.registry.retarget(record.name, record.old_url)
            else:
                self.handle.remove_remote(record.name)
        ctx.retargets.clear()

    def _push(self, ctx: PlanContext, remote: str, refs: Tuple[str, ...], allow_history_rewrite: bool) -> str:
        endpoint = self.registry.resolve(remote)
        refs = tuple(refs) or (self.handle.head_ref(),)
        if None in refs:
            raise StepFailed("HEAD is detached; name the ref to push", step="push")

        remote_tips = self.probe.remote_tips(endpoint)
        # Credentials resolve only now, right before they are needed
        cred = self.credentials.resolve(endpoint.auth) if endpoint.auth else None

        decisions = []
        for ref in refs:
            local = self.handle.resolve_ref(ref)
            if local is None:
                raise StepFailed(f"Unknown ref {ref}", step="push")
            remote_tip = remote_tips.get(ref)
            ctx.pre_push[ref] = remote_tip
            fast_forward = remote_tip is None or self.handle.is_ancestor(remote_tip, local)
            if not fast_forward and not allow_history_rewrite:
                raise NonFastForwardRejected(remote, ref, remote_tip)
            decisions.append((ref, local, remote_tip, fast_forward))

        pushed = 0
        for ref, local, remote_tip, fast_forward in decisions:
            if remote_tip == local:
                ctx.pushed[ref] = local
                continue
            ctx.notes['push_attempted'] = True
            try:
                outcome = self.handle.push(remote, ref, force=not fast_forward, expected_remote=remote_tip,
                                           credentials=cred, timeout=self.timeout)
            except (TransientError, KeyboardInterrupt) as e:
                logger.warning(f"Push of {ref} to '{remote}' interrupted: {type(e).__name__}")
                self._after_failed_push(ctx, endpoint, ref, local, remote_tip, certain=False)
                pushed += 1
                continue
            if not outcome.ok:
                logger.warning(f"Push of {ref} to '{remote}' failed: {outcome.message}")
                self._after_failed_push(ctx, endpoint, ref, local, remote_tip, certain=True,
                                        reason=outcome.message)
                pushed += 1
                continue
            ctx.pushed[ref] = local
            pushed += 1
        return f"pushed {pushed} ref(s) to '{remote}'"

    def _after_failed_push(self, ctx: PlanContext, endpoint: RemoteEndpoint, ref: str, expected: str,
                           before: Optional[str], certain: bool, reason: str = "") -> None:
        """
        Decide what a failed push left behind on the remote.

        Landed anyway: record it and carry on. Provably untouched after a
        definite rejection: PushFailed, so the plan rolls back. Anything
        else is divergence.
        """
        try:
            observed = self.probe.observe_remote(endpoint, ref)
        except TransientError:
            raise PartialPushDivergence(endpoint.name, ref, expected, None)

        if observed == expected:
            logger.info(f"Push of {ref} to '{endpoint.name}' landed despite the error")
            ctx.pushed[ref] = expected
            return

        other_refs_changed = any(ctx.pushed.get(r) != ctx.pre_push.get(r) for r in ctx.pushed)
        if certain and observed == before and not other_refs_changed:
            ctx.notes['push_attempted'] = False
            raise PushFailed(f"Push of {ref} to '{endpoint.name}' was rejected: {reason}", step="push")
        raise PartialPushDivergence(endpoint.name, ref, expected, observed)

    def _verify(self, ctx: PlanContext, spec: Optional[PurgeSpec], remote: Optional[str]) -> str:
        checks = 0
        if ctx.rewrite is not None and not ctx.rewrite.no_match:
            remaining = self.probe.confirm_absent_spec(ctx.rewrite.spec)
            if remaining:
                raise VerificationFailed(f"Still present in history: {', '.join(remaining)}", step="verify")
            if not self.probe.confirm_rewrite(ctx.rewrite):
                raise VerificationFailed("Rewritten refs do not match the purge result", step="verify")
            checks += 1

        for record in ctx.retargets:
            if not self.probe.confirm_retarget(record):
                raise VerificationFailed(f"Remote '{record.name}' does not point at its new URL", step="verify")
            checks += 1

        if remote and ctx.pushed:
            try:
                endpoint = self.registry.resolve(remote)
            except UnknownRemote as e:
                raise VerificationFailed(str(e), step="verify")
            for ref, tip in sorted(ctx.pushed.items()):
                if not self.probe.confirm_remote_matches(endpoint, tip, ref):
                    raise VerificationFailed(
                        f"Remote '{remote}' {ref} is at {self.probe.last_observed}, expected {tip}",
                        step="verify",
                    )
                checks += 1
        return f"{checks} check(s) passed"
