"""
Tests for the deployment orchestrator.
"""

import json

from histguard import exit_codes
from histguard.domain.plan import DeploymentPlan, DeploymentState, PlanStep, StepKind, StepStatus
from histguard.domain.purge import PurgeSpec
from histguard.domain.remote import AuthBinding, RemoteRole
from histguard.exceptions import (
    NonFastForwardRejected,
    OperationInProgress,
    PartialPushDivergence,
    PushFailed,
    StepFailed,
)
from histguard.infra.lock import AdvisoryLock
from histguard.services.orchestrator import OPERATION_LOCK_NAME, DeployOptions

from .conftest import MIRROR_URL, ORIGIN_URL


def _diverge(remote, repo):
    """Move the remote's main to a revision unrelated to local history."""
    other = repo.commit({"other.txt": b"someone else"}, "Unrelated", branch="elsewhere")
    del repo.refs["refs/heads/elsewhere"]
    remote.revisions[other.id] = other
    for entry in other.tree.values():
        remote.blobs[entry.object_id] = repo.blobs[entry.object_id]
    remote.refs["refs/heads/main"] = other.id
    return other.id


class TestRollbackOrdering:
    """A failing step unwinds itself and every earlier step, newest first."""

    def _recording_plan(self, calls, fail_at):
        plan = DeploymentPlan(name="recording")

        def make(kind, with_rollback=True):
            def execute(ctx):
                calls.append(f"run:{kind.value}")
                if kind == fail_at:
                    raise RuntimeError(f"{kind.value} broke")
                return "ok"

            def rollback(ctx):
                calls.append(f"undo:{kind.value}")

            return PlanStep(kind=kind, description=kind.value, execute=execute,
                            rollback=rollback if with_rollback else None)

        plan.add(make(StepKind.PURGE))
        plan.add(make(StepKind.IGNORE_UPDATE))
        plan.add(make(StepKind.RETARGET))
        plan.add(make(StepKind.PUSH, with_rollback=False))
        plan.add(make(StepKind.VERIFY))
        return plan

    def test_failure_at_push_rolls_back_earlier_steps_in_reverse(self, repo, history, orchestrator):
        calls = []
        report = orchestrator.execute(self._recording_plan(calls, fail_at=StepKind.PUSH))

        assert calls == [
            "run:purge", "run:ignore-update", "run:retarget", "run:push",
            "undo:retarget", "undo:ignore-update", "undo:purge",
        ]
        assert report.rollback_order == ["retarget", "ignore-update", "purge"]
        assert report.failed_step == "push"
        assert isinstance(report.error, StepFailed)
        assert report.exit_code == exit_codes.FATAL
        assert report.record("push").rollback_status == StepStatus.SKIPPED
        assert report.record("purge").rollback_status == StepStatus.ROLLED_BACK

    def test_failing_step_rolls_back_itself_first(self, repo, history, orchestrator):
        calls = []
        orchestrator.execute(self._recording_plan(calls, fail_at=StepKind.RETARGET))
        undo = [c for c in calls if c.startswith("undo:")]
        assert undo == ["undo:retarget", "undo:ignore-update", "undo:purge"]
        assert len(undo) == len(set(undo))

    def test_rollback_failure_escalates_to_divergence(self, repo, history, orchestrator):
        plan = DeploymentPlan(name="broken-undo")

        def bad_undo(ctx):
            raise RuntimeError("cannot undo")

        plan.add(PlanStep(StepKind.RETARGET, "retarget", execute=lambda ctx: "ok", rollback=bad_undo))
        plan.add(PlanStep(StepKind.VERIFY, "verify", execute=lambda ctx: 1 / 0))
        report = orchestrator.execute(plan)
        assert report.record("retarget").rollback_status == StepStatus.ROLLBACK_FAILED
        assert report.exit_code == exit_codes.DIVERGENCE

    def test_state_transitions(self, repo, history, orchestrator):
        calls = []
        orchestrator.execute(self._recording_plan(calls, fail_at=StepKind.VERIFY))
        assert orchestrator.transitions[:5] == [
            DeploymentState.PURGING,
            DeploymentState.IGNORE_UPDATING,
            DeploymentState.RETARGETING,
            DeploymentState.PUSHING,
            DeploymentState.VERIFYING,
        ]
        assert orchestrator.transitions[-2:] == [DeploymentState.ROLLING_BACK, DeploymentState.IDLE]
        assert orchestrator.state == DeploymentState.IDLE

    def test_interrupt_outside_push_rolls_back(self, repo, history, orchestrator):
        plan = DeploymentPlan(name="interrupted")
        undone = []
        plan.add(PlanStep(StepKind.RETARGET, "retarget", execute=lambda ctx: "ok",
                          rollback=lambda ctx: undone.append(True)))

        def interrupt(ctx):
            raise KeyboardInterrupt()

        plan.add(PlanStep(StepKind.VERIFY, "verify", execute=interrupt))
        report = orchestrator.execute(plan)
        assert undone == [True]
        assert report.exit_code == exit_codes.INTERRUPTED


class TestDeploy:

    def test_fast_forward_deploy(self, repo, origin, history, orchestrator):
        repo.commit({"new.txt": b"n"}, "New work")
        report = orchestrator.execute(orchestrator.plan_deploy(DeployOptions(target="origin")))
        assert report.success
        assert report.exit_code == exit_codes.SUCCESS
        assert origin.refs["refs/heads/main"] == repo.resolve_ref("HEAD")
        assert [r.step for r in report.records] == ["push", "verify"]

    def test_deploy_defaults_to_primary(self, repo, origin, history, orchestrator):
        plan = orchestrator.plan_deploy(DeployOptions())
        assert "origin" in plan.steps[0].description

    def test_non_fast_forward_refused_and_remote_unchanged(self, repo, origin, history, orchestrator):
        remote_tip = _diverge(origin, repo)
        report = orchestrator.execute(orchestrator.plan_deploy(DeployOptions(target="origin")))

        assert isinstance(report.error, NonFastForwardRejected)
        assert report.exit_code == exit_codes.REFUSED
        assert origin.refs["refs/heads/main"] == remote_tip
        assert origin.push_attempts == 1  # only the fixture's initial push

    def test_purge_and_force_push(self, repo, origin, history, orchestrator):
        spec = PurgeSpec.for_paths(["secret.env"])
        report = orchestrator.execute(orchestrator.plan_deploy(
            DeployOptions(target="origin", purge=spec, allow_history_rewrite=True)))

        assert report.success, report.error
        assert [r.step for r in report.records] == ["purge", "ignore-update", "push", "verify"]
        tip = repo.resolve_ref("HEAD")
        assert origin.refs["refs/heads/main"] == tip
        assert repo.read_worktree_file(".gitignore") == b"# Purged from history by histguard\n/secret.env\n"
        assert all("secret.env" not in origin.revisions[rev_id].tree
                   for rev_id in _reachable(origin, tip))

    def test_purge_without_force_rolls_back(self, repo, origin, history, orchestrator):
        original_tip = repo.resolve_ref("HEAD")
        spec = PurgeSpec.for_paths(["secret.env"])
        report = orchestrator.execute(orchestrator.plan_deploy(DeployOptions(target="origin", purge=spec)))

        assert isinstance(report.error, NonFastForwardRejected)
        assert report.exit_code == exit_codes.REFUSED
        assert report.rollback_order == ["ignore-update", "purge"]
        assert repo.resolve_ref("HEAD") == original_tip
        assert repo.read_worktree_file(".gitignore") is None
        assert not repo.is_dirty()

    def test_dirty_tree_refused_before_any_step(self, repo, origin, history, orchestrator):
        repo.worktree["README.md"] = b"edited"
        spec = PurgeSpec.for_paths(["secret.env"])
        report = orchestrator.execute(orchestrator.plan_deploy(
            DeployOptions(target="origin", purge=spec, allow_history_rewrite=True)))
        assert report.exit_code == exit_codes.REFUSED
        assert report.records == []
        assert report.failed_step is None

    def test_interrupted_push_is_divergence(self, repo, origin, history, orchestrator):
        spec = PurgeSpec.for_paths(["secret.env"])
        origin.fail_next_push = "interrupt"
        report = orchestrator.execute(orchestrator.plan_deploy(
            DeployOptions(target="origin", purge=spec, allow_history_rewrite=True)))

        assert isinstance(report.error, PartialPushDivergence)
        assert report.exit_code == exit_codes.DIVERGENCE
        assert report.rollback_order == []
        # No further writes: local rewrite kept, one push attempt, verify never ran
        assert repo.resolve_ref("HEAD") == report.context.ignore_commit
        assert origin.push_attempts == 2
        assert "verify" not in [r.step for r in report.records]

    def test_timed_out_rewrite_push_is_not_retried(self, repo, origin, history, orchestrator):
        remote_before = dict(origin.refs)
        attempts = origin.push_attempts
        spec = PurgeSpec.for_paths(["secret.env"])
        origin.fail_next_push = "timeout"
        report = orchestrator.execute(orchestrator.plan_deploy(
            DeployOptions(target="origin", purge=spec, allow_history_rewrite=True)))

        assert isinstance(report.error, PartialPushDivergence)
        assert report.exit_code == exit_codes.DIVERGENCE
        assert origin.push_attempts == attempts + 1
        assert report.rollback_order == []
        assert origin.refs == remote_before
        assert repo.resolve_ref("HEAD") == report.context.ignore_commit

    def test_partial_push_is_divergence(self, repo, origin, history, orchestrator):
        repo.commit({"new.txt": b"n"}, "New work")
        origin.fail_next_push = "partial"
        report = orchestrator.execute(orchestrator.plan_deploy(DeployOptions(target="origin")))
        assert report.exit_code == exit_codes.DIVERGENCE
        assert report.outcome == "divergence"
        assert "refs/heads/main" not in origin.refs

    def test_clean_rejection_rolls_back(self, repo, origin, history, orchestrator):
        original_tip = repo.resolve_ref("HEAD")
        origin.fail_next_push = "reject"
        spec = PurgeSpec.for_paths(["secret.env"])
        report = orchestrator.execute(orchestrator.plan_deploy(
            DeployOptions(target="origin", purge=spec, allow_history_rewrite=True)))

        assert isinstance(report.error, PushFailed)
        assert report.exit_code == exit_codes.FATAL
        assert report.rollback_order == ["ignore-update", "purge"]
        assert repo.resolve_ref("HEAD") == original_tip
        assert origin.refs["refs/heads/main"] == original_tip

    def test_retarget_then_push(self, repo, origin, history, orchestrator, network):
        from histguard.infra.memory_repo import InMemoryRemote
        network[MIRROR_URL] = InMemoryRemote(MIRROR_URL)
        report = orchestrator.execute(orchestrator.plan_deploy(
            DeployOptions(target="origin", retarget_url=MIRROR_URL)))
        assert report.success, report.error
        assert repo.get_remote("origin") == MIRROR_URL
        assert network[MIRROR_URL].refs["refs/heads/main"] == repo.resolve_ref("HEAD")
        assert report.context.retargets[0].old_url == ORIGIN_URL

    def test_failed_push_after_retarget_restores_url(self, repo, origin, history, orchestrator, network):
        from histguard.infra.memory_repo import InMemoryRemote
        mirror = InMemoryRemote(MIRROR_URL)
        mirror.fail_next_push = "reject"
        network[MIRROR_URL] = mirror
        report = orchestrator.execute(orchestrator.plan_deploy(
            DeployOptions(target="origin", retarget_url=MIRROR_URL)))
        assert report.exit_code == exit_codes.FATAL
        assert repo.get_remote("origin") == ORIGIN_URL
        assert orchestrator.registry.resolve("origin").url == ORIGIN_URL

    def test_dry_run_changes_nothing(self, repo, origin, history, orchestrator):
        refs_before = repo.list_refs()
        spec = PurgeSpec.for_paths(["secret.env"])
        report = orchestrator.execute(orchestrator.plan_deploy(
            DeployOptions(target="origin", purge=spec, allow_history_rewrite=True, dry_run=True)))
        assert report.outcome == "dry_run"
        assert report.exit_code == exit_codes.SUCCESS
        assert all(r.status == StepStatus.DRY_RUN for r in report.records)
        assert repo.list_refs() == refs_before
        assert origin.push_attempts == 1


class TestLockingAndAudit:

    def test_concurrent_operation_refused(self, repo, origin, history, orchestrator):
        held = AdvisoryLock(repo.metadata_dir / OPERATION_LOCK_NAME, purpose="other").acquire()
        try:
            report = orchestrator.execute(orchestrator.plan_deploy(DeployOptions(target="origin")))
        finally:
            held.release()
        assert isinstance(report.error, OperationInProgress)
        assert report.exit_code == exit_codes.REFUSED
        assert origin.push_attempts == 1

    def test_lock_released_after_run(self, repo, origin, history, orchestrator):
        orchestrator.execute(orchestrator.plan_deploy(DeployOptions(target="origin")))
        assert not (repo.metadata_dir / OPERATION_LOCK_NAME).exists()

    def test_authenticated_push_audited_without_token(self, repo, history, orchestrator, config):
        repo.add_remote_repo("mirror", MIRROR_URL, required_token="tok-secret-123")
        orchestrator.registry.register("mirror", MIRROR_URL, auth=AuthBinding("env:MIRROR_TOKEN"),
                                       role=RemoteRole.DEPLOYMENT_TARGET)
        report = orchestrator.execute(orchestrator.plan_deploy(DeployOptions(target="mirror")))
        assert report.success, report.error

        text = open(config['audit']['path']).read()
        assert "tok-secret-123" not in text
        record = json.loads(text.strip().splitlines()[-1])
        assert record['plan'] == "deploy"
        assert record['outcome'] == "committed"
        assert record['exit_code'] == 0
        assert [s['step'] for s in record['steps']] == ["push", "verify"]

    def test_missing_credential_refused(self, repo, history, config):
        from histguard.infra.credentials import CredentialResolver
        from histguard.services.orchestrator import DeploymentOrchestrator
        orchestrator = DeploymentOrchestrator(repo, config=config, credentials=CredentialResolver(environ={}))
        remote = repo.add_remote_repo("mirror", MIRROR_URL, required_token="tok")
        orchestrator.registry.register("mirror", MIRROR_URL, auth=AuthBinding("env:MIRROR_TOKEN"))
        report = orchestrator.execute(orchestrator.plan_deploy(DeployOptions(target="mirror")))
        assert report.exit_code == exit_codes.REFUSED
        assert remote.push_attempts == 0

    def test_every_run_audited(self, repo, origin, history, orchestrator):
        orchestrator.execute(orchestrator.plan_deploy(DeployOptions(target="origin", dry_run=True)))
        _diverge(origin, repo)
        orchestrator.execute(orchestrator.plan_deploy(DeployOptions(target="origin")))
        records = orchestrator.audit.records()
        assert [r['outcome'] for r in records] == ["dry_run", "refused"]


class TestRevertOrigin:

    def test_revert_origin(self, repo, origin, history, orchestrator):
        orchestrator.registry.sync_from_handle()
        orchestrator.registry.retarget("origin", MIRROR_URL)
        report = orchestrator.execute(orchestrator.plan_revert_origin(ORIGIN_URL))
        assert report.success
        assert repo.get_remote("origin") == ORIGIN_URL
        assert report.plan == "revert-origin"


def _reachable(remote, tip):
    seen, stack = set(), [tip]
    while stack:
        rev_id = stack.pop()
        if rev_id in seen:
            continue
        seen.add(rev_id)
        stack.extend(remote.revisions[rev_id].parents)
    return seen
