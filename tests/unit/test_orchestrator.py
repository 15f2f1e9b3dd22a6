"""Tests for PipelineOrchestrator: fail-fast, queueing, abort, ledger trail."""

from __future__ import annotations

import threading

import pytest

from convoy.core.orchestrator import PipelineOrchestrator
from convoy.errors import NetworkError
from convoy.models.pipeline import RunStatus
from convoy.models.reports import Finding, Severity
from convoy.models.service import RolloutState
from convoy.models.stages import StageState
from convoy.stages import TriggerIntakeStage

ALL_STAGES = ["s0_trigger", "s1_build", "s2_scan", "s3_evaluate", "s4_publish", "s5_rollout"]


def _states(run) -> dict[str, StageState]:
    return {record.stage_id: record.state for record in run.stages}


class TestHappyPath:
    def test_run_succeeds_and_deploys(self, make_stack, make_trigger, backends):
        stack = make_stack()
        trigger = make_trigger("v1.1.0")
        stack.orchestrator.submit(trigger)
        [run] = stack.orchestrator.drain()

        assert run.status == RunStatus.SUCCESS
        assert run.rollout_state == RolloutState.STEADY_STATE
        assert run.image_ref == backends.builder.image_ref_for(trigger)
        assert set(_states(run).values()) == {StageState.PASSED}
        assert stack.store.get("web").container.image_ref == run.image_ref

    def test_ledger_records_run_transitions(self, make_stack, make_trigger, ledger):
        stack = make_stack()
        run = stack.orchestrator.submit(make_trigger())
        stack.orchestrator.drain()

        run_level = [e.state_transition for e in ledger.get_stage_history(run.run_id, "run")]
        assert run_level == ["new->queued", "queued->in_progress", "in_progress->success"]
        for stage_id in ALL_STAGES:
            history = [e.state_transition for e in ledger.get_stage_history(run.run_id, stage_id)]
            assert history == ["not_started->running", "running->passed"]
        assert stack.orchestrator.verify_chain(run.run_id)

    def test_stage_hashes_recorded(self, make_stack, make_trigger, ledger):
        stack = make_stack()
        run = stack.orchestrator.submit(make_trigger())
        stack.orchestrator.drain()
        passed = [
            e for e in ledger.get_run_entries(run.run_id) if e.state_transition == "running->passed"
        ]
        assert len(passed) == len(ALL_STAGES)
        assert all(e.input_hash and e.output_hash for e in passed)
        publish = next(e for e in passed if e.stage_id == "s4_publish")
        assert publish.artifact_references == [stack.orchestrator.get_run(run.run_id).image_ref]


class TestFailFast:
    def test_critical_finding_blocks_publish(self, make_stack, make_trigger, backends):
        backends.scanner.findings = (
            Finding(severity=Severity.CRITICAL, cve_id="CVE-2024-3094", package="xz-utils"),
        )
        stack = make_stack()
        stack.orchestrator.submit(make_trigger())
        [run] = stack.orchestrator.drain()

        assert run.status == RunStatus.FAILED
        states = _states(run)
        assert states["s3_evaluate"] == StageState.FAILED
        assert states["s4_publish"] == StageState.BLOCKED
        assert states["s5_rollout"] == StageState.BLOCKED
        assert run.stage("s3_evaluate").error_kind == "PolicyBlocked"
        assert backends.registry.push_calls == 0
        assert backends.local_registry.blob_writes == 0
        assert stack.store.get("web").generation == 1

    def test_high_finding_passes_critical_threshold(self, make_stack, make_trigger, backends):
        backends.scanner.findings = (Finding(severity=Severity.HIGH, cve_id="CVE-2024-0001"),)
        stack = make_stack()
        stack.orchestrator.submit(make_trigger())
        [run] = stack.orchestrator.drain()
        assert run.status == RunStatus.SUCCESS

    def test_lower_threshold_blocks_high(self, make_stack, make_trigger, backends):
        backends.scanner.findings = (Finding(severity=Severity.HIGH, cve_id="CVE-2024-0001"),)
        stack = make_stack(scan_severity_threshold=Severity.HIGH)
        stack.orchestrator.submit(make_trigger())
        [run] = stack.orchestrator.drain()
        assert run.status == RunStatus.FAILED

    def test_build_failure(self, make_stack, make_trigger, backends):
        backends.builder.fail_revisions.add("v9.9.9")
        stack = make_stack()
        stack.orchestrator.submit(make_trigger("v9.9.9"))
        [run] = stack.orchestrator.drain()

        assert run.status == RunStatus.FAILED
        assert run.stage("s1_build").error_kind == "BuildFailed"
        assert _states(run)["s2_scan"] == StageState.BLOCKED
        assert backends.scanner.calls == 0

    def test_scanner_unavailable_fails_run(self, make_stack, make_trigger, backends):
        backends.scanner.unavailable_attempts = 10
        stack = make_stack(scan_max_attempts=3)
        stack.orchestrator.submit(make_trigger())
        [run] = stack.orchestrator.drain()

        assert run.status == RunStatus.FAILED
        assert run.stage("s2_scan").error_kind == "ScanUnavailable"
        assert backends.scanner.calls == 3
        assert backends.registry.push_calls == 0

    def test_scanner_recovers_within_retries(self, make_stack, make_trigger, backends):
        backends.scanner.unavailable_attempts = 2
        stack = make_stack(scan_max_attempts=3)
        stack.orchestrator.submit(make_trigger())
        [run] = stack.orchestrator.drain()
        assert run.status == RunStatus.SUCCESS

    def test_push_failure_fails_run(self, make_stack, make_trigger, backends):
        backends.registry.failures = 100
        stack = make_stack(publish_max_attempts=4)
        stack.orchestrator.submit(make_trigger())
        [run] = stack.orchestrator.drain()

        assert run.status == RunStatus.FAILED
        assert run.stage("s4_publish").error_kind == "PushFailed"
        assert backends.registry.push_calls == 4
        assert _states(run)["s5_rollout"] == StageState.BLOCKED

    def test_rolled_back_deploy_is_not_a_pipeline_failure(
        self, make_stack, make_trigger, backends
    ):
        trigger = make_trigger("v2.0.0")
        backends.platform.probe_scripts[backends.builder.image_ref_for(trigger)] = False
        stack = make_stack()
        initial = stack.store.get("web").container

        stack.orchestrator.submit(trigger)
        [run] = stack.orchestrator.drain()

        assert run.status == RunStatus.SUCCESS
        assert run.rollout_state == RolloutState.ROLLED_BACK
        assert stack.store.get("web").container == initial

    def test_republishing_same_digest_skips_push(self, make_stack, make_trigger, backends):
        stack = make_stack()
        stack.orchestrator.submit(make_trigger("v1.1.0"))
        stack.orchestrator.drain()
        pushes = backends.registry.push_calls

        stack.orchestrator.submit(make_trigger("v1.1.0"))
        [rerun] = stack.orchestrator.drain()
        assert rerun.status == RunStatus.SUCCESS
        assert backends.registry.push_calls == pushes


class TestQueue:
    def test_fifo(self, make_stack, make_trigger):
        stack = make_stack()
        first = stack.orchestrator.submit(make_trigger("v1.1.0"))
        second = stack.orchestrator.submit(make_trigger("v1.2.0"))
        assert [r.run_id for r in stack.orchestrator.queued_runs] == [first.run_id, second.run_id]

        finished = stack.orchestrator.drain()
        assert [r.run_id for r in finished] == [first.run_id, second.run_id]
        assert stack.orchestrator.queued_runs == []
        assert stack.orchestrator.active_run is None

    def test_wrong_service_rejected(self, make_stack, make_trigger):
        stack = make_stack()
        with pytest.raises(ValueError):
            stack.orchestrator.submit(make_trigger(service_id="api"))

    def test_missing_stages_rejected(self, ledger):
        with pytest.raises(ValueError, match="No stage registered"):
            PipelineOrchestrator("web", [TriggerIntakeStage()], ledger)

    def test_run_next_on_empty_queue(self, make_stack):
        assert make_stack().orchestrator.run_next() is None


class TestAbort:
    def test_abort_queued_run(self, make_stack, make_trigger, ledger):
        stack = make_stack()
        first = stack.orchestrator.submit(make_trigger("v1.1.0"))
        second = stack.orchestrator.submit(make_trigger("v1.2.0"))

        aborted = stack.orchestrator.abort(second.run_id, "operator")
        assert aborted.status == RunStatus.ABORTED
        assert aborted.abort_reason == "operator"

        finished = stack.orchestrator.drain()
        assert [r.run_id for r in finished] == [first.run_id]
        run_level = [e.state_transition for e in ledger.get_stage_history(second.run_id, "run")]
        assert run_level == ["new->queued", "queued->aborted"]

    def test_abort_active_run_before_publish(
        self, make_stack, make_trigger, backends, monkeypatch
    ):
        stack = make_stack()
        build = backends.builder.build

        def build_then_abort(trigger):
            stack.orchestrator.abort(stack.orchestrator.active_run.run_id, "operator")
            return build(trigger)

        monkeypatch.setattr(backends.builder, "build", build_then_abort)
        stack.orchestrator.submit(make_trigger())
        [run] = stack.orchestrator.drain()

        assert run.status == RunStatus.ABORTED
        states = _states(run)
        assert states["s1_build"] == StageState.PASSED
        assert states["s2_scan"] == StageState.ABORTED
        assert states["s4_publish"] == StageState.BLOCKED
        assert backends.registry.push_calls == 0
        assert stack.store.get("web").generation == 1

    def test_abort_after_publish_is_ignored(self, make_stack, make_trigger, backends, monkeypatch):
        stack = make_stack()
        push = backends.registry.push

        def push_then_abort(*args):
            stack.orchestrator.abort(stack.orchestrator.active_run.run_id, "too late")
            return push(*args)

        monkeypatch.setattr(backends.registry, "push", push_then_abort)
        stack.orchestrator.submit(make_trigger())
        [run] = stack.orchestrator.drain()

        assert run.status == RunStatus.SUCCESS
        assert run.rollout_state == RolloutState.STEADY_STATE
        assert run.abort_reason == ""

    def test_abort_while_publish_retries(self, make_stack, make_trigger, backends, monkeypatch):
        stack = make_stack()

        def fail_then_abort(*args):
            stack.orchestrator.abort(stack.orchestrator.active_run.run_id, "operator")
            raise NetworkError("registry unreachable")

        monkeypatch.setattr(backends.registry, "push", fail_then_abort)
        stack.orchestrator.submit(make_trigger())
        [run] = stack.orchestrator.drain()

        assert run.status == RunStatus.ABORTED
        assert run.abort_reason == "operator"
        states = _states(run)
        assert states["s4_publish"] == StageState.ABORTED
        assert states["s5_rollout"] == StageState.BLOCKED
        assert stack.store.get("web").generation == 1

    def test_abort_finished_run_is_ignored(self, make_stack, make_trigger):
        stack = make_stack()
        run = stack.orchestrator.submit(make_trigger())
        stack.orchestrator.drain()
        assert stack.orchestrator.abort(run.run_id).status == RunStatus.SUCCESS

    def test_supersede_drops_queued_runs(self, make_stack, make_trigger):
        stack = make_stack()
        old = stack.orchestrator.submit(make_trigger("v1.1.0"))
        new = stack.orchestrator.submit(make_trigger("v1.2.0"), supersede=True)

        assert stack.orchestrator.get_run(old.run_id).status == RunStatus.ABORTED
        assert "superseded by v1.2.0" in stack.orchestrator.get_run(old.run_id).abort_reason
        finished = stack.orchestrator.drain()
        assert [r.run_id for r in finished] == [new.run_id]


class TestUnexpectedErrors:
    def test_run_is_failed_and_error_propagates(
        self, make_stack, make_trigger, ledger, monkeypatch
    ):
        stack = make_stack()
        transition = stack.orchestrator.stage_machine.transition

        def broken_transition(run_id, stage_id, state, **kwargs):
            if stage_id == "s2_scan" and state == StageState.RUNNING:
                raise RuntimeError("ledger out of sync")
            return transition(run_id, stage_id, state, **kwargs)

        monkeypatch.setattr(stack.orchestrator.stage_machine, "transition", broken_transition)
        run = stack.orchestrator.submit(make_trigger())
        with pytest.raises(RuntimeError, match="out of sync"):
            stack.orchestrator.drain()

        assert stack.orchestrator.get_run(run.run_id).status == RunStatus.FAILED
        assert stack.orchestrator.active_run is None
        run_level = [e.state_transition for e in ledger.get_stage_history(run.run_id, "run")]
        assert run_level[-1] == "in_progress->failed"

        monkeypatch.undo()
        stack.orchestrator.submit(make_trigger("v1.2.0"))
        [next_run] = stack.orchestrator.drain()
        assert next_run.status == RunStatus.SUCCESS

    def test_serve_keeps_going(self, make_stack, monkeypatch):
        stack = make_stack()
        stop = threading.Event()
        calls = []

        def broken_drain():
            calls.append(1)
            if len(calls) >= 2:
                stop.set()
            raise RuntimeError("ledger locked")

        monkeypatch.setattr(stack.orchestrator, "drain", broken_drain)
        stack.orchestrator.serve(stop, poll_seconds=0)
        assert len(calls) == 2


class TestRetention:
    def test_only_recent_finished_runs_are_kept(self, make_stack, make_trigger, ledger):
        stack = make_stack(history_limit=2)
        submitted = [
            stack.orchestrator.submit(make_trigger(revision))
            for revision in ("v1.1.0", "v1.2.0", "v1.3.0")
        ]
        stack.orchestrator.drain()

        kept = [r.run_id for r in stack.orchestrator.runs()]
        assert kept == [r.run_id for r in submitted[1:]]
        with pytest.raises(KeyError):
            stack.orchestrator.get_run(submitted[0].run_id)
        assert len(ledger.get_all_run_ids("web")) == 3
