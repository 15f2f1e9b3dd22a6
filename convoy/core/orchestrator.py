"""Pipeline orchestrator: one service, one run at a time.

The orchestrator owns the run queue for a single service.  Triggers are
queued FIFO and executed one at a time, stage by stage, through the
``StageMachine``:

    Trigger -> Build -> Scan -> Evaluate -> Publish -> Rollout

Any stage failure fails the run and blocks every later stage, so an image
that was not scanned, or was rejected by the gate, is never published.  An
abort is honoured at each stage boundary up to Publish, and inside Publish
until the first tag lands; after that the rollout is allowed to reach its
own terminal state.  Only the most recent finished runs are kept in memory;
the ledger holds the rest.

Orchestrators for different services share nothing but the append-only
ledger, and can run concurrently.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from functools import partial
from typing import Any

from convoy.config import settings
from convoy.core.prerequisite_graph import PrerequisiteGraph
from convoy.core.run_ledger import RunLedger
from convoy.core.stage_machine import StageMachine
from convoy.errors import PublishAborted
from convoy.models.ledger import LedgerEntry
from convoy.models.pipeline import PipelineRun, RunStatus, TriggerEvent
from convoy.models.stages import (
    DEFAULT_STAGE_DEFINITIONS,
    RUN_STAGE_ID,
    StageState,
)
from convoy.stages.base import BaseStage, StageExecutionError

logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    """Runs release pipelines for one service.

    Parameters
    ----------
    service_id:
        The service whose triggers this orchestrator accepts.
    stages:
        Stage instances, one per entry in ``DEFAULT_STAGE_DEFINITIONS``.
    ledger:
        Audit ledger for run-level and stage-level transitions.
    history_limit:
        Number of finished runs kept in memory for ``get_run`` and ``runs``;
        older ones remain in the ledger.
    """

    def __init__(
        self,
        service_id: str,
        stages: list[BaseStage],
        ledger: RunLedger,
        *,
        history_limit: int | None = None,
    ) -> None:
        self.service_id = service_id
        self.ledger = ledger
        self._history_limit = (
            settings.history_limit if history_limit is None else history_limit
        )
        self.graph = PrerequisiteGraph(DEFAULT_STAGE_DEFINITIONS)
        self.stage_machine = StageMachine(ledger, self.graph, service_id=service_id)

        by_id = {stage.stage_id: stage for stage in stages}
        missing = [sid for sid in self.graph.stage_ids if sid not in by_id]
        if missing:
            raise ValueError(f"No stage registered for: {', '.join(missing)}")
        self._stages = [by_id[sid] for sid in self.graph.stage_ids]
        self._commit_ordinal = min(
            (
                self.graph.get_stage_definition(sid).ordinal
                for sid in self.graph.stage_ids
                if self.graph.get_stage_definition(sid).commits_artifact
            ),
            default=len(self._stages),
        )

        self._lock = threading.Lock()
        self._work = threading.Condition(self._lock)
        self._queue: deque[str] = deque()
        self._runs: dict[str, PipelineRun] = {}
        self._active: str | None = None
        self._abort_requests: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Submission and cancellation
    # ------------------------------------------------------------------

    def submit(self, trigger: TriggerEvent, *, supersede: bool = False) -> PipelineRun:
        """Queue a run for *trigger*.

        With ``supersede=True`` the active run is aborted (if it has not yet
        published) and every queued run is dropped first.
        """
        if trigger.service_id != self.service_id:
            raise ValueError(
                f"Trigger for {trigger.service_id!r} submitted to the "
                f"{self.service_id!r} orchestrator"
            )

        run = PipelineRun(service_id=self.service_id, trigger=trigger)
        with self._lock:
            if supersede:
                reason = f"superseded by {trigger.revision}"
                if self._active is not None:
                    self._abort_requests[self._active] = reason
                while self._queue:
                    self._abort_queued(self._queue.popleft(), reason)
            self._runs[run.run_id] = run
            self._queue.append(run.run_id)
            self._work.notify_all()

        self._record_run(run, "new", RunStatus.QUEUED, detail=trigger.revision)
        logger.info("Queued %s for %s@%s", run.run_id, trigger.repository, trigger.revision)
        return run

    def abort(self, run_id: str, reason: str = "aborted by request") -> PipelineRun:
        """Abort a queued run immediately, or the active run at its next boundary."""
        with self._lock:
            run = self._runs[run_id]
            if run_id in self._queue:
                self._queue.remove(run_id)
                return self._abort_queued(run_id, reason)
            if run_id == self._active:
                self._abort_requests[run_id] = reason
                logger.info("Abort requested for active run %s: %s", run_id, reason)
            else:
                logger.info("Run %s is %s; abort ignored", run_id, run.status.value)
            return run

    def _abort_queued(self, run_id: str, reason: str) -> PipelineRun:
        run = self._runs[run_id].with_status(RunStatus.ABORTED, abort_reason=reason)
        self._runs[run_id] = run
        self._record_run(run, RunStatus.QUEUED.value, RunStatus.ABORTED, detail=reason)
        logger.info("Dropped queued run %s: %s", run_id, reason)
        self._prune_finished()
        return run

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run_next(self) -> PipelineRun | None:
        """Execute the oldest queued run in the calling thread.

        Returns the finished run, or None when the queue is empty or another
        thread already has a run in progress.
        """
        with self._lock:
            if self._active is not None or not self._queue:
                return None
            run_id = self._queue.popleft()
            self._active = run_id
            run = self._runs[run_id]

        try:
            return self._execute(run)
        finally:
            with self._lock:
                self._active = None
                self._abort_requests.pop(run_id, None)
                self._prune_finished()
                self._work.notify_all()

    def drain(self) -> list[PipelineRun]:
        """Run queued triggers until the queue is empty."""
        finished = []
        while (run := self.run_next()) is not None:
            finished.append(run)
        return finished

    def serve(self, stop_event: threading.Event, poll_seconds: float = 1.0) -> None:
        """Process triggers as they arrive until *stop_event* is set.

        A run that fails unexpectedly is logged and the loop moves on to the
        next trigger.
        """
        while not stop_event.is_set():
            try:
                self.drain()
            except Exception:
                logger.exception("Pipeline loop for %s hit an unexpected error", self.service_id)
            with self._lock:
                if not self._queue:
                    self._work.wait(timeout=poll_seconds)

    def _execute(self, run: PipelineRun) -> PipelineRun:
        run = self._set_run(run.with_status(RunStatus.IN_PROGRESS))
        try:
            return self._execute_stages(run)
        except Exception as exc:
            self._fail_unexpectedly(run.run_id, exc)
            raise

    def _execute_stages(self, run: PipelineRun) -> PipelineRun:
        self._record_run(run, RunStatus.QUEUED.value, RunStatus.IN_PROGRESS)
        self.stage_machine.initialize_run(run.run_id)

        context: dict[str, Any] = {
            "run_id": run.run_id,
            "service_id": self.service_id,
            "trigger": run.trigger,
            "abort_check": partial(self._pending_abort, run.run_id),
        }

        for stage in self._stages:
            ordinal = self.graph.get_stage_definition(stage.stage_id).ordinal
            if ordinal <= self._commit_ordinal:
                reason = self._pending_abort(run.run_id)
                if reason is not None:
                    return self._abort_active(run, stage.stage_id, reason)
            elif self._pending_abort(run.run_id) is not None:
                logger.warning(
                    "Run %s already published; abort ignored, continuing rollout", run.run_id
                )
                with self._lock:
                    self._abort_requests.pop(run.run_id, None)

            run = self._run_stage(run, stage, context)
            if run.is_terminal:
                return run

        outcome = context.get("rollout_result")
        published = context.get("published")
        run = self._set_run(
            run.with_status(
                RunStatus.SUCCESS,
                image_ref=published.reference if published else "",
                rollout_state=outcome.state if outcome else None,
            )
        )
        self._record_run(
            run,
            RunStatus.IN_PROGRESS.value,
            RunStatus.SUCCESS,
            detail=outcome.state.value if outcome else "",
            artifact_references=[run.image_ref] if run.image_ref else [],
        )
        logger.info("Run %s succeeded (%s)", run.run_id, run.rollout_state)
        return run

    def _run_stage(self, run: PipelineRun, stage: BaseStage, context: dict[str, Any]) -> PipelineRun:
        run_id = run.run_id
        self.stage_machine.transition(run_id, stage.stage_id, StageState.RUNNING)
        run = self._set_run(
            run.with_stage(
                stage.stage_id,
                state=StageState.RUNNING,
                started_at=datetime.now(timezone.utc),
            )
        )

        try:
            result = stage.run_stage(context)
        except StageExecutionError as exc:
            cause = exc.__cause__ or exc
            if isinstance(cause, PublishAborted):
                return self._abort_active(
                    run, stage.stage_id, self._pending_abort(run_id) or str(cause)
                )
            kind = type(cause).__name__
            self.stage_machine.transition(
                run_id,
                stage.stage_id,
                StageState.FAILED,
                detail=f"{kind}: {cause}",
            )
            run = run.with_stage(
                stage.stage_id,
                state=StageState.FAILED,
                finished_at=datetime.now(timezone.utc),
                error_kind=kind,
                error_message=str(cause),
            )
            run = self._sync_stage_states(run)
            run = self._set_run(run.with_status(RunStatus.FAILED))
            self._record_run(
                run, RunStatus.IN_PROGRESS.value, RunStatus.FAILED, detail=f"{kind}: {cause}"
            )
            logger.error("Run %s failed at %s: %s", run_id, stage.stage_id, cause)
            return run

        self.stage_machine.transition(
            run_id,
            stage.stage_id,
            StageState.PASSED,
            input_hash=result["_input_hash"],
            output_hash=result["_output_hash"],
            artifact_references=result.get("_artifact_refs", []),
        )
        return self._set_run(
            run.with_stage(
                stage.stage_id,
                state=StageState.PASSED,
                finished_at=datetime.now(timezone.utc),
            )
        )

    def _abort_active(self, run: PipelineRun, stage_id: str, reason: str) -> PipelineRun:
        self.stage_machine.transition(
            run.run_id, stage_id, StageState.ABORTED, detail=reason
        )
        run = self._sync_stage_states(run)
        run = self._set_run(run.with_status(RunStatus.ABORTED, abort_reason=reason))
        self._record_run(run, RunStatus.IN_PROGRESS.value, RunStatus.ABORTED, detail=reason)
        logger.info("Run %s aborted at %s: %s", run.run_id, stage_id, reason)
        return run

    def _fail_unexpectedly(self, run_id: str, exc: Exception) -> None:
        """Mark an in-progress run FAILED after an error outside the stage taxonomy."""
        with self._lock:
            run = self._runs[run_id]
        if run.is_terminal:
            return
        kind = type(exc).__name__
        for record in run.stages:
            if record.state == StageState.RUNNING:
                run = run.with_stage(
                    record.stage_id,
                    state=StageState.FAILED,
                    finished_at=datetime.now(timezone.utc),
                    error_kind=kind,
                    error_message=str(exc),
                )
        run = self._set_run(run.with_status(RunStatus.FAILED))
        logger.error("Run %s failed unexpectedly: %s: %s", run_id, kind, exc)
        self._record_run(
            run, RunStatus.IN_PROGRESS.value, RunStatus.FAILED, detail=f"{kind}: {exc}"
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_run(self, run_id: str) -> PipelineRun:
        with self._lock:
            return self._runs[run_id]

    def runs(self) -> list[PipelineRun]:
        """Runs still held in memory, oldest first."""
        with self._lock:
            return list(self._runs.values())

    @property
    def active_run(self) -> PipelineRun | None:
        with self._lock:
            return self._runs[self._active] if self._active else None

    @property
    def queued_runs(self) -> list[PipelineRun]:
        with self._lock:
            return [self._runs[rid] for rid in self._queue]

    def verify_chain(self, run_id: str) -> bool:
        return self.ledger.verify_chain(run_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _pending_abort(self, run_id: str) -> str | None:
        with self._lock:
            return self._abort_requests.get(run_id)

    def _set_run(self, run: PipelineRun) -> PipelineRun:
        with self._lock:
            self._runs[run.run_id] = run
        return run

    def _prune_finished(self) -> None:
        """Forget the oldest finished runs beyond the history limit.  Caller holds the lock."""
        finished = [rid for rid, run in self._runs.items() if run.is_terminal]
        for run_id in finished[: max(len(finished) - self._history_limit, 0)]:
            del self._runs[run_id]

    def _sync_stage_states(self, run: PipelineRun) -> PipelineRun:
        """Copy cascade-blocked states from the stage machine onto the run."""
        for stage_id, state in self.stage_machine.get_all_states(run.run_id).items():
            if run.stage(stage_id).state != state:
                run = run.with_stage(stage_id, state=state)
        return run

    def _record_run(
        self,
        run: PipelineRun,
        from_state: str,
        to_status: RunStatus,
        *,
        detail: str = "",
        artifact_references: list[str] | None = None,
    ) -> None:
        self.ledger.append(
            LedgerEntry(
                run_id=run.run_id,
                service_id=self.service_id,
                stage_id=RUN_STAGE_ID,
                state_transition=f"{from_state}->{to_status.value}",
                artifact_references=artifact_references or [],
                detail=detail,
            )
        )
