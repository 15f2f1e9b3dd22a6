"""Abstract base stage with an enforced lifecycle.

Every concrete stage inherits from BaseStage and implements only ``execute()``.
``run_stage()`` is **not overridable**; it fixes the ordering

    compute_input_hash -> execute -> compute_output_hash -> record

so that every stage result is hashed and handed to the orchestrator in the
same shape regardless of what the stage does.
"""

from __future__ import annotations

import abc
import logging
from typing import Any, ClassVar, final

from convoy.core.hasher import compute_input_hash, compute_output_hash

logger = logging.getLogger(__name__)


class StageExecutionError(RuntimeError):
    """Raised when a stage's execute() fails.

    The original taxonomy error (``BuildFailed``, ``PolicyBlocked``, ...)
    is kept as ``__cause__``.
    """


class BaseStage(abc.ABC):
    """Abstract base for all Convoy pipeline stages.

    Subclasses set ``stage_id`` and ``display_name`` and implement
    ``execute(run_context)``.  Result keys starting with ``_`` are internal:
    they are excluded from the output hash.  ``_artifact_refs`` lists the
    references the orchestrator records in the ledger.
    """

    stage_id: ClassVar[str]
    display_name: ClassVar[str]
    is_gate: ClassVar[bool] = False

    @abc.abstractmethod
    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        """Execute the stage's core logic.

        Parameters
        ----------
        run_context:
            Mutable dict carrying run-wide state: ``run_id``, ``trigger``,
            the objects produced by earlier stages, and ``stage_results``.

        Returns
        -------
        dict:
            JSON-serialisable summary of what the stage did.
        """
        ...

    @final
    def run_stage(self, run_context: dict[str, Any]) -> dict[str, Any]:
        """Execute the full stage lifecycle.  **Do not override.**

        Returns the dict produced by ``execute()`` augmented with
        ``_input_hash`` and ``_output_hash``.
        """
        input_hash = self._compute_input_hash(run_context)
        logger.debug("%s [%s] input_hash=%s", self.display_name, self.stage_id, input_hash)

        try:
            result = self.execute(run_context)
        except Exception as exc:
            logger.error("%s [%s] failed: %s", self.display_name, self.stage_id, exc)
            raise StageExecutionError(f"Stage {self.stage_id} failed: {exc}") from exc

        output_hash = self._compute_output_hash(result)
        run_context.setdefault("stage_results", {})[self.stage_id] = result
        result["_input_hash"] = input_hash
        result["_output_hash"] = output_hash

        logger.info(
            "%s [%s] passed: input=%s output=%s",
            self.display_name,
            self.stage_id,
            input_hash[:12],
            output_hash[:12],
        )
        return result

    @final
    def _compute_input_hash(self, run_context: dict[str, Any]) -> str:
        inputs: dict[str, Any] = {
            "run_id": run_context.get("run_id", ""),
            "prior_output_hashes": {
                sid: res.get("_output_hash", "")
                for sid, res in run_context.get("stage_results", {}).items()
            },
        }
        return compute_input_hash(self.stage_id, inputs)

    @final
    def _compute_output_hash(self, result: dict[str, Any]) -> str:
        hashable = {k: v for k, v in result.items() if not k.startswith("_")}
        return compute_output_hash(self.stage_id, hashable)

    def __repr__(self) -> str:
        gate = " [GATE]" if self.is_gate else ""
        return f"<{type(self).__name__} stage_id={self.stage_id!r}{gate}>"
