"""Stage 5: request the rollout of the published image.

A rollout that ends ROLLED_BACK still passes this stage: the previous
revision is serving again, which is a safe terminal state for the deploy.
The outcome is carried in the result and on the run.
"""

from __future__ import annotations

from typing import Any, ClassVar

from convoy.core.desired_state import ServiceSpecStore
from convoy.core.rollout import RolloutController
from convoy.models.stages import STAGE_ROLLOUT
from convoy.stages.base import BaseStage


class RolloutStage(BaseStage):
    stage_id: ClassVar[str] = STAGE_ROLLOUT
    display_name: ClassVar[str] = "Service Rollout"

    def __init__(self, controller: RolloutController, store: ServiceSpecStore) -> None:
        self._controller = controller
        self._store = store

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        ref = run_context["published"]
        current = self._store.get(self._controller.service_id).container
        container = current.model_copy(update={"image_ref": ref.reference})

        result = self._controller.deploy(container)
        run_context["rollout_result"] = result
        return {
            "state": result.state.value,
            "from_revision": result.from_revision,
            "to_revision": result.to_revision,
            "ticks": result.ticks,
            "reason": result.reason,
        }
