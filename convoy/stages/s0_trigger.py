"""Stage 0: trigger intake."""

from __future__ import annotations

from typing import Any, ClassVar

from convoy.models.pipeline import TriggerEvent
from convoy.models.stages import STAGE_TRIGGER
from convoy.stages.base import BaseStage


class TriggerIntakeStage(BaseStage):
    """Accepts the "new revision available" event for the run's service."""

    stage_id: ClassVar[str] = STAGE_TRIGGER
    display_name: ClassVar[str] = "Trigger Intake"

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        trigger: TriggerEvent = run_context["trigger"]
        if not trigger.revision.strip():
            raise ValueError("Trigger carries an empty revision")
        if trigger.service_id != run_context["service_id"]:
            raise ValueError(
                f"Trigger for {trigger.service_id!r} routed to {run_context['service_id']!r}"
            )
        return {
            "repository": trigger.repository,
            "revision": trigger.revision,
            "received_at": trigger.received_at.isoformat(),
        }
