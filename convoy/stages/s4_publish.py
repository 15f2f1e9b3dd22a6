"""Stage 4: publish the image to the registry.

An abort is still honoured while no tag has reached the registry.  Once the
first tag lands the publish completes and the run can no longer be aborted.
"""

from __future__ import annotations

from typing import Any, ClassVar

from convoy.core.publisher import RegistryPublisher
from convoy.models.stages import STAGE_PUBLISH
from convoy.stages.base import BaseStage


class PublishStage(BaseStage):
    stage_id: ClassVar[str] = STAGE_PUBLISH
    display_name: ClassVar[str] = "Publish Image"

    def __init__(self, publisher: RegistryPublisher) -> None:
        self._publisher = publisher

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        ref = self._publisher.publish(
            run_context["artifact"], abort_check=run_context.get("abort_check")
        )
        run_context["published"] = ref
        return {
            "reference": ref.reference,
            "tags": list(ref.tags),
            "_artifact_refs": [ref.reference],
        }
