"""Stage 1: build the image."""

from __future__ import annotations

from typing import Any, ClassVar

from convoy.backends.protocols import ImageBuilder
from convoy.core.timeouts import call_with_timeout
from convoy.models.stages import STAGE_BUILD
from convoy.stages.base import BaseStage


class BuildStage(BaseStage):
    """Runs the image builder.  A ``BuildFailed`` is fatal to the run."""

    stage_id: ClassVar[str] = STAGE_BUILD
    display_name: ClassVar[str] = "Build Image"

    def __init__(self, builder: ImageBuilder, *, call_timeout: float | None = None) -> None:
        self._builder = builder
        self._call_timeout = call_timeout

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        artifact = call_with_timeout(
            self._builder.build,
            run_context["trigger"],
            timeout=self._call_timeout,
            operation="builder.build",
        )
        run_context["artifact"] = artifact
        return {
            "repository": artifact.repository,
            "tag": artifact.tag,
            "digest": artifact.digest,
            "_artifact_refs": [artifact.digest],
        }
