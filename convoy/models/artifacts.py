"""Content-addressed image models.

The digest is the canonical identity of an image.  Tags are mutable
labels; the digest is not.  Two artifacts with the same digest are
interchangeable regardless of tag or build metadata.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ImageArtifact(BaseModel):
    """A built container image.

    ``blob`` carries the image bytes between the builder and the publisher
    and is excluded from serialisation, hashing, and equality.
    """

    model_config = ConfigDict(frozen=True)

    repository: str
    tag: str
    digest: str  # "sha256:<hex>"
    build_metadata: dict[str, Any] = {}
    blob: bytes = Field(default=b"", exclude=True, repr=False)

    @property
    def image_ref(self) -> str:
        """Digest-pinned reference, e.g. ``registry/app@sha256:...``."""
        return f"{self.repository}@{self.digest}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ImageArtifact):
            return NotImplemented
        return self.digest == other.digest

    def __hash__(self) -> int:
        return hash(self.digest)


class PublishedRef(BaseModel):
    """What the registry publisher hands to the rollout stage."""

    model_config = ConfigDict(frozen=True)

    repository: str
    digest: str
    tags: tuple[str, ...] = ()

    @property
    def reference(self) -> str:
        return f"{self.repository}@{self.digest}"
