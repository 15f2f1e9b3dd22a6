"""Local, content-addressed image registry on disk.

Storage layout::

    {base}/blobs/{hex[0:2]}/{hex[2:4]}/{hex}.dat   image bytes, keyed by digest
    {base}/tags/{repository}.json                  tag -> digest index

Blobs are immutable: pushing the same digest twice writes nothing new.  Tags
are mutable pointers, so ``latest`` moves while the digest it names does not.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

from convoy.core.hasher import sha256_hex

logger = logging.getLogger(__name__)


class RegistryIntegrityError(RuntimeError):
    """Raised when stored bytes do not match their digest."""


class LocalRegistry:
    """Filesystem-backed registry satisfying ``RegistryClient``.

    Parameters
    ----------
    base_path:
        Root directory for blobs and tag indexes.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        (self._base / "blobs").mkdir(parents=True, exist_ok=True)
        (self._base / "tags").mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.blob_writes = 0

    @staticmethod
    def _hex(digest: str) -> str:
        return digest.removeprefix("sha256:")

    def _blob_path(self, digest: str) -> Path:
        hex_digest = self._hex(digest)
        return self._base / "blobs" / hex_digest[:2] / hex_digest[2:4] / f"{hex_digest}.dat"

    def _tag_index_path(self, repository: str) -> Path:
        return self._base / "tags" / f"{repository.replace('/', '__')}.json"

    def _read_tags(self, repository: str) -> dict[str, str]:
        path = self._tag_index_path(repository)
        if not path.exists():
            return {}
        return json.loads(path.read_text(encoding="utf-8"))

    # ------------------------------------------------------------------
    # RegistryClient
    # ------------------------------------------------------------------

    def push(self, repository: str, tag: str, digest: str, blob: bytes) -> str:
        """Store *blob* under *digest* and point *tag* at it.

        Returns the digest-pinned reference ``repository@digest``.
        """
        if sha256_hex(blob) != self._hex(digest):
            raise RegistryIntegrityError(
                f"Blob does not hash to {digest}; refusing to store"
            )

        with self._lock:
            path = self._blob_path(digest)
            if not path.exists():
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(blob)
                self.blob_writes += 1
                logger.info("Stored blob %s (%d bytes)", digest[:19], len(blob))

            tags = self._read_tags(repository)
            if tags.get(tag) != digest:
                tags[tag] = digest
                self._tag_index_path(repository).write_text(
                    json.dumps(tags, sort_keys=True, indent=2), encoding="utf-8"
                )

        return f"{repository}@{digest}"

    def exists(self, digest: str) -> bool:
        return self._blob_path(digest).exists()

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def resolve(self, repository: str, tag: str) -> str | None:
        """Return the digest a tag currently points at, or None."""
        return self._read_tags(repository).get(tag)

    def tags_for(self, repository: str, digest: str) -> list[str]:
        return sorted(t for t, d in self._read_tags(repository).items() if d == digest)

    def retrieve(self, digest: str) -> bytes:
        path = self._blob_path(digest)
        if not path.exists():
            raise FileNotFoundError(f"Blob not found: {digest}")
        return path.read_bytes()

    def verify(self, digest: str) -> bool:
        """Re-hash stored bytes and compare against the digest."""
        path = self._blob_path(digest)
        if not path.exists():
            return False
        return sha256_hex(path.read_bytes()) == self._hex(digest)
