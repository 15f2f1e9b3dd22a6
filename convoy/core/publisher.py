"""Registry publisher: digest-addressed, idempotent image push.

Tag scheme: the semantic version derived from the build tag (a leading
``v`` is stripped) plus the ``latest`` alias.  Revisions that are not
SemVer, such as bare commit shas, are tagged ``0.0.0-<revision>``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable

from tenacity import RetryError

from convoy.backends.protocols import RegistryClient
from convoy.core.retry import build_retrying
from convoy.core.timeouts import call_with_timeout
from convoy.errors import CallTimeout, NetworkError, PublishAborted, PushFailed, PushRejected
from convoy.models.artifacts import ImageArtifact, PublishedRef
from convoy.models.config import RetryPolicy

logger = logging.getLogger(__name__)

LATEST_TAG = "latest"

_SEMVER = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)
_TAG_UNSAFE = re.compile(r"[^0-9A-Za-z.-]")


def version_tag(revision: str) -> str:
    """Map a build revision onto a SemVer tag.

    >>> version_tag("v1.4.2")
    '1.4.2'
    >>> version_tag("3f9c2ab")
    '0.0.0-3f9c2ab'
    """
    candidate = revision[1:] if revision.startswith("v") else revision
    if _SEMVER.match(candidate):
        return candidate
    return f"0.0.0-{_TAG_UNSAFE.sub('-', revision)}"


class RegistryPublisher:
    """Pushes built images and hands back digest-pinned references."""

    def __init__(
        self,
        registry: RegistryClient,
        *,
        retry: RetryPolicy | None = None,
        call_timeout: float | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._registry = registry
        self._retry = retry or RetryPolicy(max_attempts=5)
        self._call_timeout = call_timeout
        self._sleep = sleep

    def tags_for(self, artifact: ImageArtifact) -> tuple[str, ...]:
        return (version_tag(artifact.tag), LATEST_TAG)

    def publish(
        self,
        artifact: ImageArtifact,
        *,
        abort_check: Callable[[], str | None] | None = None,
    ) -> PublishedRef:
        """Publish *artifact* under its version tag and ``latest``.

        Tags that already point at the digest are not pushed again, so a
        publish that failed part-way is completed by the next one.

        *abort_check* returns an abort reason or None.  It is consulted before
        every registry attempt until the first tag lands; from then on the
        publish runs to completion.
        """
        tags = self.tags_for(artifact)
        ref = PublishedRef(repository=artifact.repository, digest=artifact.digest, tags=tags)

        if self._exists(artifact.digest, abort_check):
            missing = [
                tag
                for tag in tags
                if self._resolve(artifact.repository, tag, abort_check) != artifact.digest
            ]
            if not missing:
                logger.info("%s already in registry; skipping push", ref.reference)
                return ref
            logger.info(
                "%s already in registry; restoring tags %s", ref.reference, ", ".join(missing)
            )
        else:
            missing = list(tags)

        for tag in missing:
            self._push(artifact, tag, abort_check)
            abort_check = None

        logger.info("Published %s as %s", ref.reference, ", ".join(tags))
        return ref

    def _exists(self, digest: str, abort_check) -> bool:
        return self._with_retries(
            f"registry.exists {digest[:19]}",
            abort_check,
            self._registry.exists,
            digest,
        )

    def _resolve(self, repository: str, tag: str, abort_check) -> str | None:
        return self._with_retries(
            f"registry.resolve {repository}:{tag}",
            abort_check,
            self._registry.resolve,
            repository,
            tag,
        )

    def _push(self, artifact: ImageArtifact, tag: str, abort_check) -> str:
        return self._with_retries(
            f"push {artifact.repository}:{tag}",
            abort_check,
            self._registry.push,
            artifact.repository,
            tag,
            artifact.digest,
            artifact.blob,
        )

    def _with_retries(self, operation: str, abort_check, fn, *args):
        retrying = build_retrying(
            self._retry,
            operation=operation,
            retry_on=(NetworkError, CallTimeout),
            sleep=self._sleep,
        )
        try:
            for attempt in retrying:
                with attempt:
                    reason = abort_check() if abort_check is not None else None
                    if reason is not None:
                        raise PublishAborted(f"{operation} abandoned: {reason}")
                    result = call_with_timeout(
                        fn, *args, timeout=self._call_timeout, operation=operation
                    )
        except PushRejected as exc:
            logger.error("%s rejected by registry: %s", operation, exc)
            raise PushFailed(f"{operation} rejected: {exc}") from exc
        except RetryError as exc:
            last = exc.last_attempt.exception()
            raise PushFailed(
                f"{operation} failed after {exc.last_attempt.attempt_number} attempts: {last}"
            ) from last
        return result
