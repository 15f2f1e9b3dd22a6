"""Error taxonomy shared by the pipeline and the control loops.

Every error the pipeline stages, the rollout controller, the autoscaler, or
the policy enforcer can surface derives from ``ConvoyError``.  Whether an
error is retried, fatal to a run, or merely logged is decided by the
component that catches it, not by the class itself; the docstrings below
record the contract each component follows.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from convoy.models.network import SecurityRule
    from convoy.models.reports import Finding


class ConvoyError(RuntimeError):
    """Base class for all Convoy errors."""


class BuildFailed(ConvoyError):
    """The image builder could not produce an artifact.  Fatal to the run."""


class ScanUnavailable(ConvoyError):
    """The vulnerability scanner could not be reached or timed out.

    Retried with backoff by the gate; after the last attempt the run fails.
    """


class PolicyBlocked(ConvoyError):
    """The scan report contains findings at or above the severity threshold.

    Fatal to the run: an image with disqualifying findings is never published.
    """

    def __init__(self, message: str, blocking_findings: list[Finding] | None = None) -> None:
        super().__init__(message)
        self.blocking_findings = list(blocking_findings or [])


class NetworkError(ConvoyError):
    """Transient transport failure talking to an external service."""


class PushRejected(ConvoyError):
    """The registry refused the push (authentication or quota).  Not retried."""


class PushFailed(ConvoyError):
    """Publishing gave up after retries, or the push was rejected."""


class PublishAborted(ConvoyError):
    """The run was aborted before any tag of the image reached the registry."""


class RolloutHealthTimeout(ConvoyError):
    """A rollout did not reach steady state in time.

    Triggers automatic rollback; it is fatal to the deploy, not the pipeline.
    """


class PolicyViolation(ConvoyError):
    """A proposed security rule set would admit the application port publicly.

    Rejected synchronously; the previously applied rules remain active.
    """

    def __init__(self, message: str, offending_rules: list[SecurityRule] | None = None) -> None:
        super().__init__(message)
        self.offending_rules = list(offending_rules or [])


class ScalingBoundViolation(ConvoyError):
    """A desired count fell outside ``[min_capacity, max_capacity]``.

    Clamped to the nearest bound and logged; never fatal.
    """

    def __init__(self, requested: int, clamped: int, min_capacity: int, max_capacity: int) -> None:
        super().__init__(
            f"Desired count {requested} outside [{min_capacity}, {max_capacity}]; "
            f"clamped to {clamped}"
        )
        self.requested = requested
        self.clamped = clamped


class CallTimeout(ConvoyError, TimeoutError):
    """An external call exceeded its timeout and is treated as failed."""


class RunFinalizedError(ConvoyError):
    """Raised when something tries to mutate a terminal PipelineRun."""


class BoundsConfigError(ConvoyError):
    """Raised when the bounds configuration is inconsistent.

    The process cannot safely start with this configuration; it must not be
    caught and ignored.
    """
