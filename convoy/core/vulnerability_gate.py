"""Vulnerability gate: scan an image and decide whether it may be published.

``scan`` talks to the scanner (with timeout and bounded retry).  ``evaluate``
is a pure function of the report and the threshold: it performs no I/O and
always returns the same decision for the same inputs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from tenacity import RetryError

from convoy.backends.protocols import ScannerClient
from convoy.core.retry import build_retrying
from convoy.core.timeouts import call_with_timeout
from convoy.errors import CallTimeout, PolicyBlocked, ScanUnavailable
from convoy.models.artifacts import ImageArtifact
from convoy.models.config import RetryPolicy
from convoy.models.reports import GateDecision, GateVerdict, ScanReport, Severity

logger = logging.getLogger(__name__)


def evaluate(report: ScanReport, threshold: Severity) -> GateDecision:
    """FAIL iff some finding has severity at or above *threshold*."""
    blocking = tuple(f for f in report.findings if f.severity.at_least(threshold))
    return GateDecision(
        verdict=GateVerdict.FAIL if blocking else GateVerdict.PASS,
        threshold=threshold,
        artifact_digest=report.artifact_digest,
        blocking_findings=blocking,
    )


def require_pass(decision: GateDecision) -> None:
    """Raise ``PolicyBlocked`` unless *decision* is a PASS."""
    if decision.passed:
        return
    cves = ", ".join(f"{f.cve_id} ({f.severity.value})" for f in decision.blocking_findings)
    raise PolicyBlocked(
        f"{len(decision.blocking_findings)} finding(s) at or above "
        f"{decision.threshold.value} in {decision.artifact_digest}: {cves}",
        blocking_findings=list(decision.blocking_findings),
    )


class VulnerabilityGate:
    """Scanner front-end plus the pass/fail decision.

    Parameters
    ----------
    scanner:
        Anything satisfying ``ScannerClient``.
    threshold:
        Default severity threshold for ``evaluate``.
    retry:
        Attempts and backoff for ``ScanUnavailable`` / ``CallTimeout``.
    call_timeout:
        Per-attempt timeout in seconds; ``None`` disables it.
    sleep:
        Backoff sleep function, injectable for tests.
    """

    def __init__(
        self,
        scanner: ScannerClient,
        *,
        threshold: Severity = Severity.CRITICAL,
        retry: RetryPolicy | None = None,
        call_timeout: float | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._scanner = scanner
        self.threshold = threshold
        self._retry = retry or RetryPolicy()
        self._call_timeout = call_timeout
        self._sleep = sleep

    def scan(self, artifact: ImageArtifact) -> ScanReport:
        """Scan *artifact*, retrying while the scanner is unavailable."""
        retrying = build_retrying(
            self._retry,
            operation=f"scan {artifact.digest[:19]}",
            retry_on=(ScanUnavailable, CallTimeout),
            sleep=self._sleep,
        )
        try:
            for attempt in retrying:
                with attempt:
                    report = call_with_timeout(
                        self._scanner.scan,
                        artifact.image_ref,
                        timeout=self._call_timeout,
                        operation="scanner.scan",
                    )
        except RetryError as exc:
            last = exc.last_attempt.exception()
            raise ScanUnavailable(
                f"Scanner unavailable after {exc.last_attempt.attempt_number} attempts: {last}"
            ) from last

        if report.artifact_digest != artifact.digest:
            raise ScanUnavailable(
                f"Scanner returned a report for {report.artifact_digest}, "
                f"expected {artifact.digest}"
            )

        logger.info(
            "Scanned %s: %s",
            artifact.image_ref,
            ", ".join(f"{k}={v}" for k, v in report.count_by_severity().items()),
        )
        return report

    def evaluate(self, report: ScanReport, threshold: Severity | None = None) -> GateDecision:
        decision = evaluate(report, threshold or self.threshold)
        logger.info(
            "Gate %s for %s at threshold %s (%d blocking)",
            decision.verdict.value,
            report.artifact_digest[:19],
            decision.threshold.value,
            len(decision.blocking_findings),
        )
        return decision
