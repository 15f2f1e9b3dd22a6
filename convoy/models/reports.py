"""Scan report models: vulnerability findings and gate decisions."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    """Fixed, ordered severity scale: LOW < MEDIUM < HIGH < CRITICAL."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, threshold: Severity) -> bool:
        """Return True if this severity is at or above *threshold*."""
        return self.rank >= threshold.rank


_SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class Finding(BaseModel):
    """A single vulnerability finding."""

    model_config = ConfigDict(frozen=True)

    severity: Severity
    cve_id: str
    package: str = ""
    description: str = ""


class ScanReport(BaseModel):
    """Output of the vulnerability scanner for one image digest.

    Findings are a multiset: the same (severity, CVE) pair may appear once
    per affected package.  Immutable once produced.
    """

    model_config = ConfigDict(frozen=True)

    artifact_digest: str
    findings: tuple[Finding, ...] = ()
    scanner: str = ""
    scanned_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def count_by_severity(self) -> dict[str, int]:
        counts = {s.value: 0 for s in Severity}
        for finding in self.findings:
            counts[finding.severity.value] += 1
        return counts


class GateVerdict(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"


class GateDecision(BaseModel):
    """Result of evaluating a ScanReport against a severity threshold."""

    model_config = ConfigDict(frozen=True)

    verdict: GateVerdict
    threshold: Severity
    artifact_digest: str
    blocking_findings: tuple[Finding, ...] = ()

    @property
    def passed(self) -> bool:
        return self.verdict == GateVerdict.PASS
