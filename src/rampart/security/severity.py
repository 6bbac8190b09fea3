"""Severity scale shared by the defense components."""

from enum import Enum


class SecuritySeverity(str, Enum):
    """Severity levels, lowest first."""
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RANK[self]


_RANK = {
    SecuritySeverity.INFO: 0,
    SecuritySeverity.LOW: 1,
    SecuritySeverity.MEDIUM: 2,
    SecuritySeverity.HIGH: 3,
    SecuritySeverity.CRITICAL: 4,
}


def escalate(current: SecuritySeverity, candidate: SecuritySeverity) -> SecuritySeverity:
    """Return the higher of two severities; never lowers ``current``."""
    return candidate if candidate.rank > current.rank else current
