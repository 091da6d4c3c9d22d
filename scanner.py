"""Advisory scanner for secrets and PII in memory content.

Findings are logged, never enforced: a write with warnings still goes through.
The scanner is constructed explicitly and passed to the write path, so tests
can swap configurations without touching shared state.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class DetectionPattern:
    type: str
    regex: re.Pattern[str]
    description: str


@dataclass(frozen=True, slots=True)
class ScanWarning:
    type: str
    description: str
    position: int
    redacted_sample: str


@dataclass(slots=True)
class ScanResult:
    warnings: list[ScanWarning] = field(default_factory=list)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


DETECTION_PATTERNS: tuple[DetectionPattern, ...] = (
    # API keys and tokens
    DetectionPattern(
        "api-key",
        re.compile(r"(?:api[_-]?key|apikey|api[_-]?token)\s*[:=]\s*['\"]?([a-zA-Z0-9_\-]{20,})", re.I),
        "API key detected",
    ),
    DetectionPattern(
        "aws-key",
        re.compile(r"(?:AKIA|A3T|AGPA|AIDA|AROA|AIPA|ANPA|ANVA|ASIA)[A-Z0-9]{16}"),
        "AWS access key detected",
    ),
    DetectionPattern(
        "github-token",
        re.compile(r"(?:ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9_]{36,}"),
        "GitHub token detected",
    ),
    DetectionPattern(
        "jwt",
        re.compile(r"eyJ[a-zA-Z0-9_-]+\.eyJ[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+"),
        "JWT token detected",
    ),
    DetectionPattern(
        "generic-secret",
        re.compile(r"(?:secret|token|bearer)\s*[:=]\s*['\"]?([a-zA-Z0-9_\-]{20,})", re.I),
        "Generic secret detected",
    ),
    # Passwords
    DetectionPattern(
        "password",
        re.compile(r"(?:password|passwd|pwd)\s*[:=]\s*['\"]?([^\s'\"]{8,})", re.I),
        "Password detected",
    ),
    # Private keys
    DetectionPattern(
        "private-key",
        re.compile(r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----"),
        "Private key detected",
    ),
    # PII
    DetectionPattern(
        "email",
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "Email address detected",
    ),
    DetectionPattern(
        "credit-card",
        re.compile(r"\b(?:\d{4}[-\s]?){3}\d{4}\b"),
        "Possible credit card number detected",
    ),
    DetectionPattern(
        "ssn",
        re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
        "Possible SSN detected",
    ),
)


def redact_sample(text: str) -> str:
    """Keep the first and last three characters of a match, hide the rest."""
    if len(text) <= 10:
        return "***REDACTED***"
    return f"{text[:3]}...{text[-3:]}"


class ContentScanner:
    def __init__(
        self, enabled: bool = True, patterns: tuple[DetectionPattern, ...] | None = None
    ) -> None:
        self.enabled = enabled
        self.patterns = patterns if patterns is not None else DETECTION_PATTERNS

    def scan(self, text: str) -> ScanResult:
        result = ScanResult()
        if not self.enabled:
            return result
        for pattern in self.patterns:
            for match in pattern.regex.finditer(text):
                result.warnings.append(
                    ScanWarning(
                        type=pattern.type,
                        description=pattern.description,
                        position=match.start(),
                        redacted_sample=redact_sample(match.group(0)),
                    )
                )
        return result

    @staticmethod
    def format_warnings(warnings: list[ScanWarning]) -> str:
        counts = Counter(warning.type for warning in warnings)
        return "\n".join(f"  - {kind}: {count} occurrence(s)" for kind, count in counts.items())
