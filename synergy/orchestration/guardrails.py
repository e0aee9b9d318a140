from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from ..core.logging import get_logger
from .enums import FindingSeverity

logger = get_logger(name=__name__)


@dataclass(slots=True, frozen=True)
class SecurityFinding:
    rule_id: str
    issue: str
    recommendation: str
    severity: FindingSeverity

    def as_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "issue": self.issue,
            "recommendation": self.recommendation,
            "severity": self.severity.value,
        }


@dataclass(slots=True)
class SecurityAudit:
    context: str
    findings: list[SecurityFinding] = field(default_factory=list)

    @property
    def safe(self) -> bool:
        return not self.findings

    @property
    def blocking(self) -> bool:
        return any(finding.severity is FindingSeverity.HIGH for finding in self.findings)

    @property
    def issues(self) -> list[str]:
        return [finding.issue for finding in self.findings]

    @property
    def recommendations(self) -> list[str]:
        return [finding.recommendation for finding in self.findings]

    def as_dict(self) -> dict[str, Any]:
        return {
            "context": self.context,
            "safe": self.safe,
            "blocking": self.blocking,
            "issues": self.issues,
            "recommendations": self.recommendations,
            "findings": [finding.as_dict() for finding in self.findings],
        }


@dataclass(slots=True)
class SecurityRule:
    rule_id: str
    issue: str
    recommendation: str
    pattern: str
    severity: FindingSeverity = FindingSeverity.MEDIUM
    flags: int = re.IGNORECASE
    _compiled: re.Pattern[str] | None = field(default=None, init=False, repr=False)

    def evaluate(self, text: str) -> SecurityFinding | None:
        if self._compiled is None:
            self._compiled = re.compile(self.pattern, self.flags)
        if not self._compiled.search(text):
            return None
        return SecurityFinding(
            rule_id=self.rule_id,
            issue=self.issue,
            recommendation=self.recommendation,
            severity=self.severity,
        )


def default_security_rules() -> list[SecurityRule]:
    high = FindingSeverity.HIGH
    low = FindingSeverity.LOW
    return [
        SecurityRule("code.eval", "Use of eval() detected", "Replace eval with safer alternatives", r"eval\s*\(", high),
        SecurityRule(
            "code.exec", "Use of exec() detected", "Validate and sanitize input before execution", r"exec\s*\(", high
        ),
        SecurityRule(
            "code.child_process", "Child process usage detected", "Ensure command injection prevention",
            r"child_process", high,
        ),
        SecurityRule(
            "shell.rm_rf", "Destructive command detected", "Require explicit user confirmation", r"rm\s+-rf", high
        ),
        SecurityRule(
            "data.credentials", "Potential credential exposure", "Use environment variables or secure storage",
            r"password|secret|api.?key|token",
        ),
        SecurityRule(
            "path.traversal", "Path traversal attempt", "Validate and sanitize file paths", r"\.\./", high, flags=0
        ),
        SecurityRule("web.inner_html", "Potential XSS vulnerability", "Use textContent or sanitize HTML", r"innerHTML\s*="),
        SecurityRule("web.document_write", "Unsafe DOM manipulation", "Use modern DOM APIs", r"document\.write"),
        SecurityRule("data.sql", "SQL query detected", "Use parameterized queries", r"SELECT.*FROM.*WHERE"),
        SecurityRule(
            "code.interpolation", "Template literal with variable", "Validate interpolated values",
            r"\$\{.*\}", low, flags=0,
        ),
    ]


class SecurityAuditor:
    """Pattern scan run over task descriptions, collaboration requests and skill code."""

    def __init__(self, rules: Iterable[SecurityRule] | None = None) -> None:
        self._rules = list(rules) if rules is not None else default_security_rules()

    @property
    def rules(self) -> list[SecurityRule]:
        return list(self._rules)

    def scan(self, text: str, *, context: str = "") -> SecurityAudit:
        audit = SecurityAudit(context=context)
        for rule in self._rules:
            finding = rule.evaluate(text or "")
            if finding is not None:
                audit.findings.append(finding)
        if not audit.safe:
            logger.warning(
                "security_findings",
                context=context,
                blocking=audit.blocking,
                issues=audit.issues,
            )
        return audit

    def validate_skill(self, name: str, code: str) -> tuple[bool, str]:
        audit = self.scan(code, context=f"Skill: {name}")
        if not audit.safe:
            return False, f"Security issues found: {', '.join(audit.issues)}"
        return True, "Security audit passed"


__all__ = [
    "SecurityAudit",
    "SecurityAuditor",
    "SecurityFinding",
    "SecurityRule",
    "default_security_rules",
]
