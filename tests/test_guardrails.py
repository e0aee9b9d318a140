from __future__ import annotations

import pytest

from synergy.orchestration.enums import FindingSeverity
from synergy.orchestration.guardrails import SecurityAuditor, SecurityRule


@pytest.mark.parametrize(
    "text",
    [
        "call eval(user_input) on the form",
        "run exec (payload)",
        "spawn via child_process",
        "clean up with rm -rf /tmp/build",
        "open ../../etc/hosts",
    ],
)
def test_dangerous_patterns_block(text) -> None:
    audit = SecurityAuditor().scan(text, context="task")

    assert audit.blocking
    assert not audit.safe


def test_medium_and_low_findings_do_not_block() -> None:
    audit = SecurityAuditor().scan("Render ${name} with element.innerHTML = value")

    assert not audit.blocking
    assert {finding.severity for finding in audit.findings} == {FindingSeverity.MEDIUM, FindingSeverity.LOW}
    assert "Potential XSS vulnerability" in audit.issues
    assert "Use textContent or sanitize HTML" in audit.recommendations


def test_clean_text_is_safe() -> None:
    audit = SecurityAuditor().scan("Summarize the quarterly sales figures")

    assert audit.safe
    assert audit.as_dict()["issues"] == []


def test_custom_rules_replace_defaults() -> None:
    auditor = SecurityAuditor([SecurityRule("ops.drop", "Table drop", "Ask a DBA", r"drop\s+table", FindingSeverity.HIGH)])

    assert auditor.scan("DROP TABLE users").blocking
    assert auditor.scan("eval(x)").safe


def test_validate_skill() -> None:
    auditor = SecurityAuditor()

    ok, message = auditor.validate_skill("formatter", "def format(text):\n    return text.strip()\n")
    rejected, reason = auditor.validate_skill("runner", "exec(source)")

    assert ok and message == "Security audit passed"
    assert not rejected
    assert reason.startswith("Security issues found: ")
    assert "Use of exec() detected" in reason
