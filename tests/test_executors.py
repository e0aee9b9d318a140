from __future__ import annotations

import pytest

from synergy.core.config import AuditSettings, RollbackSettings
from synergy.core.exceptions import ExecutorError, ToolExecutionError
from synergy.orchestration.executors import (
    POLICY_VIOLATION_PREFIX,
    AgentResponse,
    PolicyGatedToolExecutor,
    ToolExecutor,
    coerce_response,
)
from synergy.orchestration.policy import PolicyEngine
from synergy.orchestration.state import OrgAgent
from synergy.services.audit import AuditLogger
from synergy.services.rollback import RollbackManager
from tests.helpers.stubs import StubToolExecutor


def _gate(tmp_path, tools: ToolExecutor, used: list[tuple[str, str]]):
    audit = AuditLogger(AuditSettings(log_dir=tmp_path / "audit", buffer_size=100))
    rollback = RollbackManager(RollbackSettings(backup_dir=tmp_path / "backups"))
    gate = PolicyGatedToolExecutor(
        tools,
        PolicyEngine(audit),
        rollback=rollback,
        on_tool_use=lambda agent_id, tool: used.append((agent_id, tool)),
    )
    return gate, audit, rollback


@pytest.mark.asyncio
async def test_denied_tool_never_runs(tmp_path) -> None:
    tools = StubToolExecutor()
    used: list[tuple[str, str]] = []
    gate, audit, _ = _gate(tmp_path, tools, used)
    reviewer = OrgAgent(name="Rita", role="reviewer")

    session = gate.session(reviewer, task_id="task-1")
    result = await session.execute("write_file", {"path": str(tmp_path / "x.txt"), "content": "hi"})

    assert not result.allowed
    assert result.output.startswith(POLICY_VIOLATION_PREFIX)
    assert tools.calls == []
    assert used == []
    assert session.blocked == [result]
    assert audit.buffered[-1].context["taskId"] == "task-1"


@pytest.mark.asyncio
async def test_allowed_write_is_backed_up_and_reported(tmp_path) -> None:
    tools = StubToolExecutor()
    used: list[tuple[str, str]] = []
    gate, _, rollback = _gate(tmp_path, tools, used)
    coder = OrgAgent(name="Cody", role="coder")
    target = tmp_path / "main.py"
    target.write_text("old\n", encoding="utf-8")

    result = await gate.session(coder).execute("write_file", {"path": str(target), "content": "new\n"})

    assert result.allowed
    assert result.rollback_entry is not None
    assert target.read_text(encoding="utf-8") == "new\n"
    assert used == [(coder.id, "write_file")]
    await rollback.rollback(result.rollback_entry)
    assert target.read_text(encoding="utf-8") == "old\n"


@pytest.mark.asyncio
async def test_unknown_tools_run_ungated(tmp_path) -> None:
    tools = StubToolExecutor()
    used: list[tuple[str, str]] = []
    gate, audit, _ = _gate(tmp_path, tools, used)
    ceo = OrgAgent(name="Boss", role="ceo")

    result = await gate.session(ceo).execute("summarize", {"text": "long"})

    assert result.allowed
    assert tools.calls == [("summarize", {"text": "long"})]
    assert audit.buffered == ()


@pytest.mark.asyncio
async def test_tool_failures_surface_as_executor_errors(tmp_path) -> None:
    class ExplodingTools(ToolExecutor):
        async def execute(self, tool_name, args):
            raise OSError("no space left")

    used: list[tuple[str, str]] = []
    gate, _, _ = _gate(tmp_path, ExplodingTools(), used)
    session = gate.session(OrgAgent(name="Ann", role="assistant"))

    with pytest.raises(ToolExecutionError) as raised:
        await session.execute("read_file", {"path": "README.md"})
    assert isinstance(raised.value, ExecutorError)
    assert session.failures == [{"tool": "read_file", "error": "Tool read_file failed: no space left"}]


def test_coerce_response() -> None:
    response = AgentResponse(text="hi", confidence=0.5)

    assert coerce_response(response) is response
    assert coerce_response("plain").text == "plain"
