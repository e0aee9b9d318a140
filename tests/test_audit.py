from __future__ import annotations

import csv
import json
from datetime import timedelta

import pytest

from synergy.core.config import AuditSettings
from synergy.orchestration.enums import PolicyDecisionType
from synergy.services.audit import CSV_HEADER, AuditLogger
from tests.helpers.stubs import FakeClock


def _logger(tmp_path, clock: FakeClock | None = None, **overrides) -> AuditLogger:
    settings = AuditSettings(log_dir=tmp_path / "audit", **overrides)
    return AuditLogger(settings, clock=clock or FakeClock())


async def _deny(audit: AuditLogger, agent_id: str = "agent-1") -> None:
    await audit.record(
        agent_id=agent_id,
        agent_role="researcher",
        action="write",
        resource="file",
        resource_id="/srv/app.py",
        decision=PolicyDecisionType.DENY,
        reason="No matching policy found",
    )


@pytest.mark.asyncio
async def test_buffer_flushes_automatically_at_capacity(tmp_path) -> None:
    audit = _logger(tmp_path, buffer_size=3)

    for _ in range(2):
        await _deny(audit)
    assert len(audit.buffered) == 2
    assert not audit.current_log_path().exists()

    await _deny(audit)

    assert audit.buffered == ()
    lines = audit.current_log_path().read_text(encoding="utf-8").splitlines()
    assert len(lines) == 3
    assert json.loads(lines[0])["decision"] == "deny"


@pytest.mark.asyncio
async def test_failed_flush_keeps_entries_for_retry(tmp_path, monkeypatch) -> None:
    audit = _logger(tmp_path)
    await _deny(audit)
    await _deny(audit)

    def broken_append(path, payload):
        raise OSError("disk full")

    monkeypatch.setattr(audit, "_append", broken_append)
    assert await audit.flush() is False
    assert len(audit.buffered) == 2

    monkeypatch.undo()
    assert await audit.flush() is True
    assert audit.buffered == ()
    assert len(audit.current_log_path().read_text(encoding="utf-8").splitlines()) == 2


@pytest.mark.asyncio
async def test_query_merges_disk_and_buffer_and_filters(tmp_path) -> None:
    clock = FakeClock()
    audit = _logger(tmp_path, clock)
    await _deny(audit, "agent-1")
    await audit.flush()
    clock.advance(60)
    await audit.log_action("agent-2", "task.create", "task", context={"taskId": "task-9"})

    everything = await audit.query()
    denied = await audit.query(decision="deny")
    recent = await audit.query(start_time=clock.now - timedelta(seconds=1))

    assert [entry.agent_id for entry in everything] == ["agent-1", "agent-2"]
    assert [entry.agent_id for entry in denied] == ["agent-1"]
    assert [entry.agent_id for entry in recent] == ["agent-2"]
    assert recent[0].agent_role == "automated"
    assert recent[0].resource_id == "task-9"
    assert await audit.query(limit=1) == [everything[-1]]


@pytest.mark.asyncio
async def test_transcript_and_stats(tmp_path) -> None:
    audit = _logger(tmp_path)
    await audit.log_action(
        "agent-1",
        "task.complete",
        "task",
        before={"status": "in_progress"},
        after={"status": "completed"},
        context={"taskId": "task-1"},
    )
    await _deny(audit, "agent-2")

    transcript = await audit.generate_transcript("task-1")
    missing = await audit.generate_transcript("task-404")
    stats = await audit.get_stats()

    assert transcript.startswith("# Action Transcript: task-1")
    assert "**Total Events:** 1" in transcript
    assert "TASK.COMPLETE" in transcript
    assert "```diff" in transcript
    assert missing == "# No transcript available for this resource"
    assert stats.as_dict() == {
        "total_decisions": 2,
        "allowed": 1,
        "denied": 1,
        "by_agent": {"agent-1": 1, "agent-2": 1},
    }


@pytest.mark.asyncio
async def test_export_csv_writes_header_and_rows(tmp_path) -> None:
    audit = _logger(tmp_path)
    await _deny(audit)

    target = await audit.export_csv(tmp_path / "export" / "audit.csv")

    with target.open(encoding="utf-8", newline="") as handle:
        rows = list(csv.reader(handle))
    assert tuple(rows[0]) == CSV_HEADER
    assert rows[1][1:7] == ["agent-1", "researcher", "write", "file", "/srv/app.py", "deny"]


@pytest.mark.asyncio
async def test_rotation_archives_oversized_file(tmp_path) -> None:
    clock = FakeClock()
    audit = _logger(tmp_path, clock, max_log_size_bytes=1024, buffer_size=1)

    for _ in range(6):
        await _deny(audit)
        clock.advance(1)

    archives = [path for path in audit.log_directory.glob("policy-*.jsonl") if path != audit.current_log_path()]
    assert archives
    assert len(await audit.query()) == 6


@pytest.mark.asyncio
async def test_lifecycle_flushes_on_exit(tmp_path) -> None:
    audit = _logger(tmp_path)

    async with audit.lifecycle():
        await _deny(audit)

    assert audit.buffered == ()
    assert audit.current_log_path().exists()
