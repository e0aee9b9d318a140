from __future__ import annotations

import asyncio
import csv
import difflib
import json
import os
import secrets
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Mapping

from ..core.config import AuditSettings
from ..core.exceptions import StorageError
from ..core.logging import get_logger
from ..core.metrics import record_audit_flush, set_audit_buffered
from ..orchestration.enums import PolicyDecisionType
from .events import EventBus

logger = get_logger(name=__name__)

CSV_HEADER = (
    "Timestamp",
    "Agent ID",
    "Agent Role",
    "Action",
    "Resource",
    "Resource ID",
    "Decision",
    "Matched Rule",
    "Reason",
)

_REFERENCE_KEYS = ("taskId", "task_id", "question", "resourceId", "resource_id")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_audit_id(now: datetime) -> str:
    return f"audit_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"


def _dump_state(value: Any) -> str:
    return json.dumps(value, indent=2, sort_keys=True, default=str)


@dataclass(slots=True, frozen=True)
class AuditLogEntry:
    id: str
    timestamp: datetime
    agent_id: str
    agent_role: str
    action: str
    resource: str
    decision: PolicyDecisionType
    reason: str
    resource_id: str | None = None
    matched_rule: str | None = None
    before: Any = None
    after: Any = None
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "agent_id": self.agent_id,
            "agent_role": self.agent_role,
            "action": self.action,
            "resource": self.resource,
            "resource_id": self.resource_id,
            "decision": self.decision.value,
            "matched_rule": self.matched_rule,
            "reason": self.reason,
            "before": self.before,
            "after": self.after,
            "context": self.context,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuditLogEntry":
        timestamp = datetime.fromisoformat(str(data["timestamp"]))
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        context = data.get("context")
        return cls(
            id=str(data["id"]),
            timestamp=timestamp,
            agent_id=str(data.get("agent_id", "")),
            agent_role=str(data.get("agent_role", "")),
            action=str(data.get("action", "")),
            resource=str(data.get("resource", "")),
            resource_id=data.get("resource_id"),
            decision=PolicyDecisionType(data.get("decision", PolicyDecisionType.DENY.value)),
            matched_rule=data.get("matched_rule"),
            reason=str(data.get("reason", "")),
            before=data.get("before"),
            after=data.get("after"),
            context=dict(context) if isinstance(context, Mapping) else {},
        )

    def references(self, resource_id: str) -> bool:
        if self.resource_id == resource_id:
            return True
        return any(self.context.get(key) == resource_id for key in _REFERENCE_KEYS)


@dataclass(slots=True)
class AuditStats:
    total_decisions: int
    allowed: int
    denied: int
    by_agent: dict[str, int]

    def as_dict(self) -> dict[str, object]:
        return {
            "total_decisions": self.total_decisions,
            "allowed": self.allowed,
            "denied": self.denied,
            "by_agent": dict(self.by_agent),
        }


class AuditLogger:
    """Append-only trail of policy decisions and state-changing actions.

    Entries are buffered in memory and appended to one JSONL file per day.
    A failed write leaves the buffer untouched so the same entries are
    retried on the next flush; a successful write removes exactly the entries
    it persisted, never the ones logged while the write was in flight.
    """

    def __init__(
        self,
        settings: AuditSettings | None = None,
        *,
        events: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or AuditSettings()
        self._directory = Path(self._settings.log_dir)
        self._events = events
        self._clock = clock or _utcnow
        self._buffer: list[AuditLogEntry] = []
        self._lock = asyncio.Lock()
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create audit directory {self._directory}: {exc}") from exc

    @property
    def log_directory(self) -> Path:
        return self._directory

    @property
    def buffered(self) -> tuple[AuditLogEntry, ...]:
        return tuple(self._buffer)

    def current_log_path(self) -> Path:
        day = self._clock().astimezone(timezone.utc).date().isoformat()
        return self._directory / f"{self._settings.file_prefix}-{day}.jsonl"

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["AuditLogger"]:
        try:
            yield self
        finally:
            await self.flush()

    async def log(self, entry: AuditLogEntry) -> AuditLogEntry:
        self._buffer.append(entry)
        set_audit_buffered(count=len(self._buffer))
        if self._events is not None:
            self._events.emit("audit.entry", entry.to_dict())
        if len(self._buffer) >= self._settings.buffer_size:
            await self.flush()
        return entry

    async def record(
        self,
        *,
        agent_id: str,
        agent_role: str,
        action: str,
        resource: str,
        decision: PolicyDecisionType,
        reason: str,
        resource_id: str | None = None,
        matched_rule: str | None = None,
        before: Any = None,
        after: Any = None,
        context: Mapping[str, Any] | None = None,
    ) -> AuditLogEntry:
        now = self._clock()
        entry = AuditLogEntry(
            id=new_audit_id(now),
            timestamp=now,
            agent_id=agent_id,
            agent_role=agent_role,
            action=action,
            resource=resource,
            resource_id=resource_id,
            decision=decision,
            matched_rule=matched_rule,
            reason=reason,
            before=before,
            after=after,
            context=dict(context or {}),
        )
        return await self.log(entry)

    async def log_action(
        self,
        agent_id: str,
        action: str,
        resource: str,
        *,
        before: Any = None,
        after: Any = None,
        context: Mapping[str, Any] | None = None,
    ) -> AuditLogEntry:
        """Record a state-changing action that was not the result of a permission check."""
        details = dict(context or {})
        resource_id = next((str(details[key]) for key in _REFERENCE_KEYS if details.get(key)), None)
        return await self.record(
            agent_id=agent_id,
            agent_role="automated",
            action=action,
            resource=resource,
            resource_id=resource_id,
            decision=PolicyDecisionType.ALLOW,
            reason="General system action",
            before=before,
            after=after,
            context=details,
        )

    async def flush(self) -> bool:
        async with self._lock:
            if not self._buffer:
                return True
            pending = list(self._buffer)
            lines = "".join(json.dumps(entry.to_dict(), default=str) + "\n" for entry in pending)
            path = self.current_log_path()
            try:
                await asyncio.to_thread(self._append, path, lines)
            except OSError as exc:
                logger.warning("audit_flush_failed", pending=len(pending), path=str(path), error=str(exc))
                record_audit_flush(outcome="failed", buffered=len(self._buffer))
                return False
            del self._buffer[: len(pending)]
            record_audit_flush(outcome="success", buffered=len(self._buffer))
            await self._rotate(path)
        return True

    async def rotate_if_needed(self) -> bool:
        async with self._lock:
            return await self._rotate(self.current_log_path())

    async def query(
        self,
        *,
        agent_id: str | None = None,
        decision: PolicyDecisionType | str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[AuditLogEntry]:
        """Return matching entries, newest ``limit`` of them, in chronological order."""
        wanted = PolicyDecisionType(decision) if decision is not None else None
        entries = [
            entry
            for entry in await self._collect()
            if (agent_id is None or entry.agent_id == agent_id)
            and (wanted is None or entry.decision is wanted)
            and (start_time is None or entry.timestamp >= start_time)
            and (end_time is None or entry.timestamp <= end_time)
        ]
        cap = self._settings.default_query_limit if limit is None else limit
        if cap <= 0:
            return []
        return entries[-cap:]

    async def generate_transcript(self, resource_id: str) -> str:
        entries = [entry for entry in await self._collect() if entry.references(resource_id)]
        if not entries:
            return "# No transcript available for this resource"

        lines = [
            f"# Action Transcript: {resource_id}",
            f"**Date:** {entries[0].timestamp.date().isoformat()}",
            f"**Total Events:** {len(entries)}",
            "",
            "---",
            "",
        ]
        for entry in entries:
            lines.append(f"### [{entry.timestamp.strftime('%H:%M:%S')}] {entry.action.upper()}")
            lines.append(f"- **Agent:** {entry.agent_id} ({entry.agent_role})")
            lines.append(f"- **Decision:** {entry.decision.value.upper()}")
            lines.append(f"- **Reason:** {entry.reason}")
            if entry.context:
                lines.append(f"- **Context:** `{json.dumps(entry.context, sort_keys=True, default=str)}`")
            if entry.before is not None or entry.after is not None:
                lines.extend(self._render_state_change(entry))
            lines.append("")
        return "\n".join(lines).rstrip() + "\n"

    async def get_stats(self) -> AuditStats:
        entries = await self._collect()
        allowed = sum(1 for entry in entries if entry.decision is PolicyDecisionType.ALLOW)
        by_agent = Counter(entry.agent_id for entry in entries)
        return AuditStats(
            total_decisions=len(entries),
            allowed=allowed,
            denied=len(entries) - allowed,
            by_agent=dict(by_agent),
        )

    async def export_csv(self, destination: Path | str) -> Path:
        target = Path(destination)
        entries = await self._collect()
        rows = [
            (
                entry.timestamp.isoformat(),
                entry.agent_id,
                entry.agent_role,
                entry.action,
                entry.resource,
                entry.resource_id or "",
                entry.decision.value,
                entry.matched_rule or "",
                entry.reason,
            )
            for entry in entries
        ]
        await asyncio.to_thread(self._write_csv, target, rows)
        logger.info("audit_csv_exported", path=str(target), rows=len(rows))
        return target

    async def _collect(self) -> list[AuditLogEntry]:
        async with self._lock:
            persisted = await asyncio.to_thread(self._read_all)
            combined = persisted + list(self._buffer)
        return sorted(combined, key=lambda entry: entry.timestamp)

    async def _rotate(self, path: Path) -> bool:
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return False
        if size <= self._settings.max_log_size_bytes:
            return False
        stamp = int(self._clock().timestamp() * 1000)
        archive = path.with_name(f"{path.stem}-{stamp}{path.suffix}")
        try:
            await asyncio.to_thread(os.replace, path, archive)
        except OSError as exc:
            logger.warning("audit_rotation_failed", path=str(path), error=str(exc))
            return False
        logger.info("audit_log_rotated", archive=str(archive), size=size)
        return True

    def _append(self, path: Path, payload: str) -> None:
        with path.open("a", encoding="utf-8") as handle:
            handle.write(payload)

    def _read_all(self) -> list[AuditLogEntry]:
        entries: list[AuditLogEntry] = []
        for path in sorted(self._directory.glob(f"{self._settings.file_prefix}-*.jsonl")):
            try:
                content = path.read_text(encoding="utf-8")
            except OSError as exc:
                logger.warning("audit_read_failed", path=str(path), error=str(exc))
                continue
            for number, line in enumerate(content.splitlines(), start=1):
                if not line.strip():
                    continue
                try:
                    entries.append(AuditLogEntry.from_dict(json.loads(line)))
                except (ValueError, KeyError, TypeError) as exc:
                    logger.warning("audit_line_invalid", path=str(path), line=number, error=str(exc))
        return entries

    @staticmethod
    def _write_csv(target: Path, rows: list[tuple[str, ...]]) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle)
            writer.writerow(CSV_HEADER)
            writer.writerows(rows)

    @staticmethod
    def _render_state_change(entry: AuditLogEntry) -> list[str]:
        before = _dump_state(entry.before)
        after = _dump_state(entry.after)
        lines = ["", "**State Change:**", "", "Before:", "```json", before, "```", "After:", "```json", after, "```"]
        diff = list(
            difflib.unified_diff(
                before.splitlines(),
                after.splitlines(),
                fromfile="before",
                tofile="after",
                lineterm="",
            )
        )
        if diff:
            lines.extend(["Diff:", "```diff", *diff, "```"])
        return lines


__all__ = ["AuditLogEntry", "AuditLogger", "AuditStats", "CSV_HEADER", "new_audit_id"]
