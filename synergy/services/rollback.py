from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

from ..core.config import RollbackSettings
from ..core.exceptions import (
    BackupTooLargeError,
    RollbackEntryNotFoundError,
    RollbackError,
    RollbackNotEligibleError,
    StorageError,
)
from ..core.logging import get_logger
from ..core.metrics import record_rollback_operation
from ..orchestration.enums import RollbackAction
from .events import EventBus
from .storage import JsonFileStore

logger = get_logger(name=__name__)

INDEX_FILE = "index.json"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class RollbackEntry:
    entry_id: str
    timestamp: datetime
    action: RollbackAction
    target_path: str
    backup_path: str | None
    original_content: str | None
    can_rollback: bool = True
    rolled_back: bool = False

    @property
    def target_existed(self) -> bool:
        return self.original_content is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "target_path": self.target_path,
            "backup_path": self.backup_path,
            "original_content": self.original_content,
            "can_rollback": self.can_rollback,
            "rolled_back": self.rolled_back,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RollbackEntry":
        timestamp = datetime.fromisoformat(str(data["timestamp"]))
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(
            entry_id=str(data["id"]),
            timestamp=timestamp,
            action=RollbackAction(data.get("action", RollbackAction.WRITE.value)),
            target_path=str(data["target_path"]),
            backup_path=data.get("backup_path"),
            original_content=data.get("original_content"),
            can_rollback=bool(data.get("can_rollback", True)),
            rolled_back=bool(data.get("rolled_back", False)),
        )

    def summary(self) -> dict[str, Any]:
        payload = self.to_dict()
        payload.pop("original_content")
        return payload


class RollbackManager:
    """Snapshots files before mutation and restores them on request.

    Each entry keeps the original text inline, so a restore still works after
    the ``.bak`` file has been cleaned up. A backup taken of a path that did
    not exist yet restores by deleting whatever was created there.
    """

    def __init__(
        self,
        settings: RollbackSettings | None = None,
        *,
        events: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or RollbackSettings()
        self._directory = Path(self._settings.backup_dir)
        self._events = events
        self._clock = clock or _utcnow
        self._index = JsonFileStore(self._directory / INDEX_FILE)
        self._entries: dict[str, RollbackEntry] = {}
        self._lock = asyncio.Lock()
        self._last_stamp = 0
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create rollback directory {self._directory}: {exc}") from exc

    @property
    def backup_directory(self) -> Path:
        return self._directory

    async def initialize(self) -> int:
        """Load the persisted index and drop expired backups."""
        raw = await self._index.load(default=[])
        loaded: dict[str, RollbackEntry] = {}
        for item in raw if isinstance(raw, list) else []:
            try:
                entry = RollbackEntry.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("rollback_index_entry_invalid", error=str(exc))
                continue
            loaded[entry.entry_id] = entry
        self._entries = loaded
        return await self.cleanup()

    async def backup_file(
        self,
        path: Path | str,
        *,
        action: RollbackAction | str = RollbackAction.WRITE,
    ) -> RollbackEntry:
        target = Path(path)
        kind = RollbackAction(action)
        async with self._lock:
            try:
                content = await asyncio.to_thread(self._read_target, target, self._settings.max_backup_bytes)
            except BackupTooLargeError:
                record_rollback_operation(operation="backup", outcome="rejected")
                raise
            stamp = self._next_stamp()
            backup_path: Path | None = None
            if content is not None:
                backup_path = self._directory / f"{target.name}.{stamp}.bak"
                try:
                    await asyncio.to_thread(backup_path.write_text, content, encoding="utf-8")
                except OSError as exc:
                    record_rollback_operation(operation="backup", outcome="failed")
                    raise RollbackError(f"Cannot write backup for {target}: {exc}") from exc
            entry = RollbackEntry(
                entry_id=f"rollback_{stamp}",
                timestamp=self._clock(),
                action=kind,
                target_path=str(target),
                backup_path=str(backup_path) if backup_path else None,
                original_content=content,
            )
            self._entries[entry.entry_id] = entry
            await self._save_index()
        record_rollback_operation(operation="backup", outcome="success")
        logger.info("rollback_backup_created", entry_id=entry.entry_id, target=str(target), existed=entry.target_existed)
        if self._events is not None:
            self._events.emit("rollback.backup_created", entry.summary())
        return entry

    async def rollback(self, entry_id: str) -> RollbackEntry:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                raise RollbackEntryNotFoundError(entry_id)
            if entry.rolled_back or not entry.can_rollback:
                record_rollback_operation(operation="restore", outcome="rejected")
                raise RollbackNotEligibleError(f"Entry {entry_id} cannot be rolled back")
            try:
                await asyncio.to_thread(self._restore, entry)
            except OSError as exc:
                record_rollback_operation(operation="restore", outcome="failed")
                raise RollbackError(f"Cannot restore {entry.target_path}: {exc}") from exc
            restored = replace(entry, rolled_back=True)
            self._entries[entry_id] = restored
            await self._save_index()
        record_rollback_operation(operation="restore", outcome="success")
        logger.info("rollback_restored", entry_id=entry_id, target=entry.target_path)
        if self._events is not None:
            self._events.emit("rollback.restored", restored.summary())
        return restored

    async def cleanup(self) -> int:
        """Remove entries and backup files older than the TTL. Returns how many entries went."""
        cutoff = self._clock() - timedelta(days=self._settings.ttl_days)
        async with self._lock:
            expired = [entry for entry in self._entries.values() if entry.timestamp < cutoff]
            for entry in expired:
                del self._entries[entry.entry_id]
            await asyncio.to_thread(self._remove_backups, expired, cutoff)
            if expired:
                await self._save_index()
        if expired:
            record_rollback_operation(operation="cleanup", outcome="success")
            logger.info("rollback_cleanup", removed=len(expired))
        return len(expired)

    def get(self, entry_id: str) -> RollbackEntry:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise RollbackEntryNotFoundError(entry_id)
        return entry

    def get_history(self, limit: int | None = None) -> list[RollbackEntry]:
        cap = self._settings.history_limit if limit is None else limit
        ordered = sorted(self._entries.values(), key=lambda entry: entry.timestamp, reverse=True)
        return ordered[: max(cap, 0)]

    def get_backup_size(self) -> int:
        total = 0
        for path in self._directory.glob("*.bak"):
            try:
                total += path.stat().st_size
            except FileNotFoundError:
                continue
        return total

    def _next_stamp(self) -> int:
        # Entry ids derive from the millisecond clock; keep them unique within a burst.
        stamp = max(int(self._clock().timestamp() * 1000), self._last_stamp + 1)
        self._last_stamp = stamp
        return stamp

    async def _save_index(self) -> None:
        saved = await self._index.save([entry.to_dict() for entry in self._entries.values()])
        if not saved:
            record_rollback_operation(operation="index", outcome="failed")

    @staticmethod
    def _read_target(target: Path, max_bytes: int) -> str | None:
        try:
            size = target.stat().st_size
        except FileNotFoundError:
            return None
        if not target.is_file():
            raise RollbackError(f"{target} is not a regular file")
        # Refuse oversized files from the stat result, before loading them.
        if size > max_bytes:
            raise BackupTooLargeError(f"{target} is {size} bytes, above the {max_bytes} byte backup cap")
        try:
            return target.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise RollbackError(f"{target} is not UTF-8 text and cannot be snapshotted") from exc

    @staticmethod
    def _restore(entry: RollbackEntry) -> None:
        target = Path(entry.target_path)
        if entry.original_content is None:
            target.unlink(missing_ok=True)
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(entry.original_content, encoding="utf-8")

    def _remove_backups(self, expired: list[RollbackEntry], cutoff: datetime) -> None:
        for entry in expired:
            if entry.backup_path:
                Path(entry.backup_path).unlink(missing_ok=True)
        referenced = {entry.backup_path for entry in self._entries.values() if entry.backup_path}
        threshold = cutoff.timestamp()
        for path in self._directory.glob("*.bak"):
            if str(path) in referenced:
                continue
            try:
                if path.stat().st_mtime < threshold:
                    path.unlink()
            except FileNotFoundError:
                continue


__all__ = ["RollbackEntry", "RollbackManager"]
