from __future__ import annotations

import asyncio
import difflib
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

from ..core.exceptions import DiffNotFoundError, RollbackError
from ..core.logging import get_logger
from .events import EventBus
from .rollback import RollbackManager

logger = get_logger(name=__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class DiffPreview:
    diff_id: str
    timestamp: datetime
    file_path: str
    old_content: str
    new_content: str
    diff: str
    approved_by: str | None = None
    approved_at: datetime | None = None
    rollback_entry: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.diff_id,
            "timestamp": self.timestamp.isoformat(),
            "file_path": self.file_path,
            "diff": self.diff,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "rollback_entry": self.rollback_entry,
        }


def unified_diff(old_content: str, new_content: str, file_path: str) -> str:
    lines = difflib.unified_diff(
        old_content.splitlines(keepends=True),
        new_content.splitlines(keepends=True),
        fromfile=f"a/{file_path}",
        tofile=f"b/{file_path}",
    )
    return "".join(lines)


class DiffManager:
    """Holds proposed file edits until someone approves or rejects them."""

    def __init__(
        self,
        rollback: RollbackManager | None = None,
        *,
        events: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._rollback = rollback
        self._events = events
        self._clock = clock or _utcnow
        self._pending: dict[str, DiffPreview] = {}

    async def generate_diff(self, file_path: Path | str, new_content: str) -> DiffPreview:
        path = Path(file_path)
        old_content = await asyncio.to_thread(self._read, path)
        preview = DiffPreview(
            diff_id=f"diff_{uuid4().hex[:12]}",
            timestamp=self._clock(),
            file_path=str(path),
            old_content=old_content,
            new_content=new_content,
            diff=unified_diff(old_content, new_content, str(path)),
        )
        self._pending[preview.diff_id] = preview
        logger.info("diff_preview_created", diff_id=preview.diff_id, path=str(path))
        if self._events is not None:
            self._events.emit("diff.preview_required", preview.to_dict())
        return preview

    async def approve_diff(self, diff_id: str, *, approved_by: str = "user") -> DiffPreview:
        preview = self._get_pending(diff_id)
        rollback_entry: str | None = None
        if self._rollback is not None:
            entry = await self._rollback.backup_file(preview.file_path)
            rollback_entry = entry.entry_id
        try:
            await asyncio.to_thread(self._write, Path(preview.file_path), preview.new_content)
        except OSError as exc:
            logger.warning("diff_apply_failed", diff_id=diff_id, path=preview.file_path, error=str(exc))
            raise RollbackError(f"Cannot apply diff to {preview.file_path}: {exc}") from exc
        applied = replace(
            preview,
            approved_by=approved_by,
            approved_at=self._clock(),
            rollback_entry=rollback_entry,
        )
        del self._pending[diff_id]
        logger.info("diff_applied", diff_id=diff_id, path=preview.file_path, rollback_entry=rollback_entry)
        if self._events is not None:
            self._events.emit("diff.applied", applied.to_dict())
        return applied

    def reject_diff(self, diff_id: str) -> DiffPreview:
        preview = self._get_pending(diff_id)
        del self._pending[diff_id]
        logger.info("diff_rejected", diff_id=diff_id, path=preview.file_path)
        if self._events is not None:
            self._events.emit("diff.rejected", preview.to_dict())
        return preview

    def get_pending_diffs(self) -> list[DiffPreview]:
        return sorted(self._pending.values(), key=lambda preview: preview.timestamp)

    def _get_pending(self, diff_id: str) -> DiffPreview:
        preview = self._pending.get(diff_id)
        if preview is None:
            raise DiffNotFoundError(diff_id)
        return preview

    @staticmethod
    def _read(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    @staticmethod
    def _write(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


__all__ = ["DiffManager", "DiffPreview", "unified_diff"]
