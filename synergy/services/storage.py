from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any

from ..core.exceptions import StorageError
from ..core.logging import get_logger

logger = get_logger(name=__name__)


class JsonFileStore:
    """Plain JSON document on disk, read and replaced whole.

    Writes go to a sibling temp file that is then moved over the target, so a
    crash mid-write leaves the previous document intact.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def load(self, default: Any = None) -> Any:
        try:
            return await asyncio.to_thread(self._read)
        except FileNotFoundError:
            return default
        except json.JSONDecodeError as exc:
            quarantine = self._path.with_name(self._path.name + ".corrupt")
            logger.warning("json_store_corrupt", path=str(self._path), quarantine=str(quarantine), error=str(exc))
            await asyncio.to_thread(os.replace, self._path, quarantine)
            return default
        except OSError as exc:
            raise StorageError(f"Cannot read {self._path}: {exc}") from exc

    async def save(self, data: Any) -> bool:
        try:
            await asyncio.to_thread(self._write, data)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("json_store_save_failed", path=str(self._path), error=str(exc))
            return False
        return True

    def _read(self) -> Any:
        with self._path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def _write(self, data: Any) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_name(self._path.name + ".tmp")
        with temp_path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, default=str)
        os.replace(temp_path, self._path)


__all__ = ["JsonFileStore"]
