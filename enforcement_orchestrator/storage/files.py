"""
JSON-file checkpoint store.

One file per batch under a directory. Writes go to a temporary file that is
renamed over the target, so a crash never leaves a half-written checkpoint.
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Dict, Optional, Union

import aiofiles

from ..core.exceptions import DatabaseError
from ..models.checkpoint import BatchCheckpoint
from .base import CheckpointStore


class FileCheckpointStore(CheckpointStore):
    """Checkpoints stored as ``<directory>/<batch_id>.json``."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, asyncio.Lock] = {}

    def _path(self, batch_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in batch_id)
        return self.directory / f"{safe}.json"

    def _lock(self, batch_id: str) -> asyncio.Lock:
        return self._locks.setdefault(batch_id, asyncio.Lock())

    async def get(self, batch_id: str) -> Optional[BatchCheckpoint]:
        async with self._lock(batch_id):
            return await self._read(batch_id)

    async def save(self, checkpoint: BatchCheckpoint) -> bool:
        async with self._lock(checkpoint.batch_id):
            if not checkpoint.supersedes(await self._read(checkpoint.batch_id)):
                return False

            path = self._path(checkpoint.batch_id)
            tmp_path = path.with_suffix(".json.tmp")
            try:
                async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                    await f.write(json.dumps(checkpoint.to_dict()))
                os.replace(tmp_path, path)
            except OSError as e:
                raise DatabaseError("save_checkpoint", str(e), str(path))
            return True

    async def clear(self, batch_id: str) -> None:
        async with self._lock(batch_id):
            try:
                self._path(batch_id).unlink()
            except FileNotFoundError:
                pass
        self._locks.pop(batch_id, None)

    async def _read(self, batch_id: str) -> Optional[BatchCheckpoint]:
        path = self._path(batch_id)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                return BatchCheckpoint.from_dict(json.loads(await f.read()))
        except (OSError, ValueError) as e:
            raise DatabaseError("get_checkpoint", str(e), str(path))
