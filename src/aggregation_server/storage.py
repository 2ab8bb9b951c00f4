"""
Global model storage and aggregation history
"""
import os
import json
import asyncio
import aiofiles
from typing import Dict, List, Optional, Any
from pathlib import Path
import logging

from .errors import StoreUnavailableError
from ..common.interfaces import (
    AggregationResult, GlobalModel, GlobalModelStore, ModelSubmission, RoundState
)

logger = logging.getLogger(__name__)


class InMemoryModelStore(GlobalModelStore):
    """Process-local store; contents are lost on restart"""

    def __init__(self, max_history: int = 100):
        self.max_history = max_history
        self._model: Optional[GlobalModel] = None
        self._history: List[AggregationResult] = []
        self._round_state: Optional[RoundState] = None
        self._pending: List[ModelSubmission] = []

    async def save(self, model: GlobalModel) -> None:
        self._model = model

    async def load(self) -> Optional[GlobalModel]:
        return self._model

    async def append_history(self, result: AggregationResult) -> None:
        self._history.append(result)
        if len(self._history) > self.max_history:
            self._history = self._history[-self.max_history:]

    async def load_history(self, limit: Optional[int] = None) -> List[AggregationResult]:
        if limit is None:
            return list(self._history)
        return self._history[-limit:] if limit > 0 else []

    async def save_round_state(self, state: RoundState) -> None:
        self._round_state = RoundState(state.current_round, state.current_version)

    async def load_round_state(self) -> Optional[RoundState]:
        if self._round_state is None:
            return None
        return RoundState(self._round_state.current_round, self._round_state.current_version)

    async def save_pending(self, submissions: List[ModelSubmission]) -> None:
        self._pending = list(submissions)

    async def load_pending(self) -> List[ModelSubmission]:
        return list(self._pending)

    async def clear(self) -> None:
        self._model = None
        self._history = []
        self._round_state = None
        self._pending = []


class FileModelStore(GlobalModelStore):
    """JSON files on local disk.

    Every slot is written to a temporary file first and then moved into place
    with ``os.replace``, so a concurrent reader sees either the previous or the
    new content and never a partial write. History is an append-only JSON-lines
    log that is compacted to ``max_history`` entries once it grows past it.
    """

    def __init__(self, directory: str = "models", max_history: int = 100):
        self.storage_dir = Path(directory)
        self.model_file = self.storage_dir / "global_model.json"
        self.round_state_file = self.storage_dir / "round_state.json"
        self.pending_file = self.storage_dir / "pending.json"
        self.history_file = self.storage_dir / "history.jsonl"
        self.max_history = max_history

        self._history_count: Optional[int] = None
        self._lock = asyncio.Lock()

        self.storage_dir.mkdir(parents=True, exist_ok=True)

    async def save(self, model: GlobalModel) -> None:
        await self._write_json(self.model_file, model.to_dict())
        logger.info(f"Global model v{model.version} stored at {self.model_file}")

    async def load(self) -> Optional[GlobalModel]:
        data = await self._read_json(self.model_file)
        return GlobalModel.from_dict(data) if data else None

    async def append_history(self, result: AggregationResult) -> None:
        line = json.dumps(result.to_dict(include_weights=False)) + "\n"

        async with self._lock:
            try:
                async with aiofiles.open(self.history_file, 'a') as f:
                    await f.write(line)
            except OSError as e:
                logger.error(f"Failed to append aggregation history: {e}")
                raise StoreUnavailableError(f"Failed to append history: {e}")

            if self._history_count is None:
                self._history_count = len(await self._read_history_lines())
            else:
                self._history_count += 1

            if self._history_count > self.max_history:
                await self._compact_history()

    async def load_history(self, limit: Optional[int] = None) -> List[AggregationResult]:
        lines = await self._read_history_lines()
        lines = lines[-self.max_history:]
        if limit is not None:
            lines = lines[-limit:] if limit > 0 else []

        history = []
        for line in lines:
            try:
                history.append(AggregationResult.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable history entry: {e}")
        return history

    async def save_round_state(self, state: RoundState) -> None:
        await self._write_json(self.round_state_file, state.to_dict())

    async def load_round_state(self) -> Optional[RoundState]:
        data = await self._read_json(self.round_state_file)
        return RoundState.from_dict(data) if data else None

    async def save_pending(self, submissions: List[ModelSubmission]) -> None:
        await self._write_json(self.pending_file, [s.to_dict() for s in submissions])

    async def load_pending(self) -> List[ModelSubmission]:
        data = await self._read_json(self.pending_file)
        return [ModelSubmission.from_dict(item) for item in data or []]

    async def clear(self) -> None:
        async with self._lock:
            for path in (self.model_file, self.round_state_file, self.pending_file, self.history_file):
                try:
                    path.unlink(missing_ok=True)
                except OSError as e:
                    logger.error(f"Failed to remove {path}: {e}")
                    raise StoreUnavailableError(f"Failed to clear {path.name}: {e}")
            self._history_count = 0
        logger.info(f"Cleared model store at {self.storage_dir}")

    async def _write_json(self, path: Path, data: Any):
        """Atomically replace ``path`` with the JSON encoding of ``data``"""
        temp_path = path.with_name(f".{path.name}.tmp")
        try:
            async with aiofiles.open(temp_path, 'w') as f:
                await f.write(json.dumps(data, indent=2))
            await asyncio.to_thread(os.replace, temp_path, path)
        except OSError as e:
            logger.error(f"Failed to write {path}: {e}")
            raise StoreUnavailableError(f"Failed to write {path.name}: {e}")

    async def _read_json(self, path: Path) -> Optional[Any]:
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, 'r') as f:
                return json.loads(await f.read())
        except OSError as e:
            logger.error(f"Failed to read {path}: {e}")
            raise StoreUnavailableError(f"Failed to read {path.name}: {e}")

    async def _read_history_lines(self) -> List[str]:
        if not self.history_file.exists():
            return []
        try:
            async with aiofiles.open(self.history_file, 'r') as f:
                content = await f.read()
        except OSError as e:
            logger.error(f"Failed to read aggregation history: {e}")
            raise StoreUnavailableError(f"Failed to read history: {e}")
        return [line for line in content.splitlines() if line.strip()]

    async def _compact_history(self):
        lines = (await self._read_history_lines())[-self.max_history:]
        temp_path = self.history_file.with_name(f".{self.history_file.name}.tmp")
        try:
            async with aiofiles.open(temp_path, 'w') as f:
                await f.write("".join(line + "\n" for line in lines))
            await asyncio.to_thread(os.replace, temp_path, self.history_file)
        except OSError as e:
            logger.error(f"Failed to compact aggregation history: {e}")
            raise StoreUnavailableError(f"Failed to compact history: {e}")

        self._history_count = len(lines)
        logger.info(f"Compacted aggregation history to {len(lines)} entries")


def create_model_store(storage_config) -> GlobalModelStore:
    """Build the model store selected by the storage config section"""
    backend = storage_config.backend.lower()

    if backend == 'memory':
        return InMemoryModelStore(max_history=storage_config.max_history)
    if backend == 'file':
        return FileModelStore(storage_config.directory, max_history=storage_config.max_history)

    raise ValueError(f"Unknown storage backend: {storage_config.backend}")


def get_store_info(store: GlobalModelStore) -> Dict[str, Any]:
    """Describe a store for status endpoints"""
    if isinstance(store, FileModelStore):
        return {'backend': 'file', 'directory': str(store.storage_dir), 'max_history': store.max_history}
    return {'backend': 'memory', 'max_history': getattr(store, 'max_history', None)}
