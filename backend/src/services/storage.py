from __future__ import annotations

import asyncio
import copy
import json
import os
import tempfile
import urllib.parse
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Type, TypeVar

from loguru import logger
from pydantic import TypeAdapter


T = TypeVar("T")

_ADAPTERS: Dict[Any, TypeAdapter] = {}


def _adapter(model_type: Any) -> TypeAdapter:
    adapter = _ADAPTERS.get(model_type)
    if adapter is None:
        adapter = TypeAdapter(model_type)
        _ADAPTERS[model_type] = adapter
    return adapter


def dump(model_type: Type[T] | Any, value: Any) -> Any:
    """Convert a dataclass (or list of them) into JSON-compatible data."""
    return _adapter(model_type).dump_python(value, mode="json")


def load(model_type: Type[T] | Any, data: Any) -> Any:
    return _adapter(model_type).validate_python(data)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class InMemoryStore:
    """Process-local store; values are copied in and out."""

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            value = self._data.get(key)
            return copy.deepcopy(value)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class JsonFileStore:
    """One JSON file per key; a write is complete once ``set`` returns."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, key: str) -> Path:
        return self.root / f"{urllib.parse.quote(key, safe='')}.json"

    def _read(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as fh:
                return json.load(fh)
        except json.JSONDecodeError as exc:
            logger.warning("corrupt store entry {}: {}", path.name, exc)
            return None

    def _write(self, key: str, value: Any) -> None:
        path = self._path(key)
        fd, tmp = tempfile.mkstemp(dir=self.root, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(value, fh, ensure_ascii=False)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def _remove(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, key, value)

    async def delete(self, key: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._remove, key)


def build_store(cache_dir: Optional[str]) -> KeyValueStore:
    if cache_dir:
        logger.info("using file store at {}", cache_dir)
        return JsonFileStore(cache_dir)
    return InMemoryStore()
