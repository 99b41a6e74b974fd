"""
Device key/value storage used by the entitlement engine.

The platform binding provides the real secure store (Keychain / Keystore);
the implementations here cover local runs and tests.
"""
import asyncio
import json
import os
from pathlib import Path
from typing import Dict, Optional, Protocol


class KeyValueStore(Protocol):
    """Async string store. Implementations may raise on I/O failure."""

    async def get_item(self, key: str) -> Optional[str]: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def delete_item(self, key: str) -> None: ...


class MemoryKeyValueStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete_item(self, key: str) -> None:
        self.data.pop(key, None)


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = Path(str(path) + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(str(tmp), str(path))


class JsonFileKeyValueStore:
    """
    Whole-file JSON store. Every write replaces the file atomically, so a
    reader never sees a half-written value.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else {}

    async def get_item(self, key: str) -> Optional[str]:
        data = await asyncio.to_thread(self._load)
        return data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            data[key] = value
            await asyncio.to_thread(_atomic_write_text, self.path, json.dumps(data, ensure_ascii=False))

    async def delete_item(self, key: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            if data.pop(key, None) is not None:
                await asyncio.to_thread(_atomic_write_text, self.path, json.dumps(data, ensure_ascii=False))
