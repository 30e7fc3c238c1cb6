from __future__ import annotations

import asyncio
from pathlib import Path, PurePosixPath
from typing import Protocol


class ObjectStore(Protocol):
    async def put(self, path: str, data: bytes, content_type: str | None) -> str: ...

    async def remove(self, path: str) -> None: ...


class LocalObjectStore:
    """
    Verification documents on the local filesystem. Keys are the relative
    `owner/listing-or-account/kind_ms.ext` paths stored on the document row;
    file I/O runs in a worker thread so handlers never block the loop.
    """

    def __init__(self, base_dir: str):
        self.base = Path(base_dir)
        self.base.mkdir(parents=True, exist_ok=True)

    async def put(self, path: str, data: bytes, content_type: str | None = None) -> str:
        # content type only matters to remote stores
        target = self.resolve_path(path)
        await asyncio.to_thread(self._write, target, data)
        return path

    async def remove(self, path: str) -> None:
        await asyncio.to_thread(self.resolve_path(path).unlink)

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)

    def resolve_path(self, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not parts or key.startswith("/") or ".." in parts or "://" in key:
            raise ValueError(f"Storage key must be a relative path: {key!r}")
        return self.base.joinpath(*parts)
