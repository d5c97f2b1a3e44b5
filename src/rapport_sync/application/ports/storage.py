from __future__ import annotations

from typing import Protocol

from rapport_sync.application.ports.directory import DirectoryResult


class ObjectStorage(Protocol):
    async def upload(self, path: str, data: bytes, content_type: str) -> DirectoryResult:
        """``data`` is the durable public URL of the stored object."""
        ...
