"""
Archive storage for update backups.

Keys are relative POSIX paths such as ``backups/<slug>/<version>/<name>.zip``.
"""

from abc import ABC, abstractmethod
from typing import BinaryIO, Optional


class StorageProvider(ABC):
    @abstractmethod
    def put(self, key: str, source: BinaryIO, *, sha256: Optional[str] = None) -> str:
        """Store ``source`` under ``key``. A given ``sha256`` is checked again on read."""

    @abstractmethod
    def get(self, key: str, target: BinaryIO) -> None:
        """Copy the archive at ``key`` into ``target``; ``FileNotFoundError`` if absent."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass
