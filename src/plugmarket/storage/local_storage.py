"""
Filesystem archive storage rooted at ``BACKUP_STORAGE_PATH``.
"""

import hashlib
import os
import shutil
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Optional

from plugmarket.storage.storage_interface import StorageProvider

_DIGEST_SUFFIX = ".sha256"
_CHUNK = 1024 * 1024


class LocalStorageProvider(StorageProvider):
    def __init__(self, base_path: str):
        self.root = Path(base_path)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, key: str) -> Path:
        relative = PurePosixPath(str(key).lstrip("/"))
        if not relative.parts or ".." in relative.parts:
            raise ValueError(f"Invalid storage key: {key}")
        return self.root.joinpath(*relative.parts)

    def put(self, key: str, source: BinaryIO, *, sha256: Optional[str] = None) -> str:
        path = self._resolve(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        partial = path.with_name(path.name + ".part")
        with open(partial, "wb") as handle:
            shutil.copyfileobj(source, handle)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(partial, path)
        if sha256:
            _sidecar(path).write_text(sha256.lower())
        return key

    def get(self, key: str, target: BinaryIO) -> None:
        path = self._resolve(key)
        if not path.is_file():
            raise FileNotFoundError(f"No stored archive at {key}")
        digest = hashlib.sha256()
        with open(path, "rb") as handle:
            for chunk in iter(lambda: handle.read(_CHUNK), b""):
                digest.update(chunk)
                target.write(chunk)
        sidecar = _sidecar(path)
        if sidecar.exists() and digest.hexdigest() != sidecar.read_text().strip():
            raise OSError(f"Stored archive {key} does not match its recorded digest")

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    def delete(self, key: str) -> None:
        path = self._resolve(key)
        for candidate in (path, _sidecar(path)):
            if candidate.exists():
                candidate.unlink()


def _sidecar(path: Path) -> Path:
    return path.with_name(path.name + _DIGEST_SUFFIX)
