"""
Package files on disk: hashing, content-addressed backups, safe archive
extraction and atomic directory replacement.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import shutil
import uuid
import zipfile
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Optional, Protocol

from plugmarket.exceptions import PackageVerificationFailedError, ValidationError
from plugmarket.marketplace.models import PackageVersion
from plugmarket.storage.storage_interface import StorageProvider

logger = logging.getLogger(__name__)

MANIFEST_NAME = "plugin.json"
_CHUNK = 1024 * 1024


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _sanitize(value: str) -> str:
    allowed = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_.")
    cleaned = "".join(ch if ch in allowed else "_" for ch in (value or "").strip())
    return cleaned.strip(".") or "default"


class PackageDownloader(Protocol):
    def fetch(self, version: PackageVersion, destination: Path, *, timeout_s: float) -> Path:
        ...


class PackageFiles:
    def __init__(self, storage: StorageProvider, packages_root: Path, temp_root: Path):
        self.storage = storage
        self.packages_root = Path(packages_root)
        self.temp_root = Path(temp_root)

    # -- layout ---------------------------------------------------------

    def install_dir(self, tenant_id: str, slug: str) -> Path:
        return self.packages_root / _sanitize(tenant_id) / _sanitize(slug)

    def temp_path(self, name: str) -> Path:
        self.temp_root.mkdir(parents=True, exist_ok=True)
        return self.temp_root / f"{uuid.uuid4().hex}-{_sanitize(name)}"

    def read_manifest(self, directory: Path) -> Dict[str, Any]:
        manifest_path = Path(directory) / MANIFEST_NAME
        if not manifest_path.exists():
            return {}
        with open(manifest_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}

    # -- download / verify ----------------------------------------------

    def verify(self, archive: Path, expected_hash: Optional[str]) -> str:
        actual = sha256_file(archive)
        if not expected_hash or not hmac.compare_digest(actual, expected_hash.lower()):
            raise PackageVerificationFailedError(
                f"Package hash mismatch for {archive.name}",
                details={"expected": expected_hash, "actual": actual},
            )
        return actual

    def fetch_verified(
        self, version: PackageVersion, downloader: PackageDownloader, *, timeout_s: float
    ) -> Path:
        destination = self.temp_path(f"{version.version}.zip")
        try:
            archive = downloader.fetch(version, destination, timeout_s=timeout_s)
            self.verify(archive, version.content_hash)
        except Exception:
            self.discard(destination)
            raise
        return archive

    # -- backups --------------------------------------------------------

    def create_backup(self, source_dir: Path, slug: str, version: Optional[str]) -> str:
        """
        Archive ``source_dir`` and store it under a content-addressed key.
        A missing directory produces an empty archive so a restore still
        yields the prior (absent) state.
        """
        archive = self.temp_path("backup.zip")
        try:
            self._zip_directory(Path(source_dir), archive)
            digest = sha256_file(archive)
            stamp = datetime.utcnow().strftime("%Y%m%dT%H%M%S%f")
            key = (
                f"backups/{_sanitize(slug)}/{_sanitize(version or 'none')}/"
                f"{stamp}-{digest[:12]}.zip"
            )
            with open(archive, "rb") as handle:
                self.storage.put(key, handle, sha256=digest)
        finally:
            self.discard(archive)
        logger.info("Backup created for %s@%s: %s", slug, version, key)
        return key

    def restore_backup(self, key: str, target_dir: Path) -> None:
        archive = self.temp_path("restore.zip")
        try:
            with open(archive, "wb") as handle:
                self.storage.get(key, handle)
            with zipfile.ZipFile(archive, "r") as zf:
                empty = not zf.namelist()
            if empty:
                self.remove(target_dir)
            else:
                self.install_archive(archive, target_dir)
        finally:
            self.discard(archive)

    def backup_exists(self, key: Optional[str]) -> bool:
        return bool(key) and self.storage.exists(key)

    # -- install / replace ----------------------------------------------

    def install_archive(self, archive: Path, target_dir: Path) -> None:
        staging = self.temp_path("staging")
        try:
            staging.mkdir(parents=True, exist_ok=True)
            self.extract_archive(archive, staging)
            self.replace_directory(staging, Path(target_dir))
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def extract_archive(self, archive: Path, destination: Path) -> None:
        """Extract a zip, rejecting absolute paths, traversal and symlinks."""
        destination_root = destination.resolve()
        try:
            with zipfile.ZipFile(archive, "r") as zf:
                for entry in zf.infolist():
                    name = entry.filename.replace("\\", "/")
                    if not name:
                        continue
                    pure = PurePosixPath(name)
                    if pure.is_absolute() or ".." in pure.parts:
                        raise ValidationError("Unsafe archive entry path", field=name)
                    mode = (entry.external_attr >> 16) & 0o170000
                    if mode == 0o120000:
                        raise ValidationError("Archive contains a symlink entry", field=name)
                    target = (destination / pure.as_posix()).resolve()
                    if destination_root not in (target, *target.parents):
                        raise ValidationError("Archive entry escapes destination", field=name)
                    if entry.is_dir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(entry, "r") as source, open(target, "wb") as handle:
                        shutil.copyfileobj(source, handle)
        except zipfile.BadZipFile as exc:
            raise PackageVerificationFailedError(f"Invalid package archive: {exc}") from exc

    def replace_directory(self, source_dir: Path, target_dir: Path) -> None:
        """Swap ``target_dir`` for a copy of ``source_dir`` using renames."""
        target_dir.parent.mkdir(parents=True, exist_ok=True)
        work_id = uuid.uuid4().hex
        incoming = target_dir.parent / f".{target_dir.name}.incoming-{work_id}"
        displaced = target_dir.parent / f".{target_dir.name}.displaced-{work_id}"

        shutil.copytree(source_dir, incoming)
        try:
            if target_dir.exists():
                os.replace(target_dir, displaced)
            try:
                os.replace(incoming, target_dir)
            except OSError:
                if displaced.exists():
                    os.replace(displaced, target_dir)
                raise
        finally:
            shutil.rmtree(incoming, ignore_errors=True)
            shutil.rmtree(displaced, ignore_errors=True)

    def remove(self, target_dir: Path) -> None:
        shutil.rmtree(target_dir, ignore_errors=True)

    def discard(self, path: Path) -> None:
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)
        elif path.exists():
            path.unlink()

    # -- helpers --------------------------------------------------------

    def _zip_directory(self, source_dir: Path, archive: Path) -> None:
        with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            if not source_dir.exists():
                return
            for path in sorted(source_dir.rglob("*")):
                if path.is_file():
                    zf.write(path, path.relative_to(source_dir).as_posix())
