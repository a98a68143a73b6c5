from __future__ import annotations

import hashlib
import json
import shutil
import zipfile
from pathlib import Path
from typing import Dict, Optional
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from plugmarket.marketplace import models as _models  # noqa: F401
from plugmarket.marketplace.locks import InstallationLocks
from plugmarket.marketplace.services import build_services
from plugmarket.models.base import Base
from plugmarket.storage.local_storage import LocalStorageProvider


class FakeDownloader:
    """Serves archives registered by package URL."""

    def __init__(self) -> None:
        self.archives: Dict[str, Path] = {}
        self.calls = []

    def register(self, url: str, archive: Path) -> None:
        self.archives[url] = archive

    def fetch(self, version, destination: Path, *, timeout_s: float) -> Path:
        self.calls.append((version.version, timeout_s))
        shutil.copyfile(self.archives[version.package_url], destination)
        return destination


def build_archive(
    target: Path,
    slug: str,
    version: str,
    *,
    hooks_source: Optional[str] = None,
    migrations: Optional[Dict[str, str]] = None,
    extra_files: Optional[Dict[str, str]] = None,
) -> str:
    """Write a package zip and return its sha256."""
    target.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(target, "w") as zf:
        zf.writestr(
            "plugin.json",
            json.dumps({"slug": slug, "version": version, "entry_point": "main.py"}),
        )
        zf.writestr("VERSION", version)
        if hooks_source is not None:
            zf.writestr("main.py", hooks_source)
        for name, sql in (migrations or {}).items():
            zf.writestr(f"migrations/{name}", sql)
        for name, content in (extra_files or {}).items():
            zf.writestr(name, content)
    return hashlib.sha256(target.read_bytes()).hexdigest()


@pytest.fixture()
def session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def downloader():
    return FakeDownloader()


@pytest.fixture()
def remote():
    client = MagicMock()
    client.activate_license.return_value = {"success": True, "activation_id": "act-1"}
    client.verify_license.return_value = {"valid": True}
    client.deactivate_license.return_value = {"success": True}
    client.check_updates.return_value = []
    return client


@pytest.fixture()
def services(session, tmp_path, downloader, remote):
    return build_services(
        session,
        client=remote,
        storage=LocalStorageProvider(str(tmp_path / "backups")),
        downloader=downloader,
        locks=InstallationLocks(),
        packages_path=str(tmp_path / "packages"),
        temp_path=str(tmp_path / "tmp"),
        runtime_version="3.11.4",
        platform_version="2.0.0",
    )


@pytest.fixture()
def publish(services, downloader, tmp_path):
    """Build an archive for ``slug@version``, register it and publish it."""

    def _publish(listing, version, *, content_hash=None, **kwargs):
        archive_kwargs = {
            key: kwargs.pop(key)
            for key in ("hooks_source", "migrations", "extra_files")
            if key in kwargs
        }
        archive = tmp_path / "archives" / f"{listing.slug}-{version}.zip"
        digest = build_archive(archive, listing.slug, version, **archive_kwargs)
        url = f"https://cdn.test/{listing.slug}/{version}.zip"
        downloader.register(url, archive)
        metadata = {"content_hash": content_hash or digest, "package_url": url}
        metadata.update(kwargs)
        return services.catalog.publish(listing, version, metadata)

    return _publish


_RECORDING_HOOKS = '''
from pathlib import Path

from plugmarket.marketplace.hooks import Installable

EVENTS = Path(%(events)r)
FAIL_ON = %(fail_on)r


class RecordingHooks(Installable):
    def _record(self, event):
        with EVENTS.open("a") as handle:
            handle.write(event + "\\n")
        if event.split(":")[0] in FAIL_ON:
            raise RuntimeError(event + " exploded")

    def install(self):
        self._record("install")

    def activate(self):
        self._record("activate")

    def deactivate(self):
        self._record("deactivate")

    def update(self, from_version, to_version):
        self._record("update:%%s>%%s" %% (from_version, to_version))

    def uninstall(self):
        self._record("uninstall")
'''


@pytest.fixture()
def events(tmp_path):
    return tmp_path / "events.log"


@pytest.fixture()
def recording_hooks(events):
    """Source of an entry point that appends each hook call to ``events``."""

    def _source(fail_on=()):
        return _RECORDING_HOOKS % {"events": str(events), "fail_on": tuple(fail_on)}

    return _source


@pytest.fixture()
def hook_events(events):
    def _read():
        if not events.exists():
            return []
        return events.read_text().splitlines()

    return _read


@pytest.fixture()
def make_archive():
    return build_archive
