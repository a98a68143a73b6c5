from __future__ import annotations

import hashlib
import zipfile
from pathlib import Path

import pytest

from plugmarket.exceptions import PackageVerificationFailedError, ValidationError
from plugmarket.marketplace.models import PackageVersion
from plugmarket.marketplace.package_files import PackageFiles, sha256_file
from plugmarket.storage.local_storage import LocalStorageProvider


@pytest.fixture()
def files(tmp_path):
    return PackageFiles(
        LocalStorageProvider(str(tmp_path / "store")), tmp_path / "packages", tmp_path / "tmp"
    )


def _zip(path: Path, entries) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        for name, content in entries.items():
            zf.writestr(name, content)
    return path


def test_verify_accepts_matching_digest(files, tmp_path):
    archive = _zip(tmp_path / "a.zip", {"VERSION": "1.0.0"})
    digest = hashlib.sha256(archive.read_bytes()).hexdigest()

    assert files.verify(archive, digest.upper()) == digest
    assert sha256_file(archive) == digest
    with pytest.raises(PackageVerificationFailedError):
        files.verify(archive, "0" * 64)
    with pytest.raises(PackageVerificationFailedError):
        files.verify(archive, None)


def test_fetch_verified_discards_bad_download(files, tmp_path):
    archive = _zip(tmp_path / "a.zip", {"VERSION": "1.0.0"})

    class Downloader:
        def fetch(self, version, destination, *, timeout_s):
            destination.write_bytes(archive.read_bytes())
            return destination

    version = PackageVersion(version="1.0.0", content_hash="0" * 64)
    with pytest.raises(PackageVerificationFailedError):
        files.fetch_verified(version, Downloader(), timeout_s=5)
    assert list((tmp_path / "tmp").iterdir()) == []


@pytest.mark.parametrize(
    "build",
    [
        lambda zf: zf.writestr("../escape.txt", "x"),
        lambda zf: zf.writestr("nested/../../escape.txt", "x"),
    ],
)
def test_extract_rejects_traversal(files, tmp_path, build):
    archive = tmp_path / "evil.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        build(zf)

    with pytest.raises(ValidationError):
        files.extract_archive(archive, tmp_path / "out")
    assert not (tmp_path / "escape.txt").exists()


def test_extract_rejects_symlinks(files, tmp_path):
    archive = tmp_path / "link.zip"
    info = zipfile.ZipInfo("link")
    info.external_attr = 0o120777 << 16
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr(info, "/etc/passwd")

    with pytest.raises(ValidationError):
        files.extract_archive(archive, tmp_path / "out")


def test_install_archive_replaces_directory(files, tmp_path):
    target = files.install_dir("t1", "report-kit")
    files.install_archive(_zip(tmp_path / "v1.zip", {"VERSION": "1", "old.txt": "o"}), target)
    files.install_archive(_zip(tmp_path / "v2.zip", {"VERSION": "2", "sub/new.txt": "n"}), target)

    assert (target / "VERSION").read_text() == "2"
    assert (target / "sub" / "new.txt").exists()
    assert not (target / "old.txt").exists()
    assert sorted(p.name for p in target.parent.iterdir()) == ["report-kit"]


def test_broken_archive_leaves_target_untouched(files, tmp_path):
    target = files.install_dir("t1", "report-kit")
    files.install_archive(_zip(tmp_path / "v1.zip", {"VERSION": "1"}), target)
    broken = tmp_path / "broken.zip"
    broken.write_bytes(b"definitely not a zip")

    with pytest.raises(PackageVerificationFailedError):
        files.install_archive(broken, target)
    assert (target / "VERSION").read_text() == "1"


def test_backup_and_restore(files, tmp_path):
    target = files.install_dir("t1", "report-kit")
    files.install_archive(_zip(tmp_path / "v1.zip", {"VERSION": "1", "a/b.txt": "b"}), target)

    key = files.create_backup(target, "report-kit", "1.0.0")
    assert key.startswith("backups/report-kit/1.0.0/")
    assert files.backup_exists(key)

    files.install_archive(_zip(tmp_path / "v2.zip", {"VERSION": "2"}), target)
    files.restore_backup(key, target)

    assert (target / "VERSION").read_text() == "1"
    assert (target / "a" / "b.txt").read_text() == "b"


def test_backup_of_missing_directory_restores_absence(files, tmp_path):
    target = files.install_dir("t1", "report-kit")
    key = files.create_backup(target, "report-kit", None)
    assert "/none/" in key

    files.install_archive(_zip(tmp_path / "v1.zip", {"VERSION": "1"}), target)
    files.restore_backup(key, target)

    assert not target.exists()
    assert not files.backup_exists(None)


def test_read_manifest(files, tmp_path):
    target = tmp_path / "pkg"
    target.mkdir()
    assert files.read_manifest(target) == {}
    (target / "plugin.json").write_text('{"slug": "report-kit", "entry_point": "hooks.py"}')
    assert files.read_manifest(target)["entry_point"] == "hooks.py"
