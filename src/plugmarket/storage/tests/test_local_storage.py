from __future__ import annotations

import hashlib
import io

import pytest

from plugmarket.storage.local_storage import LocalStorageProvider


@pytest.fixture()
def store(tmp_path):
    return LocalStorageProvider(str(tmp_path / "store"))


def test_put_and_get_with_digest(store, tmp_path):
    payload = b"archive bytes"
    digest = hashlib.sha256(payload).hexdigest()

    key = store.put("backups/kit/1.0.0/a.zip", io.BytesIO(payload), sha256=digest)
    assert key == "backups/kit/1.0.0/a.zip"
    assert store.exists(key)
    assert not (tmp_path / "store" / "backups" / "kit" / "1.0.0" / "a.zip.part").exists()

    out = io.BytesIO()
    store.get(key, out)
    assert out.getvalue() == payload


def test_get_detects_tampered_archive(store, tmp_path):
    payload = b"original"
    key = store.put("b/x.zip", io.BytesIO(payload), sha256=hashlib.sha256(payload).hexdigest())
    (tmp_path / "store" / "b" / "x.zip").write_bytes(b"tampered")

    with pytest.raises(OSError):
        store.get(key, io.BytesIO())


def test_missing_key_and_traversal(store):
    with pytest.raises(FileNotFoundError):
        store.get("nope.zip", io.BytesIO())
    with pytest.raises(ValueError):
        store.put("../escape.zip", io.BytesIO(b"x"))
    with pytest.raises(ValueError):
        store.exists("")


def test_delete_removes_archive_and_digest(store, tmp_path):
    key = store.put("b/y.zip", io.BytesIO(b"y"), sha256=hashlib.sha256(b"y").hexdigest())
    store.delete(key)

    assert not store.exists(key)
    assert not (tmp_path / "store" / "b" / "y.zip.sha256").exists()
    store.delete(key)
