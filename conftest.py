from __future__ import annotations

import os
import tempfile

import pytest

# Keep tests off any developer database or data directory.
_DATA_ROOT = tempfile.mkdtemp(prefix="plugmarket-tests-")
os.environ.setdefault("PLUGMARKET_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("PLUGMARKET_MARKETPLACE_BASE_URL", "https://marketplace.test/api/v1")
os.environ.setdefault("PLUGMARKET_INSTANCE_ID", "instance-test")
os.environ.setdefault("PLUGMARKET_PACKAGES_PATH", os.path.join(_DATA_ROOT, "packages"))
os.environ.setdefault("PLUGMARKET_BACKUP_STORAGE_PATH", os.path.join(_DATA_ROOT, "backups"))
os.environ.setdefault("PLUGMARKET_TEMP_PATH", os.path.join(_DATA_ROOT, "tmp"))


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "e2e: end-to-end scenarios that drive install, update and rollback together",
    )
