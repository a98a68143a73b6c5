"""
Wiring of the marketplace components around one database session.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from sqlalchemy.orm import Session

from plugmarket.config import Settings, get_settings
from plugmarket.integrations.marketplace_client import MarketplaceClient, MarketplaceDownloader
from plugmarket.marketplace.catalog import VersionCatalog
from plugmarket.marketplace.compatibility import CompatibilityChecker
from plugmarket.marketplace.history import UpdateHistoryLog
from plugmarket.marketplace.hooks import HookRunner
from plugmarket.marketplace.license_gate import LicenseGate
from plugmarket.marketplace.lifecycle import InstallationLifecycle
from plugmarket.marketplace.locks import InstallationLocks, default_locks
from plugmarket.marketplace.migrations import MigrationRunner, SqlMigrationRunner
from plugmarket.marketplace.orchestrator import UpdateOrchestrator
from plugmarket.marketplace.package_files import PackageDownloader, PackageFiles
from plugmarket.storage.local_storage import LocalStorageProvider
from plugmarket.storage.storage_interface import StorageProvider


@dataclass
class MarketplaceServices:
    session: Session
    catalog: VersionCatalog
    checker: CompatibilityChecker
    license_gate: LicenseGate
    lifecycle: InstallationLifecycle
    history: UpdateHistoryLog
    orchestrator: UpdateOrchestrator
    package_files: PackageFiles


def build_services(
    session: Session,
    *,
    settings: Optional[Settings] = None,
    client: Optional[MarketplaceClient] = None,
    storage: Optional[StorageProvider] = None,
    downloader: Optional[PackageDownloader] = None,
    migrations: Optional[MigrationRunner] = None,
    locks: Optional[InstallationLocks] = None,
    packages_path: Optional[str] = None,
    temp_path: Optional[str] = None,
    runtime_version: Optional[str] = None,
    platform_version: Optional[str] = None,
) -> MarketplaceServices:
    settings = settings or get_settings()
    locks = locks or default_locks()
    client = client or MarketplaceClient()
    storage = storage or LocalStorageProvider(settings.BACKUP_STORAGE_PATH)
    downloader = downloader or MarketplaceDownloader(client)
    runtime_version = runtime_version or settings.effective_runtime_version
    platform_version = platform_version or settings.PLATFORM_VERSION

    package_files = PackageFiles(
        storage,
        Path(packages_path or settings.PACKAGES_PATH),
        Path(temp_path or settings.TEMP_PATH),
    )
    hooks = HookRunner(package_files)
    catalog = VersionCatalog(session, locks)
    checker = CompatibilityChecker(session)
    license_gate = LicenseGate(session, client)
    lifecycle = InstallationLifecycle(
        session,
        catalog,
        checker,
        package_files,
        hooks,
        downloader,
        license_gate=license_gate,
        locks=locks,
        runtime_version=runtime_version,
        platform_version=platform_version,
        download_timeout_s=settings.DOWNLOAD_TIMEOUT_SECONDS,
    )
    history = UpdateHistoryLog(session)
    orchestrator = UpdateOrchestrator(
        session,
        catalog,
        checker,
        license_gate,
        lifecycle,
        history,
        package_files,
        hooks,
        downloader,
        migrations or SqlMigrationRunner(session),
        client=client,
        locks=locks,
        runtime_version=runtime_version,
        platform_version=platform_version,
        timeout_s=settings.UPDATE_TIMEOUT_SECONDS,
        download_timeout_s=settings.DOWNLOAD_TIMEOUT_SECONDS,
    )
    return MarketplaceServices(
        session=session,
        catalog=catalog,
        checker=checker,
        license_gate=license_gate,
        lifecycle=lifecycle,
        history=history,
        orchestrator=orchestrator,
        package_files=package_files,
    )
