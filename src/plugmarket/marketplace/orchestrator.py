"""
Update orchestrator.

Runs the ordered update pipeline for one installation and compensates with a
rollback from backup when anything fails after the backup is recorded:

    resolve -> requirements -> license -> backup (committed)
      -> download + verify -> deactivate -> swap -> migrate
      -> update hook -> bump version -> reactivate -> record
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from plugmarket.config import get_settings
from plugmarket.exceptions import (
    InvalidStateError,
    MarketplaceError,
    NoUpdateAvailableError,
    NoVersionAvailableError,
    RequirementsNotMetError,
    ValidationError,
)
from plugmarket.integrations.marketplace_client import MarketplaceClient
from plugmarket.marketplace.catalog import VersionCatalog
from plugmarket.marketplace.compatibility import CompatibilityChecker
from plugmarket.marketplace.history import UpdateHistoryLog
from plugmarket.marketplace.hooks import HookRunner
from plugmarket.marketplace.license_gate import LicenseGate
from plugmarket.marketplace.lifecycle import InstallationLifecycle
from plugmarket.marketplace.locks import (
    CancellationToken,
    Deadline,
    InstallationLocks,
    checkpoint,
    default_locks,
)
from plugmarket.marketplace.migrations import MIGRATIONS_DIR, MigrationRunner
from plugmarket.marketplace.models import (
    Installation,
    InstallationStatus,
    PackageListing,
    PackageVersion,
    PendingUpdate,
    PendingUpdateStatus,
    UpdateHistoryEntry,
    UpdateStatus,
)
from plugmarket.marketplace.package_files import PackageDownloader, PackageFiles
from plugmarket.marketplace.results import ErrorCode, UpdateResult, error_code_for
from plugmarket.marketplace.versioning import compare_versions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Snapshot:
    version_id: Optional[str]
    installed_version: Optional[str]
    status: str
    install_path: Optional[str]


class UpdateOrchestrator:
    def __init__(
        self,
        session: Session,
        catalog: VersionCatalog,
        checker: CompatibilityChecker,
        license_gate: LicenseGate,
        lifecycle: InstallationLifecycle,
        history: UpdateHistoryLog,
        package_files: PackageFiles,
        hooks: HookRunner,
        downloader: PackageDownloader,
        migrations: MigrationRunner,
        *,
        client: Optional[MarketplaceClient] = None,
        locks: Optional[InstallationLocks] = None,
        runtime_version: Optional[str] = None,
        platform_version: Optional[str] = None,
        timeout_s: Optional[float] = None,
        download_timeout_s: Optional[float] = None,
    ):
        settings = get_settings()
        self.session = session
        self.catalog = catalog
        self.checker = checker
        self.license_gate = license_gate
        self.lifecycle = lifecycle
        self.history = history
        self.package_files = package_files
        self.hooks = hooks
        self.downloader = downloader
        self.migrations = migrations
        self.client = client
        self.locks = locks or default_locks()
        self.runtime_version = runtime_version or settings.effective_runtime_version
        self.platform_version = platform_version or settings.PLATFORM_VERSION
        self.timeout_s = settings.UPDATE_TIMEOUT_SECONDS if timeout_s is None else timeout_s
        self.download_timeout_s = download_timeout_s or settings.DOWNLOAD_TIMEOUT_SECONDS

    # -- single installation -------------------------------------------

    def update(
        self,
        installation: Installation,
        target_version: Optional[str] = None,
        *,
        cancel: Optional[CancellationToken] = None,
        timeout_s: Optional[float] = None,
    ) -> UpdateResult:
        return self._run(
            installation,
            target_version,
            cancel=cancel,
            timeout_s=timeout_s,
            allow_downgrade=False,
            reason="update",
        )

    def rollback_to(
        self,
        installation: Installation,
        version: str,
        *,
        cancel: Optional[CancellationToken] = None,
        timeout_s: Optional[float] = None,
    ) -> UpdateResult:
        """Explicitly move an installation to an older version through the pipeline."""
        return self._run(
            installation,
            version,
            cancel=cancel,
            timeout_s=timeout_s,
            allow_downgrade=True,
            reason=f"rollback to {version}",
        )

    def _run(
        self,
        installation: Installation,
        target_version: Optional[str],
        *,
        cancel: Optional[CancellationToken],
        timeout_s: Optional[float],
        allow_downgrade: bool,
        reason: str,
    ) -> UpdateResult:
        with self.locks.hold(installation.id):
            from_version = installation.installed_version
            deadline = Deadline(self.timeout_s if timeout_s is None else timeout_s)
            target: Optional[PackageVersion] = None
            try:
                target = self._resolve_target(installation, target_version, allow_downgrade)
                self._check_requirements(installation, target)
                self.license_gate.require_update_entitlement(installation)
                checkpoint("backup", cancel, deadline)
            except MarketplaceError as exc:
                if exc.code != ErrorCode.NO_UPDATE_AVAILABLE.value:
                    logger.warning("Update of %s not started: %s", installation.slug, exc.message)
                return UpdateResult(
                    success=False,
                    message=exc.message,
                    error_code=exc.code,
                    from_version=from_version,
                    to_version=target.version if target is not None else target_version,
                    issues=list(exc.details.get("issues", [])),
                )
            return self._apply(installation, target, cancel=cancel, deadline=deadline, reason=reason)

    def _resolve_target(
        self,
        installation: Installation,
        target_version: Optional[str],
        allow_downgrade: bool,
    ) -> PackageVersion:
        if installation.status in (
            InstallationStatus.UNINSTALLED.value,
            InstallationStatus.SUSPENDED.value,
        ):
            raise InvalidStateError(
                f"Cannot update {installation.slug} while {installation.status}",
                state=installation.status,
            )

        listing = installation.listing
        if target_version:
            target = self.catalog.resolve(listing, target_version)
            if target is None or target.is_yanked:
                raise NoVersionAvailableError(
                    f"Version {target_version} of {listing.slug} is not available"
                )
        else:
            target = self.catalog.latest(listing, installation.update_channel)
            if target is None:
                raise NoUpdateAvailableError(f"{listing.slug} is up to date")

        current = installation.installed_version
        if current:
            cmp = compare_versions(target.version, current)
            if cmp == 0 or (cmp < 0 and not allow_downgrade):
                raise NoUpdateAvailableError(
                    f"{listing.slug} {current} is up to date",
                    details={"installed": current, "candidate": target.version},
                )
        return target

    def _check_requirements(self, installation: Installation, target: PackageVersion) -> None:
        report = self.checker.check(
            target,
            self.runtime_version,
            self.platform_version,
            tenant_id=installation.tenant_id,
        )
        if not report.compatible:
            raise RequirementsNotMetError(
                f"{installation.slug} {target.version} requirements not met: "
                f"{', '.join(report.issues)}",
                issues=report.issues,
            )

    def _apply(
        self,
        installation: Installation,
        target: PackageVersion,
        *,
        cancel: Optional[CancellationToken],
        deadline: Deadline,
        reason: str,
    ) -> UpdateResult:
        slug = installation.slug
        install_dir = self._install_dir(installation)
        snapshot = _Snapshot(
            version_id=installation.version_id,
            installed_version=installation.installed_version,
            status=installation.status,
            install_path=installation.install_path,
        )
        entry = self.history.start(installation, target.version, reason=reason)

        try:
            backup_key = self.package_files.create_backup(
                install_dir, slug, snapshot.installed_version
            )
            self.history.attach_backup(entry, backup_key)
            self.session.commit()
        except Exception as exc:
            logger.exception("Backup of %s failed; update aborted", slug)
            self.history.mark_failed(entry, f"Backup failed: {exc}")
            self.session.commit()
            return self._result(entry, exc, snapshot, target, rolled_back=False)

        was_active = snapshot.status == InstallationStatus.ACTIVE.value
        deactivated = False
        archive: Optional[Path] = None
        try:
            checkpoint("download", cancel, deadline)
            archive = self.package_files.fetch_verified(
                target,
                self.downloader,
                timeout_s=deadline.remaining(self.download_timeout_s),
            )

            checkpoint("deactivate", cancel, deadline)
            if was_active:
                deactivated = self.lifecycle.do_deactivate(installation, check_dependents=False)

            checkpoint("swap", cancel, deadline)
            self.package_files.install_archive(archive, install_dir)

            checkpoint("migrate", cancel, deadline)
            self.migrations.run(
                install_dir / MIGRATIONS_DIR, slug=slug, tenant_id=installation.tenant_id
            )

            checkpoint("update hook", cancel, deadline)
            self.hooks.update(install_dir, slug, snapshot.installed_version, target.version)

            installation.version_id = target.id
            installation.version = target
            installation.installed_version = target.version
            installation.install_path = str(install_dir)
            self.session.add(installation)
            self.session.flush()

            if was_active:
                self.lifecycle.do_activate(installation, check_license=False)
        except Exception as exc:
            return self._rollback(
                installation, entry, snapshot, target, install_dir, exc, reactivate=deactivated
            )
        finally:
            if archive is not None:
                self.package_files.discard(archive)

        self.history.mark_success(entry)
        self._mark_pending_installed(installation, target)
        self.session.commit()
        logger.info(
            "Updated %s (tenant %s) %s -> %s",
            slug,
            installation.tenant_id,
            snapshot.installed_version,
            target.version,
        )
        return UpdateResult(
            success=True,
            message=f"Updated {slug} to {target.version}",
            from_version=snapshot.installed_version,
            to_version=target.version,
            history_id=entry.id,
        )

    def _rollback(
        self,
        installation: Installation,
        entry: UpdateHistoryEntry,
        snapshot: _Snapshot,
        target: PackageVersion,
        install_dir: Path,
        error: BaseException,
        *,
        reactivate: bool,
    ) -> UpdateResult:
        if isinstance(error, MarketplaceError):
            logger.error("Update of %s to %s failed: %s", installation.slug, target.version, error.message)
        else:
            logger.exception("Update of %s to %s failed", installation.slug, target.version)

        try:
            # Drops uncommitted changes, including partial migrations; the
            # last commit holds the pre-update state and the backup path.
            self.session.rollback()
            self.package_files.restore_backup(entry.backup_path, install_dir)
            installation.version_id = snapshot.version_id
            installation.installed_version = snapshot.installed_version
            installation.install_path = snapshot.install_path
            installation.status = snapshot.status
            self.session.add(installation)
            self.session.flush()
            if reactivate:
                self._reactivate_restored(installation, install_dir)
            self.history.mark_rolled_back(entry, _describe(error))
            self.session.commit()
        except Exception as rollback_exc:
            logger.exception("Rollback of %s failed", installation.slug)
            self.session.rollback()
            if not entry.is_terminal:
                self.history.mark_failed(
                    entry, f"{_describe(error)}; rollback failed: {rollback_exc}"
                )
                self.session.commit()
            return UpdateResult(
                success=False,
                message=f"Update failed and rollback failed: {rollback_exc}",
                error_code=ErrorCode.ROLLBACK_FAILED.value,
                from_version=snapshot.installed_version,
                to_version=target.version,
                rolled_back=False,
                history_id=entry.id,
            )

        return self._result(entry, error, snapshot, target, rolled_back=True)

    def _reactivate_restored(self, installation: Installation, install_dir: Path) -> None:
        try:
            self.hooks.activate(install_dir, installation.slug)
        except MarketplaceError as exc:
            logger.warning(
                "Activate hook failed after restoring %s: %s", installation.slug, exc.message
            )

    def _result(
        self,
        entry: UpdateHistoryEntry,
        error: BaseException,
        snapshot: _Snapshot,
        target: PackageVersion,
        *,
        rolled_back: bool,
    ) -> UpdateResult:
        prefix = "Update failed and was rolled back" if rolled_back else "Update failed"
        return UpdateResult(
            success=False,
            message=f"{prefix}: {_describe(error)}",
            error_code=error_code_for(error),
            from_version=snapshot.installed_version,
            to_version=target.version,
            rolled_back=rolled_back,
            history_id=entry.id,
        )

    # -- bulk -----------------------------------------------------------

    def update_all(
        self, tenant_id: str, *, cancel: Optional[CancellationToken] = None
    ) -> Dict[str, Dict[str, Any]]:
        results: Dict[str, Dict[str, Any]] = {}
        for installation in self._candidates(tenant_id):
            if not installation.auto_update or not self.catalog.has_update(installation):
                continue
            results[installation.slug] = self.update(installation, cancel=cancel).to_dict()
        return results

    def update_security(
        self, tenant_id: Optional[str] = None, *, cancel: Optional[CancellationToken] = None
    ) -> Dict[str, Dict[str, Any]]:
        results: Dict[str, Dict[str, Any]] = {}
        for installation in self._candidates(tenant_id):
            target = self.catalog.available_update(installation)
            if target is None or not target.is_security_update:
                continue
            key = installation.slug if tenant_id is not None else f"{installation.tenant_id}/{installation.slug}"
            results[key] = self.update(installation, target.version, cancel=cancel).to_dict()
        return results

    # -- pending updates ------------------------------------------------

    def check_updates(self, tenant_id: str) -> Dict[str, Dict[str, Any]]:
        """Refresh pending-update indicators from the local catalog."""
        found: Dict[str, Dict[str, Any]] = {}
        for installation in self._candidates(tenant_id):
            target = self.catalog.available_update(installation)
            pending = self._pending_for(installation)
            if target is None:
                if pending is not None and pending.status == PendingUpdateStatus.PENDING.value:
                    self.session.delete(pending)
                continue
            pending = self._record_pending(installation, target, pending)
            found[installation.slug] = {
                "current_version": pending.current_version,
                "latest_version": pending.latest_version,
                "is_security_update": pending.is_security_update,
                "is_breaking_change": pending.is_breaking_change,
                "requires_license": pending.requires_license,
            }
        self.session.flush()
        return found

    def sync_remote_updates(self, tenant_id: str) -> Dict[str, Any]:
        """
        Ask the remote authority for updates, mirror versions the catalog
        does not know yet, then refresh the pending indicators.
        """
        if self.client is None:
            return {"success": False, "error_code": ErrorCode.REMOTE_UNREACHABLE.value,
                    "message": "No marketplace client configured"}

        installations = [i for i in self._candidates(tenant_id) if i.listing.marketplace_id]
        if not installations:
            return {"success": True, "mirrored": [], "pending": {}}

        payload = [
            {
                "marketplace_id": i.listing.marketplace_id,
                "slug": i.slug,
                "version": i.installed_version,
            }
            for i in installations
        ]
        try:
            updates = self.client.check_updates(payload, tenant_id=tenant_id)
        except MarketplaceError as exc:
            logger.error("Failed to check for updates: %s", exc.message)
            return {"success": False, "error_code": exc.code, "message": exc.message}

        mirrored: List[str] = []
        for update in updates:
            version = self._mirror(update)
            if version is not None:
                mirrored.append(f"{version.listing.slug}@{version.version}")
        return {"success": True, "mirrored": mirrored, "pending": self.check_updates(tenant_id)}

    def _mirror(self, update: Dict[str, Any]) -> Optional[PackageVersion]:
        listing: Optional[PackageListing] = None
        if update.get("marketplace_id"):
            listing = self.catalog.get_listing_by_marketplace_id(str(update["marketplace_id"]))
        if listing is None and update.get("slug"):
            listing = self.catalog.get_listing(str(update["slug"]))
        latest = update.get("latest_version")
        if listing is None or not latest or self.catalog.resolve(listing, latest) is not None:
            return None
        try:
            return self.catalog.publish(
                listing,
                latest,
                {
                    "content_hash": update.get("package_hash"),
                    "package_url": update.get("download_url"),
                    "size_bytes": update.get("package_size") or 0,
                    "changelog": update.get("changelog"),
                    "min_runtime_version": update.get("requires_runtime"),
                    "min_platform_version": update.get("requires_platform"),
                    "is_security_update": update.get("is_security_update", False),
                    "is_breaking_change": update.get("is_breaking_change", False),
                    "dependencies": update.get("dependencies") or {},
                },
            )
        except (ValidationError, InvalidStateError) as exc:
            logger.warning("Skipping remote update %s@%s: %s", listing.slug, latest, exc.message)
            return None

    def pending_updates(self, tenant_id: Optional[str] = None) -> List[PendingUpdate]:
        query = (
            self.session.query(PendingUpdate)
            .join(Installation, PendingUpdate.installation_id == Installation.id)
            .filter(PendingUpdate.status == PendingUpdateStatus.PENDING.value)
        )
        if tenant_id is not None:
            query = query.filter(Installation.tenant_id == tenant_id)
        return query.order_by(PendingUpdate.checked_at.desc()).all()

    def update_summary(self, tenant_id: Optional[str] = None) -> Dict[str, int]:
        pending = self.pending_updates(tenant_id)
        today = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        finished = (
            self.session.query(UpdateHistoryEntry)
            .filter(UpdateHistoryEntry.completed_at >= today)
            .all()
        )
        return {
            "pending": len(pending),
            "security": sum(1 for p in pending if p.is_security_update),
            "breaking": sum(1 for p in pending if p.is_breaking_change),
            "installed_today": sum(1 for e in finished if e.status == UpdateStatus.SUCCESS.value),
            "rolled_back_today": sum(
                1 for e in finished if e.status == UpdateStatus.ROLLED_BACK.value
            ),
            "failed_today": sum(1 for e in finished if e.status == UpdateStatus.FAILED.value),
            "in_progress": len(self.history.interrupted()),
        }

    # -- crash recovery -------------------------------------------------

    def recover_interrupted(self) -> Dict[str, Dict[str, Any]]:
        """
        Restore installations whose update was cut off mid-pipeline.

        The committed database state of such an installation is its
        pre-update state; only its files may be half swapped.
        """
        results: Dict[str, Dict[str, Any]] = {}
        for entry in self.history.interrupted():
            installation = entry.installation
            with self.locks.hold(installation.id):
                install_dir = self._install_dir(installation)
                if not self.package_files.backup_exists(entry.backup_path):
                    self.history.mark_failed(entry, "Interrupted before a backup was recorded")
                    results[entry.id] = {"slug": installation.slug, "status": entry.status}
                    continue
                try:
                    self.package_files.restore_backup(entry.backup_path, install_dir)
                except Exception as exc:
                    logger.exception("Recovery of %s failed", installation.slug)
                    self.history.mark_failed(entry, f"Interrupted; restore failed: {exc}")
                else:
                    restored = (
                        self.catalog.resolve(installation.listing, entry.from_version)
                        if entry.from_version
                        else None
                    )
                    if restored is not None:
                        installation.version_id = restored.id
                    installation.installed_version = entry.from_version
                    self.session.add(installation)
                    self.history.mark_rolled_back(entry, "Interrupted update restored from backup")
                    logger.warning(
                        "Recovered interrupted update of %s to %s", installation.slug, entry.to_version
                    )
                results[entry.id] = {"slug": installation.slug, "status": entry.status}
        self.session.commit()
        return results

    # -- helpers --------------------------------------------------------

    def _candidates(self, tenant_id: Optional[str]) -> List[Installation]:
        query = self.session.query(Installation).filter(
            Installation.status.in_(
                [InstallationStatus.ACTIVE.value, InstallationStatus.INACTIVE.value]
            )
        )
        if tenant_id is not None:
            query = query.filter(Installation.tenant_id == tenant_id)
        return sorted(query.all(), key=lambda i: (i.tenant_id, i.slug))

    def _pending_for(self, installation: Installation) -> Optional[PendingUpdate]:
        return (
            self.session.query(PendingUpdate)
            .filter(PendingUpdate.installation_id == installation.id)
            .first()
        )

    def _record_pending(
        self,
        installation: Installation,
        target: PackageVersion,
        pending: Optional[PendingUpdate],
    ) -> PendingUpdate:
        pending = pending or PendingUpdate(installation_id=installation.id)
        pending.current_version = installation.installed_version
        pending.latest_version = target.version
        pending.changelog = target.changelog
        pending.download_url = target.package_url
        pending.package_hash = target.content_hash
        pending.package_size = target.size_bytes
        pending.requires_runtime = target.min_runtime_version
        pending.requires_platform = target.min_platform_version
        pending.is_security_update = bool(target.is_security_update)
        pending.is_breaking_change = bool(target.is_breaking_change)
        pending.requires_license = installation.listing.is_premium
        pending.status = PendingUpdateStatus.PENDING.value
        pending.checked_at = datetime.utcnow()
        pending.installed_at = None
        self.session.add(pending)
        return pending

    def _mark_pending_installed(self, installation: Installation, target: PackageVersion) -> None:
        pending = self._pending_for(installation)
        if pending is None or pending.status != PendingUpdateStatus.PENDING.value:
            return
        if compare_versions(target.version, pending.latest_version) >= 0:
            pending.status = PendingUpdateStatus.INSTALLED.value
            pending.installed_at = datetime.utcnow()
        else:
            pending.current_version = target.version
        self.session.add(pending)

    def _install_dir(self, installation: Installation) -> Path:
        if installation.install_path:
            return Path(installation.install_path)
        return self.package_files.install_dir(installation.tenant_id, installation.slug)


def _describe(error: BaseException) -> str:
    if isinstance(error, MarketplaceError):
        return error.message
    return f"{type(error).__name__}: {error}"
