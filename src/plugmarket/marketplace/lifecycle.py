"""
Installation lifecycle.

States: uninstalled, inactive, active, suspended. A trial is a flag on an
installation, not a state. Public transitions return ``TransitionResult``;
the ``do_*`` variants raise and are used by the update pipeline.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from plugmarket.config import get_settings
from plugmarket.exceptions import (
    AlreadyInstalledError,
    DependentsExistError,
    HookFailedError,
    IncompatibleVersionError,
    InvalidStateError,
    LicenseRequiredError,
    MarketplaceError,
    NoVersionAvailableError,
)
from plugmarket.marketplace.catalog import VersionCatalog
from plugmarket.marketplace.compatibility import CompatibilityChecker
from plugmarket.marketplace.hooks import HookRunner
from plugmarket.marketplace.license_gate import LicenseGate, cached_license
from plugmarket.marketplace.locks import InstallationLocks, default_locks
from plugmarket.marketplace.models import (
    Installation,
    InstallationStatus,
    License,
    LicenseStatus,
    PackageListing,
)
from plugmarket.marketplace.package_files import PackageDownloader, PackageFiles
from plugmarket.marketplace.results import LicenseResult, TransitionResult

logger = logging.getLogger(__name__)

ACTIVE = InstallationStatus.ACTIVE.value
INACTIVE = InstallationStatus.INACTIVE.value
SUSPENDED = InstallationStatus.SUSPENDED.value
UNINSTALLED = InstallationStatus.UNINSTALLED.value


class InstallationLifecycle:
    def __init__(
        self,
        session: Session,
        catalog: VersionCatalog,
        checker: CompatibilityChecker,
        package_files: PackageFiles,
        hooks: HookRunner,
        downloader: PackageDownloader,
        *,
        license_gate: Optional[LicenseGate] = None,
        locks: Optional[InstallationLocks] = None,
        runtime_version: Optional[str] = None,
        platform_version: Optional[str] = None,
        download_timeout_s: Optional[float] = None,
    ):
        settings = get_settings()
        self.session = session
        self.catalog = catalog
        self.checker = checker
        self.package_files = package_files
        self.hooks = hooks
        self.downloader = downloader
        self.license_gate = license_gate
        self.locks = locks or default_locks()
        self.runtime_version = runtime_version or settings.effective_runtime_version
        self.platform_version = platform_version or settings.PLATFORM_VERSION
        self.download_timeout_s = download_timeout_s or settings.DOWNLOAD_TIMEOUT_SECONDS

    # -- queries --------------------------------------------------------

    def get_installation(self, slug: str, tenant_id: str) -> Optional[Installation]:
        return (
            self._tenant_query(tenant_id)
            .filter(PackageListing.slug == slug, Installation.status != UNINSTALLED)
            .first()
        )

    def is_installed(self, slug: str, tenant_id: str) -> bool:
        return self.get_installation(slug, tenant_id) is not None

    def list_installations(
        self, tenant_id: str, status: Optional[str] = None
    ) -> List[Installation]:
        query = self._tenant_query(tenant_id)
        if status:
            query = query.filter(Installation.status == status)
        else:
            query = query.filter(Installation.status != UNINSTALLED)
        return query.order_by(PackageListing.slug.asc()).all()

    def find_dependents(self, installation: Installation) -> List[str]:
        """Slugs of other active installations in the tenant that depend on this one."""
        slug = installation.slug
        dependents = []
        others = (
            self.session.query(Installation)
            .filter(
                Installation.tenant_id == installation.tenant_id,
                Installation.status == ACTIVE,
                Installation.id != installation.id,
            )
            .all()
        )
        for other in others:
            if other.version is not None and slug in other.version.dependency_map:
                dependents.append(other.slug)
        return sorted(dependents)

    def stats(self, tenant_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        installations = self.list_installations(tenant_id)
        soon = now + timedelta(days=7)
        return {
            "total": len(installations),
            "active": sum(1 for i in installations if i.status == ACTIVE),
            "inactive": sum(1 for i in installations if i.status == INACTIVE),
            "suspended": sum(1 for i in installations if i.status == SUSPENDED),
            "trials": sum(1 for i in installations if i.is_trial),
            "needs_update": sum(1 for i in installations if self.catalog.has_update(i)),
            "trials_expiring": sum(
                1
                for i in installations
                if i.is_trial and i.trial_expires_at is not None and now <= i.trial_expires_at <= soon
            ),
        }

    # -- install --------------------------------------------------------

    def install(
        self, listing: PackageListing, tenant_id: str, channel: Optional[str] = None
    ) -> TransitionResult:
        channel = channel or get_settings().DEFAULT_CHANNEL
        with self.locks.hold(f"install:{listing.id}:{tenant_id}"):
            existing = self._find(listing, tenant_id)
            from_status = existing.status if existing is not None else UNINSTALLED
            try:
                installation = self._install(listing, tenant_id, channel, existing)
            except MarketplaceError as exc:
                logger.warning("Install of %s for %s failed: %s", listing.slug, tenant_id, exc.message)
                return TransitionResult.failure(exc, installation=existing, from_status=from_status)
        return TransitionResult(
            success=True,
            message=f"Installed {listing.slug} {installation.installed_version}",
            from_status=from_status,
            to_status=installation.status,
            installation=installation,
        )

    def _install(
        self,
        listing: PackageListing,
        tenant_id: str,
        channel: str,
        existing: Optional[Installation],
    ) -> Installation:
        if existing is not None and existing.status != UNINSTALLED:
            raise AlreadyInstalledError(f"{listing.slug} is already installed for tenant {tenant_id}")
        if listing.status == "retired":
            raise NoVersionAvailableError(f"{listing.slug} has been retired")

        version = self.catalog.latest(listing, channel)
        if version is None:
            raise NoVersionAvailableError(
                f"No version of {listing.slug} available on channel {channel}"
            )

        report = self.checker.check(
            version, self.runtime_version, self.platform_version, tenant_id=tenant_id
        )
        if not report.compatible:
            raise IncompatibleVersionError(
                f"{listing.slug} {version.version} is not compatible: {', '.join(report.issues)}",
                issues=report.issues,
            )

        install_dir = self.package_files.install_dir(tenant_id, listing.slug)
        archive = self.package_files.fetch_verified(
            version, self.downloader, timeout_s=self.download_timeout_s
        )
        try:
            self.package_files.install_archive(archive, install_dir)
            self.hooks.install(install_dir, listing.slug)
            self.hooks.activate(install_dir, listing.slug)
        except Exception:
            self.package_files.remove(install_dir)
            raise
        finally:
            self.package_files.discard(archive)

        now = datetime.utcnow()
        installation = existing or Installation(
            listing_id=listing.id, tenant_id=tenant_id, auto_update=True
        )
        installation.listing = listing
        installation.version_id = version.id
        installation.version = version
        installation.installed_version = version.version
        installation.update_channel = channel
        installation.status = ACTIVE
        installation.install_path = str(install_dir)
        installation.installed_at = now
        installation.activated_at = now
        installation.deactivated_at = None
        installation.uninstalled_at = None
        installation.suspended_at = None
        installation.suspension_reason = None

        if listing.is_premium and (listing.trial_days or 0) > 0:
            installation.is_trial = True
            installation.trial_started_at = now
            installation.trial_expires_at = now + timedelta(days=listing.trial_days)
        else:
            installation.is_trial = False
            installation.trial_started_at = None
            installation.trial_expires_at = None

        self.session.add(installation)
        self.session.flush()
        logger.info(
            "Package installed: %s %s for tenant %s%s",
            listing.slug,
            version.version,
            tenant_id,
            " (trial)" if installation.is_trial else "",
        )
        return installation

    # -- activate / deactivate -----------------------------------------

    def activate(self, installation: Installation) -> TransitionResult:
        return self._transition(installation, self.do_activate, "Activated")

    def do_activate(self, installation: Installation, *, check_license: bool = True) -> bool:
        """Activate or raise. Returns False when already active."""
        with self.locks.hold(installation.id):
            if installation.status == ACTIVE:
                return False
            if installation.status == UNINSTALLED:
                raise InvalidStateError(
                    f"{installation.slug} is not installed", state=installation.status
                )
            if (
                check_license
                and installation.listing.is_premium
                and not installation.trial_running()
                and not self._holds_valid_license(installation)
            ):
                raise LicenseRequiredError(
                    f"A valid license is required to activate {installation.slug}"
                )

            self.hooks.activate(self._install_dir(installation), installation.slug)
            installation.status = ACTIVE
            installation.activated_at = datetime.utcnow()
            installation.suspended_at = None
            installation.suspension_reason = None
            self.session.add(installation)
            self.session.flush()
            logger.info("Package activated: %s (tenant %s)", installation.slug, installation.tenant_id)
            return True

    def _holds_valid_license(self, installation: Installation) -> bool:
        license_ = cached_license(self.session, installation)
        valid = license_ is not None and license_.is_valid()
        if installation.has_valid_license != valid:
            installation.has_valid_license = valid
            self.session.add(installation)
            self.session.flush()
        return valid

    def activate_license(
        self, installation: Installation, license_key: str, contact_email: str
    ) -> LicenseResult:
        """Activate a license key, then the installation itself if it is inactive."""
        if self.license_gate is None:
            raise RuntimeError("InstallationLifecycle was built without a license gate")
        with self.locks.hold(installation.id):
            result = self.license_gate.activate(installation, license_key, contact_email)
            if not result.success or installation.status != INACTIVE:
                return result
            try:
                self.do_activate(installation)
            except MarketplaceError as exc:
                logger.warning(
                    "License activated but %s stayed inactive: %s", installation.slug, exc.message
                )
                result.message = f"License activated; {installation.slug} could not be activated: {exc.message}"
            return result

    def deactivate(self, installation: Installation) -> TransitionResult:
        return self._transition(installation, self.do_deactivate, "Deactivated")

    def do_deactivate(self, installation: Installation, *, check_dependents: bool = True) -> bool:
        """Deactivate or raise. Returns False when already inactive."""
        with self.locks.hold(installation.id):
            if installation.status == INACTIVE:
                return False
            if installation.status != ACTIVE:
                raise InvalidStateError(
                    f"Cannot deactivate {installation.slug} while {installation.status}",
                    state=installation.status,
                )
            if check_dependents:
                dependents = self.find_dependents(installation)
                if dependents:
                    raise DependentsExistError(installation.slug, dependents)

            self.hooks.deactivate(self._install_dir(installation), installation.slug)
            installation.status = INACTIVE
            installation.deactivated_at = datetime.utcnow()
            self.session.add(installation)
            self.session.flush()
            logger.info("Package deactivated: %s (tenant %s)", installation.slug, installation.tenant_id)
            return True

    # -- uninstall ------------------------------------------------------

    def uninstall(self, installation: Installation) -> TransitionResult:
        from_status = installation.status
        with self.locks.hold(installation.id):
            try:
                if installation.status == ACTIVE:
                    self.do_deactivate(installation)
            except MarketplaceError as exc:
                return TransitionResult.failure(exc, installation=installation, from_status=from_status)

            install_dir = self._install_dir(installation)
            if from_status != UNINSTALLED:
                try:
                    self.hooks.uninstall(install_dir, installation.slug)
                except HookFailedError as exc:
                    logger.warning("Uninstall hook failed, continuing: %s", exc.message)
            self.package_files.remove(install_dir)

            released = self._release_license(installation)

            now = datetime.utcnow()
            installation.status = UNINSTALLED
            installation.uninstalled_at = installation.uninstalled_at if from_status == UNINSTALLED else now
            installation.is_trial = False
            installation.trial_started_at = None
            installation.trial_expires_at = None
            installation.has_valid_license = False
            self.session.add(installation)
            self.session.flush()

        logger.info("Package uninstalled: %s (tenant %s)", installation.slug, installation.tenant_id)
        return TransitionResult(
            success=True,
            message=f"Uninstalled {installation.slug}",
            from_status=from_status,
            to_status=UNINSTALLED,
            installation=installation,
            details={"license_released": released},
        )

    def _release_license(self, installation: Installation) -> bool:
        if self.license_gate is None:
            return False
        license_ = (
            self.session.query(License)
            .filter(
                License.installation_id == installation.id,
                License.status != LicenseStatus.INACTIVE.value,
            )
            .first()
        )
        if license_ is None:
            return False
        result = self.license_gate.deactivate(installation)
        return result.success

    # -- suspension / trials -------------------------------------------

    def suspend(self, installation: Installation, reason: str) -> TransitionResult:
        from_status = installation.status
        with self.locks.hold(installation.id):
            if installation.status == SUSPENDED:
                return TransitionResult(
                    success=True,
                    message=f"{installation.slug} is already suspended",
                    from_status=from_status,
                    to_status=SUSPENDED,
                    installation=installation,
                )
            if installation.status != ACTIVE:
                return TransitionResult.failure(
                    InvalidStateError(
                        f"Only active installations can be suspended ({installation.status})",
                        state=installation.status,
                    ),
                    installation=installation,
                    from_status=from_status,
                )

            try:
                self.hooks.deactivate(self._install_dir(installation), installation.slug)
            except HookFailedError as exc:
                logger.warning("Deactivate hook failed during suspension: %s", exc.message)

            installation.status = SUSPENDED
            installation.suspended_at = datetime.utcnow()
            installation.suspension_reason = reason
            self.session.add(installation)
            self.session.flush()

        logger.warning(
            "Package suspended: %s (tenant %s): %s", installation.slug, installation.tenant_id, reason
        )
        return TransitionResult(
            success=True,
            message=f"Suspended {installation.slug}",
            from_status=from_status,
            to_status=SUSPENDED,
            installation=installation,
            details={"reason": reason},
        )

    def suspend_all(self, listing: PackageListing, reason: str) -> int:
        installations = (
            self.session.query(Installation)
            .filter(Installation.listing_id == listing.id, Installation.status == ACTIVE)
            .all()
        )
        count = sum(1 for inst in installations if self.suspend(inst, reason).success)
        logger.warning("Suspended %d installation(s) of %s: %s", count, listing.slug, reason)
        return count

    def expire_trials(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        expired = (
            self.session.query(Installation)
            .filter(
                Installation.is_trial.is_(True),
                Installation.trial_expires_at.isnot(None),
                Installation.trial_expires_at < now,
            )
            .all()
        )
        for installation in expired:
            if installation.status == ACTIVE:
                installation.status = INACTIVE
                installation.deactivated_at = now
            installation.is_trial = False
            self.session.add(installation)
            logger.info(
                "Trial expired: %s (tenant %s)", installation.slug, installation.tenant_id
            )
        self.session.flush()
        return len(expired)

    # -- helpers --------------------------------------------------------

    def _transition(self, installation: Installation, op, verb: str) -> TransitionResult:
        from_status = installation.status
        try:
            changed = op(installation)
        except MarketplaceError as exc:
            logger.warning("%s failed for %s: %s", verb, installation.slug, exc.message)
            return TransitionResult.failure(exc, installation=installation, from_status=from_status)
        message = f"{verb} {installation.slug}" if changed else f"{installation.slug} is already {installation.status}"
        return TransitionResult(
            success=True,
            message=message,
            from_status=from_status,
            to_status=installation.status,
            installation=installation,
        )

    def _find(self, listing: PackageListing, tenant_id: str) -> Optional[Installation]:
        return (
            self.session.query(Installation)
            .filter(Installation.listing_id == listing.id, Installation.tenant_id == tenant_id)
            .first()
        )

    def _tenant_query(self, tenant_id: str):
        return (
            self.session.query(Installation)
            .join(PackageListing, Installation.listing_id == PackageListing.id)
            .filter(Installation.tenant_id == tenant_id)
        )

    def _install_dir(self, installation: Installation) -> Path:
        if installation.install_path:
            return Path(installation.install_path)
        return self.package_files.install_dir(installation.tenant_id, installation.slug)

    def describe(self, installation: Installation) -> Dict[str, Any]:
        return {
            "id": installation.id,
            "slug": installation.slug,
            "tenant_id": installation.tenant_id,
            "status": installation.status,
            "installed_version": installation.installed_version,
            "update_channel": installation.update_channel,
            "is_trial": installation.is_trial,
            "trial_expires_at": installation.trial_expires_at.isoformat()
            if installation.trial_expires_at
            else None,
            "has_valid_license": installation.has_valid_license,
        }
