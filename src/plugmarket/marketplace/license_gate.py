"""
License gate for premium packages.

Activation and verification go through the remote authority; entitlement
checks only ever read the locally cached snapshot.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from plugmarket.exceptions import (
    InvalidStateError,
    KeyInUseError,
    LicenseRequiredError,
    MarketplaceError,
    RemoteRejectedError,
    RemoteUnreachableError,
)
from plugmarket.integrations.marketplace_client import MarketplaceClient
from plugmarket.marketplace.models import (
    Installation,
    InstallationStatus,
    License,
    LicenseStatus,
    PackageListing,
    PricingModel,
)
from plugmarket.marketplace.results import ErrorCode, LicenseCheck, LicenseResult

logger = logging.getLogger(__name__)

_SNAPSHOT_FIELDS = (
    "license_type",
    "activations_used",
    "activations_limit",
    "expires_at",
    "support_active",
    "support_expires_at",
    "updates_active",
    "updates_expire_at",
    "features",
)
_DATETIME_FIELDS = {"expires_at", "support_expires_at", "updates_expire_at"}


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise RemoteRejectedError(
                f"License server sent an unreadable date: {value!r}"
            ) from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def cached_license(session: Session, installation: Installation) -> Optional[License]:
    """Newest license bound to the installation, else to its package and tenant."""
    license_ = (
        session.query(License)
        .filter(License.installation_id == installation.id)
        .order_by(License.created_at.desc())
        .first()
    )
    if license_ is not None:
        return license_
    return (
        session.query(License)
        .filter(
            License.listing_id == installation.listing_id,
            License.tenant_id == installation.tenant_id,
        )
        .order_by(License.created_at.desc())
        .first()
    )


class LicenseGate:
    def __init__(self, session: Session, client: MarketplaceClient):
        self.session = session
        self.client = client

    # -- lookups --------------------------------------------------------

    def license_for(self, installation: Installation) -> Optional[License]:
        return cached_license(self.session, installation)

    def find_by_key(self, license_key: str) -> Optional[License]:
        return self.session.query(License).filter(License.license_key == license_key).first()

    # -- activation -----------------------------------------------------

    def activate(
        self, installation: Installation, license_key: str, contact_email: str
    ) -> LicenseResult:
        try:
            license_ = self._activate(installation, license_key.strip(), contact_email)
        except MarketplaceError as exc:
            logger.warning("License activation failed for %s: %s", installation.slug, exc.message)
            return LicenseResult.failure(exc)
        return LicenseResult(
            success=True, message="License activated successfully", license=license_
        )

    def _activate(self, installation: Installation, license_key: str, email: str) -> License:
        existing = self.find_by_key(license_key)
        if existing is not None:
            if existing.listing_id != installation.listing_id:
                raise KeyInUseError("License key is already in use by another package")
            if (
                existing.installation_id is not None
                and existing.installation_id != installation.id
                and existing.status != LicenseStatus.INACTIVE.value
            ):
                raise KeyInUseError("License key is already in use by another installation")

        response = self.client.activate_license(
            license_key, installation.slug, email, tenant_id=installation.tenant_id
        )
        if not response.get("success", False):
            raise RemoteRejectedError(response.get("message") or "License activation failed")
        snapshot = self._read_snapshot(response, defaults=True)

        license_ = existing or self.license_for(installation)
        if license_ is None:
            license_ = License(listing_id=installation.listing_id)
        license_.license_key = license_key
        license_.tenant_id = installation.tenant_id
        license_.installation_id = installation.id
        license_.status = LicenseStatus.ACTIVE.value
        license_.activation_id = response.get("activation_id")
        license_.instance_id = response.get("instance_id")
        license_.activation_email = email
        license_.deactivated_at = None
        for name, value in snapshot.items():
            setattr(license_, name, value)
        license_.last_verified_at = datetime.utcnow()

        installation.has_valid_license = license_.is_valid()
        self.session.add_all([license_, installation])
        self.session.flush()
        logger.info("License activated for %s (tenant %s)", installation.slug, installation.tenant_id)
        return license_

    def deactivate(self, installation: Installation) -> LicenseResult:
        license_ = self.license_for(installation)
        if license_ is None:
            return LicenseResult.failure(
                InvalidStateError("No license found for this package")
            )

        message = "License deactivated successfully"
        if license_.activation_id and license_.status != LicenseStatus.INACTIVE.value:
            try:
                self.client.deactivate_license(
                    license_.license_key, license_.instance_id, tenant_id=installation.tenant_id
                )
            except MarketplaceError as exc:
                logger.warning(
                    "Remote license deactivation failed for %s: %s", installation.slug, exc.message
                )
                message = "License deactivated locally (could not reach server)"

        license_.status = LicenseStatus.INACTIVE.value
        license_.deactivated_at = datetime.utcnow()
        installation.has_valid_license = False
        self.session.add_all([license_, installation])
        self.session.flush()
        return LicenseResult(success=True, message=message, license=license_)

    # -- verification ---------------------------------------------------

    def verify(self, installation: Installation, now: Optional[datetime] = None) -> LicenseCheck:
        now = now or datetime.utcnow()
        license_ = self.license_for(installation)
        if license_ is None:
            return LicenseCheck(
                valid=False,
                error_code=ErrorCode.LICENSE_REQUIRED.value,
                message="No license found",
            )

        if license_.is_expired(now):
            license_.status = LicenseStatus.EXPIRED.value
            installation.has_valid_license = False
            self.session.add_all([license_, installation])
            self.session.flush()
            return LicenseCheck(
                valid=False,
                error_code=ErrorCode.LICENSE_REQUIRED.value,
                message="License has expired",
                license=license_,
            )

        try:
            response = self.client.verify_license(
                license_.license_key, installation.slug, tenant_id=installation.tenant_id
            )
        except RemoteUnreachableError as exc:
            logger.warning(
                "License server unreachable for %s, using local state: %s",
                installation.slug,
                exc.message,
            )
            valid = license_.is_valid(now)
            installation.has_valid_license = valid
            self.session.add(installation)
            self.session.flush()
            return LicenseCheck(
                valid=valid,
                offline_check=True,
                error_code=ErrorCode.REMOTE_UNREACHABLE.value,
                message="Could not reach licensing server",
                license=license_,
            )
        except RemoteRejectedError as exc:
            response = {"valid": False, "message": exc.message}

        if response.get("valid", False):
            try:
                snapshot = self._read_snapshot(response, defaults=False)
            except RemoteRejectedError as exc:
                logger.warning("Ignoring malformed license answer for %s: %s", installation.slug, exc.message)
                return LicenseCheck(
                    valid=False,
                    error_code=ErrorCode.REMOTE_REJECTED.value,
                    message=exc.message,
                    license=license_,
                )
            for name, value in snapshot.items():
                setattr(license_, name, value)
            license_.status = LicenseStatus.ACTIVE.value
            license_.last_verified_at = now
            installation.has_valid_license = license_.is_valid(now)
            self.session.add_all([license_, installation])
            self.session.flush()
            return LicenseCheck(valid=installation.has_valid_license, license=license_)

        remote_status = response.get("status")
        if remote_status not in {s.value for s in LicenseStatus}:
            remote_status = LicenseStatus.INVALID.value
        license_.status = remote_status
        license_.last_verified_at = now
        installation.has_valid_license = False
        self.session.add_all([license_, installation])
        self.session.flush()
        return LicenseCheck(
            valid=False,
            error_code=ErrorCode.REMOTE_REJECTED.value,
            message=response.get("message") or "License validation failed",
            license=license_,
        )

    def verify_all(self, tenant_id: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        query = (
            self.session.query(Installation)
            .join(PackageListing, Installation.listing_id == PackageListing.id)
            .filter(
                PackageListing.pricing_model != PricingModel.FREE.value,
                Installation.status != InstallationStatus.UNINSTALLED.value,
            )
        )
        if tenant_id is not None:
            query = query.filter(Installation.tenant_id == tenant_id)

        results: Dict[str, Dict[str, Any]] = {}
        for installation in query.all():
            key = installation.slug if tenant_id is not None else f"{installation.tenant_id}/{installation.slug}"
            results[key] = self.verify(installation).to_dict()
        return results

    # -- entitlement reads ---------------------------------------------

    def can_update(self, installation: Installation, now: Optional[datetime] = None) -> bool:
        if installation.listing.is_free:
            return True
        license_ = self.license_for(installation)
        return license_ is not None and license_.has_updates(now)

    def has_support(self, installation: Installation, now: Optional[datetime] = None) -> bool:
        if installation.listing.is_free:
            return False
        license_ = self.license_for(installation)
        return license_ is not None and license_.has_support(now)

    def has_feature(
        self, installation: Installation, feature: str, now: Optional[datetime] = None
    ) -> bool:
        license_ = self.license_for(installation)
        return (
            license_ is not None and license_.is_valid(now) and feature in license_.feature_list()
        )

    def require_update_entitlement(self, installation: Installation) -> None:
        if installation.trial_running() or self.can_update(installation):
            return
        raise LicenseRequiredError(f"A license with update access is required for {installation.slug}")

    # -- reporting ------------------------------------------------------

    def expiring(self, days: int = 30, now: Optional[datetime] = None) -> List[License]:
        now = now or datetime.utcnow()
        return (
            self.session.query(License)
            .filter(
                License.status == LicenseStatus.ACTIVE.value,
                License.expires_at.isnot(None),
                License.expires_at > now,
                License.expires_at <= now + timedelta(days=days),
            )
            .order_by(License.expires_at.asc())
            .all()
        )

    def expired(self, now: Optional[datetime] = None) -> List[License]:
        now = now or datetime.utcnow()
        return (
            self.session.query(License)
            .filter(
                or_(
                    License.status == LicenseStatus.EXPIRED.value,
                    (License.expires_at.isnot(None)) & (License.expires_at < now),
                )
            )
            .all()
        )

    def status_summary(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        licenses = self.session.query(License).all()
        return {
            "total": len(licenses),
            "active": sum(1 for lic in licenses if lic.is_valid(now)),
            "expired": len(self.expired(now)),
            "expiring_soon": len(self.expiring(30, now)),
            "with_support": sum(1 for lic in licenses if lic.has_support(now)),
            "with_updates": sum(1 for lic in licenses if lic.has_updates(now)),
        }

    # -- helpers --------------------------------------------------------

    @staticmethod
    def _read_snapshot(response: Dict[str, Any], *, defaults: bool) -> Dict[str, Any]:
        """Entitlement fields from an authority answer; raises ``RemoteRejectedError`` on bad dates."""
        snapshot: Dict[str, Any] = {}
        for name in _SNAPSHOT_FIELDS:
            if name not in response or response[name] is None:
                if defaults:
                    if name in ("support_active", "updates_active"):
                        snapshot[name] = True
                    elif name == "features":
                        snapshot[name] = []
                    elif name == "activations_used":
                        snapshot[name] = 1
                    elif name == "license_type":
                        snapshot[name] = "standard"
                    else:
                        snapshot[name] = None
                continue
            value = response[name]
            if name in _DATETIME_FIELDS:
                value = _parse_datetime(value)
            elif name == "features":
                value = list(value or [])
            snapshot[name] = value
        return snapshot
