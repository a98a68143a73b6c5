"""
Marketplace Models
Listings, published versions, per-tenant installations, licenses and the
update history / pending-update records.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from plugmarket.models.base import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class PricingModel(str, enum.Enum):
    FREE = "free"
    PAID = "paid"
    FREEMIUM = "freemium"


class Channel(str, enum.Enum):
    STABLE = "stable"
    BETA = "beta"
    ALPHA = "alpha"
    RC = "rc"


class InstallationStatus(str, enum.Enum):
    UNINSTALLED = "uninstalled"
    INACTIVE = "inactive"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class LicenseStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    INVALID = "invalid"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class UpdateStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class PendingUpdateStatus(str, enum.Enum):
    PENDING = "pending"
    INSTALLED = "installed"


class PackageListing(Base):
    """
    A publishable unit. Mutated only by the catalog/review process and never
    deleted; retiring sets ``status`` to ``retired``.
    """

    __tablename__ = "marketplace_listings"

    id = Column(String, primary_key=True, default=_uuid)
    slug = Column(String(100), nullable=False, unique=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    marketplace_id = Column(String(100), nullable=True, index=True)

    pricing_model = Column(String(20), nullable=False, default=PricingModel.FREE.value)
    trial_days = Column(Integer, nullable=False, default=0)

    status = Column(String(20), nullable=False, default="published")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    retired_at = Column(DateTime, nullable=True)

    versions = relationship(
        "PackageVersion", back_populates="listing", order_by="PackageVersion.published_at"
    )

    @property
    def is_free(self) -> bool:
        return (self.pricing_model or PricingModel.FREE.value) == PricingModel.FREE.value

    @property
    def is_premium(self) -> bool:
        return not self.is_free


class PackageVersion(Base):
    """
    Immutable once published. Only the yank fields and the ``is_current``
    pointer change afterwards.
    """

    __tablename__ = "marketplace_versions"

    id = Column(String, primary_key=True, default=_uuid)
    listing_id = Column(
        String, ForeignKey("marketplace_listings.id", ondelete="CASCADE"), nullable=False
    )
    version = Column(String(50), nullable=False)
    channel = Column(String(10), nullable=False, default=Channel.STABLE.value)

    content_hash = Column(String(64), nullable=False)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    package_url = Column(String(500), nullable=True)

    min_runtime_version = Column(String(20), nullable=True)
    min_platform_version = Column(String(20), nullable=True)
    dependencies = Column(JSON().with_variant(JSONB, "postgresql"), default=dict)

    changelog = Column(Text, nullable=True)
    is_security_update = Column(Boolean, nullable=False, default=False)
    is_breaking_change = Column(Boolean, nullable=False, default=False)

    is_current = Column(Boolean, nullable=False, default=False)
    is_yanked = Column(Boolean, nullable=False, default=False)
    yank_reason = Column(String(500), nullable=True)
    yanked_at = Column(DateTime, nullable=True)

    published_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    listing = relationship("PackageListing", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("listing_id", "version", name="uq_marketplace_version"),
        Index("ix_marketplace_versions_channel", "listing_id", "channel", "is_yanked"),
    )

    @property
    def dependency_map(self) -> Dict[str, str]:
        return dict(self.dependencies or {})


class Installation(Base):
    """One per (listing, tenant); the unit the lifecycle state machine governs."""

    __tablename__ = "marketplace_installations"

    id = Column(String, primary_key=True, default=_uuid)
    listing_id = Column(
        String, ForeignKey("marketplace_listings.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id = Column(String(100), nullable=False, index=True)
    version_id = Column(String, ForeignKey("marketplace_versions.id"), nullable=True)
    installed_version = Column(String(50), nullable=True)

    status = Column(String(20), nullable=False, default=InstallationStatus.ACTIVE.value)
    update_channel = Column(String(10), nullable=False, default=Channel.STABLE.value)
    auto_update = Column(Boolean, nullable=False, default=True)

    is_trial = Column(Boolean, nullable=False, default=False)
    trial_started_at = Column(DateTime, nullable=True)
    trial_expires_at = Column(DateTime, nullable=True)
    has_valid_license = Column(Boolean, nullable=False, default=False)

    install_path = Column(String(500), nullable=True)

    installed_at = Column(DateTime, nullable=True)
    activated_at = Column(DateTime, nullable=True)
    deactivated_at = Column(DateTime, nullable=True)
    uninstalled_at = Column(DateTime, nullable=True)
    suspended_at = Column(DateTime, nullable=True)
    suspension_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    listing = relationship("PackageListing")
    version = relationship("PackageVersion")

    __table_args__ = (
        UniqueConstraint("listing_id", "tenant_id", name="uq_marketplace_installation"),
        Index("ix_marketplace_installations_tenant_status", "tenant_id", "status"),
    )

    @property
    def slug(self) -> str:
        return self.listing.slug if self.listing is not None else ""

    @property
    def is_active(self) -> bool:
        return self.status == InstallationStatus.ACTIVE.value

    def trial_running(self, now: Optional[datetime] = None) -> bool:
        if not self.is_trial or self.trial_expires_at is None:
            return False
        return (now or datetime.utcnow()) <= self.trial_expires_at


class License(Base):
    """
    Entitlement for a premium package. Mutated only by the license gate;
    deactivation is a status change.
    """

    __tablename__ = "marketplace_licenses"

    id = Column(String, primary_key=True, default=_uuid)
    listing_id = Column(
        String, ForeignKey("marketplace_listings.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id = Column(String(100), nullable=True, index=True)
    installation_id = Column(
        String, ForeignKey("marketplace_installations.id"), nullable=True
    )

    license_key = Column(String(200), nullable=False, unique=True)
    license_type = Column(String(50), nullable=False, default="standard")
    status = Column(String(20), nullable=False, default=LicenseStatus.ACTIVE.value)

    activation_id = Column(String(100), nullable=True)
    instance_id = Column(String(100), nullable=True)
    activation_email = Column(String(200), nullable=True)
    activations_used = Column(Integer, nullable=False, default=1)
    activations_limit = Column(Integer, nullable=True)

    expires_at = Column(DateTime, nullable=True)  # Null = perpetual
    support_active = Column(Boolean, nullable=False, default=True)
    support_expires_at = Column(DateTime, nullable=True)
    updates_active = Column(Boolean, nullable=False, default=True)
    updates_expire_at = Column(DateTime, nullable=True)
    features = Column(JSON().with_variant(JSONB, "postgresql"), default=list)

    last_verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    deactivated_at = Column(DateTime, nullable=True)

    listing = relationship("PackageListing")

    __table_args__ = (Index("ix_marketplace_licenses_listing_tenant", "listing_id", "tenant_id"),)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at < (now or datetime.utcnow())

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.status == LicenseStatus.ACTIVE.value and not self.is_expired(now)

    def has_updates(self, now: Optional[datetime] = None) -> bool:
        if not self.is_valid(now) or not self.updates_active:
            return False
        return self.updates_expire_at is None or self.updates_expire_at > (now or datetime.utcnow())

    def has_support(self, now: Optional[datetime] = None) -> bool:
        if not self.is_valid(now) or not self.support_active:
            return False
        return self.support_expires_at is None or self.support_expires_at > (now or datetime.utcnow())

    def feature_list(self) -> List[str]:
        return list(self.features or [])


class UpdateHistoryEntry(Base):
    """Append-only record of an update or rollback attempt."""

    __tablename__ = "marketplace_update_history"

    id = Column(String, primary_key=True, default=_uuid)
    installation_id = Column(
        String, ForeignKey("marketplace_installations.id", ondelete="CASCADE"), nullable=False
    )
    from_version = Column(String(50), nullable=True)
    to_version = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=UpdateStatus.IN_PROGRESS.value)

    backup_path = Column(String(500), nullable=True)
    reason = Column(Text, nullable=True)
    error = Column(Text, nullable=True)

    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    installation = relationship("Installation")

    __table_args__ = (
        Index("ix_marketplace_update_history_installation", "installation_id", "started_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != UpdateStatus.IN_PROGRESS.value


class PendingUpdate(Base):
    """
    Pending-update indicator for an installation, refreshed from the local
    catalog or the remote update feed and cleared when the update lands.
    """

    __tablename__ = "marketplace_pending_updates"

    id = Column(String, primary_key=True, default=_uuid)
    installation_id = Column(
        String,
        ForeignKey("marketplace_installations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    current_version = Column(String(50), nullable=True)
    latest_version = Column(String(50), nullable=False)
    changelog = Column(Text, nullable=True)
    download_url = Column(String(500), nullable=True)
    package_hash = Column(String(64), nullable=True)
    package_size = Column(BigInteger, nullable=True)
    requires_runtime = Column(String(20), nullable=True)
    requires_platform = Column(String(20), nullable=True)
    is_security_update = Column(Boolean, nullable=False, default=False)
    is_breaking_change = Column(Boolean, nullable=False, default=False)
    requires_license = Column(Boolean, nullable=False, default=False)

    status = Column(String(20), nullable=False, default=PendingUpdateStatus.PENDING.value)
    checked_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    installed_at = Column(DateTime, nullable=True)

    installation = relationship("Installation")


class AppliedMigration(Base):
    """A package migration file that has been executed for a tenant."""

    __tablename__ = "marketplace_applied_migrations"

    id = Column(String, primary_key=True, default=_uuid)
    slug = Column(String(100), nullable=False)
    tenant_id = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    applied_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("slug", "tenant_id", "name", name="uq_marketplace_applied_migration"),
    )
