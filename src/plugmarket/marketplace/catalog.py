"""
Version catalog: listings and their immutable published versions.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from plugmarket.exceptions import InvalidStateError, ValidationError
from plugmarket.marketplace.locks import InstallationLocks, default_locks
from plugmarket.marketplace.models import (
    Channel,
    Installation,
    PackageListing,
    PackageVersion,
    PricingModel,
)
from plugmarket.marketplace.versioning import (
    InvalidVersion,
    compare_versions,
    determine_channel,
    parse_constraint,
    parse_version,
)

logger = logging.getLogger(__name__)

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")
_SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,99}$")


class VersionCatalog:
    def __init__(self, session: Session, locks: Optional[InstallationLocks] = None):
        self.session = session
        self.locks = locks or default_locks()

    # -- listings -------------------------------------------------------

    def create_listing(
        self,
        slug: str,
        name: str,
        *,
        pricing_model: str = PricingModel.FREE.value,
        trial_days: int = 0,
        description: Optional[str] = None,
        marketplace_id: Optional[str] = None,
    ) -> PackageListing:
        if not _SLUG_RE.match(slug or ""):
            raise ValidationError(f"Invalid package slug: {slug!r}", field="slug")
        if pricing_model not in {p.value for p in PricingModel}:
            raise ValidationError(f"Invalid pricing model: {pricing_model}", field="pricing_model")
        if trial_days < 0:
            raise ValidationError("trial_days must be >= 0", field="trial_days")
        if self.get_listing(slug) is not None:
            raise ValidationError(f"Package {slug} already exists", field="slug")

        listing = PackageListing(
            slug=slug,
            name=name,
            description=description,
            marketplace_id=marketplace_id,
            pricing_model=pricing_model,
            trial_days=trial_days,
            status="published",
        )
        self.session.add(listing)
        self.session.flush()
        return listing

    def get_listing(self, slug: str) -> Optional[PackageListing]:
        return self.session.query(PackageListing).filter(PackageListing.slug == slug).first()

    def get_listing_by_marketplace_id(self, marketplace_id: str) -> Optional[PackageListing]:
        return (
            self.session.query(PackageListing)
            .filter(PackageListing.marketplace_id == marketplace_id)
            .first()
        )

    def retire_listing(self, listing: PackageListing) -> PackageListing:
        if listing.status != "retired":
            listing.status = "retired"
            listing.retired_at = datetime.utcnow()
            self.session.add(listing)
            self.session.flush()
            logger.info("Package %s retired", listing.slug)
        return listing

    # -- versions -------------------------------------------------------

    def publish(
        self,
        listing: PackageListing,
        version_string: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PackageVersion:
        """
        Publish a new immutable version and make it current for its channel.

        Raises ``ValidationError`` for an unparsable or already-published
        version string, or for malformed metadata.
        """
        meta = dict(metadata or {})
        version_string = (version_string or "").strip()
        try:
            parse_version(version_string)
        except InvalidVersion as exc:
            raise ValidationError(str(exc), field="version") from exc

        if listing.status == "retired":
            raise InvalidStateError(f"Package {listing.slug} is retired", state="retired")

        content_hash = str(meta.get("content_hash") or "").lower()
        if not _SHA256_RE.match(content_hash):
            raise ValidationError("content_hash must be a sha256 hex digest", field="content_hash")

        dependencies = dict(meta.get("dependencies") or {})
        for dep_slug, constraint in dependencies.items():
            try:
                parse_constraint(str(constraint))
            except InvalidVersion as exc:
                raise ValidationError(
                    f"Invalid constraint for {dep_slug}: {constraint!r}", field="dependencies"
                ) from exc

        for key in ("min_runtime_version", "min_platform_version"):
            if meta.get(key):
                try:
                    parse_version(str(meta[key]))
                except InvalidVersion as exc:
                    raise ValidationError(str(exc), field=key) from exc

        with self.locks.hold(f"publish:{listing.id}"):
            if self.resolve(listing, version_string) is not None:
                raise ValidationError(
                    f"Version {version_string} already published for {listing.slug}",
                    field="version",
                )

            channel = determine_channel(version_string)
            (
                self.session.query(PackageVersion)
                .filter(
                    PackageVersion.listing_id == listing.id,
                    PackageVersion.channel == channel,
                    PackageVersion.is_current.is_(True),
                )
                .update({PackageVersion.is_current: False}, synchronize_session="fetch")
            )

            version = PackageVersion(
                listing_id=listing.id,
                version=version_string,
                channel=channel,
                content_hash=content_hash,
                size_bytes=int(meta.get("size_bytes") or 0),
                package_url=meta.get("package_url"),
                min_runtime_version=meta.get("min_runtime_version"),
                min_platform_version=meta.get("min_platform_version"),
                dependencies=dependencies,
                changelog=meta.get("changelog"),
                is_security_update=bool(meta.get("is_security_update", False)),
                is_breaking_change=bool(meta.get("is_breaking_change", False)),
                is_current=True,
                published_at=meta.get("published_at") or datetime.utcnow(),
            )
            self.session.add(version)
            self.session.flush()

        logger.info("Published %s@%s (%s)", listing.slug, version_string, channel)
        return version

    def resolve(self, listing: PackageListing, exact_version: str) -> Optional[PackageVersion]:
        return (
            self.session.query(PackageVersion)
            .filter(
                PackageVersion.listing_id == listing.id,
                PackageVersion.version == exact_version,
            )
            .first()
        )

    def versions(
        self, listing: PackageListing, channel: Optional[str] = None
    ) -> List[PackageVersion]:
        query = self.session.query(PackageVersion).filter(PackageVersion.listing_id == listing.id)
        if channel:
            query = query.filter(PackageVersion.channel == channel)
        return sorted(query.all(), key=lambda v: parse_version(v.version).sort_key(), reverse=True)

    def history(self, listing: PackageListing, limit: int = 10) -> List[PackageVersion]:
        """Non-yanked versions, newest first."""
        return [v for v in self.versions(listing) if not v.is_yanked][:limit]

    def latest(
        self, listing: PackageListing, channel: str = Channel.STABLE.value
    ) -> Optional[PackageVersion]:
        candidates = (
            self.session.query(PackageVersion)
            .filter(
                PackageVersion.listing_id == listing.id,
                PackageVersion.channel == channel,
                PackageVersion.is_yanked.is_(False),
            )
            .all()
        )
        if not candidates:
            return None
        return max(candidates, key=lambda v: parse_version(v.version).sort_key())

    def current(
        self, listing: PackageListing, channel: str = Channel.STABLE.value
    ) -> Optional[PackageVersion]:
        return (
            self.session.query(PackageVersion)
            .filter(
                PackageVersion.listing_id == listing.id,
                PackageVersion.channel == channel,
                PackageVersion.is_current.is_(True),
            )
            .first()
        )

    def yank(self, version: PackageVersion, reason: str) -> PackageVersion:
        """Withdraw a version from resolution. The current pointer is left alone."""
        if version.is_yanked:
            return version
        version.is_yanked = True
        version.yank_reason = reason
        version.yanked_at = datetime.utcnow()
        self.session.add(version)
        self.session.flush()
        logger.warning(
            "Version yanked: %s@%s (%s)",
            version.listing.slug if version.listing else version.listing_id,
            version.version,
            reason,
        )
        return version

    # -- comparisons ----------------------------------------------------

    def compare(self, v1: str, v2: str) -> int:
        return compare_versions(v1, v2)

    def available_update(self, installation: Installation) -> Optional[PackageVersion]:
        latest = self.latest(installation.listing, installation.update_channel)
        if latest is None:
            return None
        if installation.installed_version and compare_versions(
            latest.version, installation.installed_version
        ) <= 0:
            return None
        return latest

    def has_update(self, installation: Installation) -> bool:
        return self.available_update(installation) is not None
