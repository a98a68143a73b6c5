from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from plugmarket.marketplace.models import (
    Installation,
    InstallationStatus,
    PackageListing,
    PackageVersion,
)
from plugmarket.marketplace.versioning import InvalidVersion, satisfies, version_gte


@dataclass
class CompatibilityReport:
    compatible: bool
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"compatible": self.compatible, "issues": list(self.issues)}


class CompatibilityChecker:
    """
    Checks a version's minimum runtime/platform versions and, when a tenant
    is given, the presence of its direct dependencies.
    """

    def __init__(self, session: Optional[Session] = None):
        self.session = session

    def check(
        self,
        version: PackageVersion,
        runtime_version: str,
        platform_version: str,
        tenant_id: Optional[str] = None,
    ) -> CompatibilityReport:
        issues: List[str] = []

        if not _gte(runtime_version, version.min_runtime_version):
            issues.append(
                f"Requires runtime {version.min_runtime_version} or higher "
                f"(current: {runtime_version})"
            )
        if not _gte(platform_version, version.min_platform_version):
            issues.append(
                f"Requires platform version {version.min_platform_version} or higher "
                f"(current: {platform_version})"
            )

        if tenant_id is not None and self.session is not None:
            issues.extend(self._dependency_issues(version, tenant_id))

        return CompatibilityReport(compatible=not issues, issues=issues)

    def _dependency_issues(self, version: PackageVersion, tenant_id: str) -> List[str]:
        issues: List[str] = []
        for dep_slug, constraint in sorted(version.dependency_map.items()):
            installation = (
                self.session.query(Installation)
                .join(PackageListing, Installation.listing_id == PackageListing.id)
                .filter(
                    PackageListing.slug == dep_slug,
                    Installation.tenant_id == tenant_id,
                    Installation.status == InstallationStatus.ACTIVE.value,
                )
                .first()
            )
            if installation is None:
                issues.append(f"Requires {dep_slug} to be installed and active")
                continue
            installed = installation.installed_version or ""
            try:
                ok = satisfies(installed, str(constraint))
            except InvalidVersion:
                ok = False
            if not ok:
                issues.append(f"Requires {dep_slug} {constraint} (installed: {installed or 'unknown'})")
        return issues


def _gte(current: str, required: Optional[str]) -> bool:
    try:
        return version_gte(current, required)
    except InvalidVersion:
        return False
