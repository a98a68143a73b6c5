from __future__ import annotations

from .catalog import VersionCatalog
from .compatibility import CompatibilityChecker, CompatibilityReport
from .history import UpdateHistoryLog
from .hooks import Installable
from .license_gate import LicenseGate
from .lifecycle import InstallationLifecycle
from .orchestrator import UpdateOrchestrator
from .results import ErrorCode, LicenseCheck, LicenseResult, TransitionResult, UpdateResult
from .services import MarketplaceServices, build_services

__all__ = [
    "CompatibilityChecker",
    "CompatibilityReport",
    "ErrorCode",
    "InstallationLifecycle",
    "Installable",
    "LicenseCheck",
    "LicenseGate",
    "LicenseResult",
    "MarketplaceServices",
    "TransitionResult",
    "UpdateHistoryLog",
    "UpdateOrchestrator",
    "UpdateResult",
    "VersionCatalog",
    "build_services",
]
