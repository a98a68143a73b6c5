"""
Structured results returned by every mutating marketplace operation.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from plugmarket.exceptions import MarketplaceError


class ErrorCode(str, enum.Enum):
    NO_VERSION_AVAILABLE = "NO_VERSION_AVAILABLE"
    INCOMPATIBLE_VERSION = "INCOMPATIBLE_VERSION"
    LICENSE_REQUIRED = "LICENSE_REQUIRED"
    KEY_IN_USE = "KEY_IN_USE"
    REMOTE_REJECTED = "REMOTE_REJECTED"
    REMOTE_UNREACHABLE = "REMOTE_UNREACHABLE"
    PACKAGE_VERIFICATION_FAILED = "PACKAGE_VERIFICATION_FAILED"
    DEPENDENTS_EXIST = "DEPENDENTS_EXIST"
    NO_UPDATE_AVAILABLE = "NO_UPDATE_AVAILABLE"
    REQUIREMENTS_NOT_MET = "REQUIREMENTS_NOT_MET"
    ALREADY_INSTALLED = "ALREADY_INSTALLED"
    INVALID_STATE = "INVALID_STATE"
    HOOK_FAILED = "HOOK_FAILED"
    MIGRATION_FAILED = "MIGRATION_FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


def error_code_for(exc: BaseException) -> str:
    if isinstance(exc, MarketplaceError):
        return exc.code
    return ErrorCode.INTERNAL_ERROR.value


@dataclass
class TransitionResult:
    """Result of an installation state transition."""

    success: bool
    message: str = ""
    error_code: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    installation: Any = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(
        cls, exc: MarketplaceError, *, installation: Any = None, from_status: Optional[str] = None
    ) -> "TransitionResult":
        return cls(
            success=False,
            message=exc.message,
            error_code=exc.code,
            from_status=from_status,
            to_status=from_status,
            installation=installation,
            details=dict(exc.details),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "error_code": self.error_code,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "installation_id": getattr(self.installation, "id", None),
            "details": self.details,
        }


@dataclass
class LicenseResult:
    """Result of a license activation or deactivation."""

    success: bool
    message: str = ""
    error_code: Optional[str] = None
    license: Any = None

    @classmethod
    def failure(cls, exc: MarketplaceError) -> "LicenseResult":
        return cls(success=False, message=exc.message, error_code=exc.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "error_code": self.error_code,
            "license_id": getattr(self.license, "id", None),
        }


@dataclass
class LicenseCheck:
    """Result of a license verification."""

    valid: bool
    offline_check: bool = False
    error_code: Optional[str] = None
    message: str = ""
    license: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "offline_check": self.offline_check,
            "error_code": self.error_code,
            "message": self.message,
        }


@dataclass
class UpdateResult:
    """Outcome of one update pipeline run."""

    success: bool
    message: str = ""
    error_code: Optional[str] = None
    from_version: Optional[str] = None
    to_version: Optional[str] = None
    rolled_back: bool = False
    history_id: Optional[str] = None
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "error_code": self.error_code,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "rolled_back": self.rolled_back,
            "history_id": self.history_id,
            "issues": list(self.issues),
        }
