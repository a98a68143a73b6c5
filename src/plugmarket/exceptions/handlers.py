from __future__ import annotations

from typing import Any, Dict, List, Optional


class MarketplaceError(Exception):
    """
    Base exception for the marketplace core.

    Carries a machine-readable ``code`` (one of ``ErrorCode``), an HTTP-ish
    ``status_code`` for callers that expose results over an API, and free-form
    ``details``. Public operations convert these into structured results.
    """

    default_code = "MARKETPLACE_ERROR"
    default_status = 400

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
    ) -> None:
        self.message = message
        self.code = code or self.default_code
        self.status_code = status_code or self.default_status
        self.details: Dict[str, Any] = details or {}
        self.user_message = user_message or message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
        }

    def __str__(self) -> str:  # pragma: no cover
        return self.message


class ValidationError(MarketplaceError):
    default_code = "VALIDATION_ERROR"
    default_status = 422

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"field": field} if field else {}
        details.update(kwargs)
        super().__init__(
            message,
            details=details,
            user_message=f"Validation failed: {message}",
        )


class ConfigurationError(MarketplaceError):
    default_code = "CONFIGURATION_ERROR"
    default_status = 500

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"config_key": config_key} if config_key else {}
        details.update(kwargs)
        super().__init__(
            message,
            details=details,
            user_message="System configuration error",
        )


class InvalidStateError(MarketplaceError):
    default_code = "INVALID_STATE"
    default_status = 409

    def __init__(self, message: str, state: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"state": state} if state else {}
        details.update(kwargs)
        super().__init__(message, details=details)


class AlreadyInstalledError(MarketplaceError):
    default_code = "ALREADY_INSTALLED"
    default_status = 409


class NoVersionAvailableError(MarketplaceError):
    default_code = "NO_VERSION_AVAILABLE"
    default_status = 404


class NoUpdateAvailableError(MarketplaceError):
    default_code = "NO_UPDATE_AVAILABLE"
    default_status = 409


class IncompatibleVersionError(MarketplaceError):
    default_code = "INCOMPATIBLE_VERSION"
    default_status = 422

    def __init__(self, message: str, issues: Optional[List[str]] = None):
        super().__init__(message, details={"issues": list(issues or [])})

    @property
    def issues(self) -> List[str]:
        return list(self.details.get("issues", []))


class RequirementsNotMetError(IncompatibleVersionError):
    default_code = "REQUIREMENTS_NOT_MET"


class LicenseRequiredError(MarketplaceError):
    default_code = "LICENSE_REQUIRED"
    default_status = 402


class KeyInUseError(MarketplaceError):
    default_code = "KEY_IN_USE"
    default_status = 409


class RemoteRejectedError(MarketplaceError):
    default_code = "REMOTE_REJECTED"
    default_status = 422


class RemoteUnreachableError(MarketplaceError):
    default_code = "REMOTE_UNREACHABLE"
    default_status = 503


class PackageVerificationFailedError(MarketplaceError):
    default_code = "PACKAGE_VERIFICATION_FAILED"
    default_status = 422


class DependentsExistError(MarketplaceError):
    default_code = "DEPENDENTS_EXIST"
    default_status = 409

    def __init__(self, slug: str, dependents: List[str]):
        super().__init__(
            f"Cannot deactivate {slug}: required by {', '.join(sorted(dependents))}",
            details={"dependents": sorted(dependents)},
        )


class HookFailedError(MarketplaceError):
    default_code = "HOOK_FAILED"
    default_status = 500

    def __init__(self, hook: str, slug: str, reason: str):
        super().__init__(
            f"Hook '{hook}' failed for {slug}: {reason}",
            details={"hook": hook, "slug": slug},
        )


class MigrationFailedError(MarketplaceError):
    default_code = "MIGRATION_FAILED"
    default_status = 500


class OperationCancelledError(MarketplaceError):
    default_code = "CANCELLED"
    default_status = 499


class StepTimeoutError(MarketplaceError):
    default_code = "TIMEOUT"
    default_status = 504
