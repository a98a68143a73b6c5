from plugmarket.exceptions.handlers import (
    AlreadyInstalledError,
    ConfigurationError,
    DependentsExistError,
    HookFailedError,
    IncompatibleVersionError,
    InvalidStateError,
    KeyInUseError,
    LicenseRequiredError,
    MarketplaceError,
    MigrationFailedError,
    NoUpdateAvailableError,
    NoVersionAvailableError,
    OperationCancelledError,
    PackageVerificationFailedError,
    RemoteRejectedError,
    RemoteUnreachableError,
    RequirementsNotMetError,
    StepTimeoutError,
    ValidationError,
)

__all__ = [
    "MarketplaceError",
    "ValidationError",
    "ConfigurationError",
    "InvalidStateError",
    "AlreadyInstalledError",
    "NoVersionAvailableError",
    "NoUpdateAvailableError",
    "IncompatibleVersionError",
    "RequirementsNotMetError",
    "LicenseRequiredError",
    "KeyInUseError",
    "RemoteRejectedError",
    "RemoteUnreachableError",
    "PackageVerificationFailedError",
    "DependentsExistError",
    "HookFailedError",
    "MigrationFailedError",
    "OperationCancelledError",
    "StepTimeoutError",
]
