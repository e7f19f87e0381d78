"""Exception hierarchy for remote sync and backup operations.

Exception Hierarchy:
    OkrSyncError (base)
    ├── AuthenticationError - rejected credentials (git host, REST API, proxy-less S3)
    ├── RepositoryNotFoundError - remote repository missing or not visible
    ├── NetworkError (retryable) - reset / timeout / DNS / unreachable
    ├── ConfigurationError - engine used before initialization or invalid settings
    ├── EncryptionKeyUnavailable - no usable key for an encrypted backup
    ├── ProxyConnectError - upstream proxy refused / unresolved / timeout / auth
    ├── StorageConnectionError - object store access problems
    ├── BackupIntegrityError - checksum of downloaded bytes does not match
    └── GenericOperationError - anything unclassified, with operation context

Usage:
    from okr_sync.exceptions import NetworkError, NetworkFailureKind

    raise NetworkError("Push timed out", kind=NetworkFailureKind.TIMEOUT, attempt=2)
"""

from enum import Enum
from typing import Any, Optional


class NetworkFailureKind(str, Enum):
    """Sub-classification of transient network failures."""
    RESET = "reset"
    TIMEOUT = "timeout"
    DNS = "dns"
    UNREACHABLE = "unreachable"


class ProxyFailureKind(str, Enum):
    """Outcome categories of a proxy connectivity probe."""
    REFUSED = "refused"
    UNRESOLVED = "unresolved"
    TIMEOUT = "timeout"
    AUTHENTICATION = "authentication"
    GENERIC = "generic"


class StorageFailureKind(str, Enum):
    """Categories of object store connection failures."""
    ACCESS_DENIED = "access_denied"
    BUCKET_MISSING = "bucket_missing"
    INVALID_CREDENTIALS = "invalid_credentials"
    SIGNATURE_MISMATCH = "signature_mismatch"
    GENERIC = "generic"


class OkrSyncError(Exception):
    """Base exception for all okr_sync errors.

    Attributes:
        message: Human-readable error description
        context: Additional context about the error (operation, key, attempt...)
        retryable: Whether this error might succeed on retry
    """

    def __init__(self, message: str, *, retryable: bool = False, **context: Any) -> None:
        self.message = message
        self.context = context
        self.retryable = retryable
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the error message with context."""
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


class AuthenticationError(OkrSyncError):
    """Credentials were rejected by the remote."""

    def __init__(self, message: str = "Authentication failed, check the token or username/password", **context: Any) -> None:
        super().__init__(message, **context)


class RepositoryNotFoundError(OkrSyncError):
    """The remote repository does not exist or is not visible to these credentials."""

    def __init__(self, message: str = "Repository not found, check the repository address", **context: Any) -> None:
        super().__init__(message, **context)


class NetworkError(OkrSyncError):
    """A transient network failure - retryable."""

    def __init__(
        self,
        message: str = "Network connection failed",
        *,
        kind: NetworkFailureKind = NetworkFailureKind.UNREACHABLE,
        **context: Any,
    ) -> None:
        self.kind = kind
        context["kind"] = kind.value
        super().__init__(message, retryable=True, **context)


class ConfigurationError(OkrSyncError):
    """Configuration problem or engine used before initialization."""

    def __init__(self, message: str = "Configuration error", *, setting: Optional[str] = None, **context: Any) -> None:
        if setting:
            context["setting"] = setting
        super().__init__(message, **context)


class EncryptionKeyUnavailable(OkrSyncError):
    """No key is available to encrypt or decrypt a backup."""

    def __init__(self, message: str = "Encryption key unavailable, configure a backup passphrase", **context: Any) -> None:
        super().__init__(message, **context)


class ProxyConnectError(OkrSyncError):
    """The upstream proxy could not be used."""

    def __init__(
        self,
        message: str = "Proxy connection failed",
        *,
        kind: ProxyFailureKind = ProxyFailureKind.GENERIC,
        **context: Any,
    ) -> None:
        self.kind = kind
        context["kind"] = kind.value
        super().__init__(message, **context)


class StorageConnectionError(OkrSyncError):
    """The object store rejected or could not serve a request."""

    def __init__(
        self,
        message: str = "Object storage connection failed",
        *,
        kind: StorageFailureKind = StorageFailureKind.GENERIC,
        **context: Any,
    ) -> None:
        self.kind = kind
        context["kind"] = kind.value
        super().__init__(message, **context)


class BackupIntegrityError(OkrSyncError):
    """Downloaded backup bytes do not match the recorded checksum."""

    def __init__(self, message: str = "Backup checksum mismatch", *, key: Optional[str] = None, **context: Any) -> None:
        if key:
            context["key"] = key
        super().__init__(message, **context)


class GenericOperationError(OkrSyncError):
    """Wraps an unclassified underlying failure with operation context."""

    def __init__(self, message: str, *, operation: Optional[str] = None, **context: Any) -> None:
        if operation:
            context["operation"] = operation
        super().__init__(message, **context)
