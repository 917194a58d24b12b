"""
Exception hierarchy for tenantvault.

All tenantvault exceptions inherit from VaultError, allowing callers to catch
every store-specific exception with a single except clause.

Exception Categories:
    - StorageError: Engine lifecycle and CRUD failures (open, readiness,
      validation, not-found, audit, unrecoverable repair)
    - CodecError: Encryption and decryption failures
    - ConfigError: Invalid or incomplete configuration

Design Principles:
    - All errors have error codes for programmatic handling
    - Storage errors carry the collection, record id and action involved
    - Raw sqlite3 and cryptography exceptions never escape the engine
    - Errors are both human-readable and machine-parseable
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Lifecycle errors: 1xxx
ERROR_OPEN_FAILED = 1001
ERROR_NOT_READY = 1002
ERROR_UNRECOVERABLE = 1003
ERROR_INCOMPATIBLE_STORE = 1004

# Record errors: 2xxx
ERROR_VALIDATION = 2001
ERROR_UNIQUE_VIOLATION = 2002
ERROR_UNKNOWN_COLLECTION = 2003
ERROR_CROSS_TENANT_WRITE = 2004
ERROR_NOT_FOUND = 2005

# Codec errors: 3xxx
ERROR_CODEC_AUTHENTICATION = 3001
ERROR_CODEC_ENCRYPTION = 3002
ERROR_CODEC_MALFORMED = 3003

# Audit errors: 4xxx
ERROR_AUDIT_APPEND = 4001

# Storage errors: 5xxx
ERROR_STORAGE_CONNECTION = 5001
ERROR_STORAGE_WRITE = 5002
ERROR_STORAGE_READ = 5003
ERROR_STORAGE_STRUCTURE = 5004

# Config errors: 6xxx
ERROR_CONFIG = 6001


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class VaultError(Exception):
    """
    Base exception for all tenantvault errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(VaultError):
    """
    Base class for storage engine errors.

    Attributes:
        collection: Collection the operation targeted (if any)
        record_id: Record the operation targeted (if any)
        action: The operation that failed (e.g., "create", "open")
    """

    collection: str | None = None
    record_id: int | None = None
    action: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context.update({
            "collection": self.collection,
            "record_id": self.record_id,
            "action": self.action,
        })


@dataclass
class OpenError(StorageError):
    """Raised when the backing store cannot be opened."""

    db_path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to open store: {self.db_path}"
        if self.code == 0:
            self.code = ERROR_OPEN_FAILED
        if not self.action:
            self.action = "open"
        super().__post_init__()
        self.context["db_path"] = self.db_path


@dataclass
class NotReadyError(StorageError):
    """Raised when an operation is issued before open() has completed."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Store is not open; cannot {self.action or 'operate'}"
        if self.code == 0:
            self.code = ERROR_NOT_READY
        if not self.suggestion:
            self.suggestion = "Await engine.open() before issuing operations"
        super().__post_init__()


@dataclass
class ValidationError(StorageError):
    """Raised when a write violates a constraint."""

    field_name: str | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Validation failed for {self.collection}"
        if self.code == 0:
            self.code = ERROR_VALIDATION
        super().__post_init__()
        self.context["field"] = self.field_name


@dataclass
class NotFoundError(StorageError):
    """
    Raised when a record is absent or not visible to the caller.

    The two cases are deliberately indistinguishable.
    """

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Record not found: {self.collection}/{self.record_id}"
        if self.code == 0:
            self.code = ERROR_NOT_FOUND
        super().__post_init__()


@dataclass
class AuditError(StorageError):
    """Raised when an audit entry cannot be appended. The mutation is rolled back."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Audit append failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_AUDIT_APPEND
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class UnrecoverableError(StorageError):
    """Raised when self-healing fails twice in a row."""

    attempts: int = 0
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Store could not be repaired after {self.attempts} attempt(s): "
                f"{self.underlying_error}"
            )
        if self.code == 0:
            self.code = ERROR_UNRECOVERABLE
        if not self.suggestion:
            self.suggestion = "Restore the store from a snapshot taken with backup()"
        super().__post_init__()
        self.context.update({
            "attempts": self.attempts,
            "underlying_error": self.underlying_error,
        })


@dataclass
class StorageConnectionError(StorageError):
    """Raised when the store file cannot be reached (missing device, locked file)."""

    db_path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Store file unreachable: {self.db_path}"
        if self.code == 0:
            self.code = ERROR_STORAGE_CONNECTION
        if not self.suggestion:
            self.suggestion = "Check that the store directory exists and the file is not locked by another process"
        super().__post_init__()
        self.context["db_path"] = self.db_path


@dataclass
class StorageWriteError(StorageError):
    """Raised when SQLite rejects a write for reasons other than a constraint."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Store write rejected: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StorageReadError(StorageError):
    """Raised when a row or metadata read fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Store read failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StructuralFaultError(StorageError):
    """Raised when a table or index column the schema expects is missing."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Store structure is damaged: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_STRUCTURE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


# =============================================================================
# Codec Errors
# =============================================================================


@dataclass
class CodecError(VaultError):
    """Base class for encryption codec errors."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if self.code == 0:
            self.code = ERROR_CODEC_ENCRYPTION


@dataclass
class AuthenticationError(CodecError):
    """
    Raised when a ciphertext fails its authentication tag check.

    Either the passphrase is wrong or the blob was tampered with. No
    plaintext is ever returned in this case.
    """

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = "Ciphertext failed authentication"
        if self.code == 0:
            self.code = ERROR_CODEC_AUTHENTICATION
        if not self.suggestion:
            self.suggestion = "Check the store passphrase; the payload may have been tampered with"
        super().__post_init__()


@dataclass
class EncryptionError(CodecError):
    """Raised when a payload cannot be encrypted."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Encryption failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_CODEC_ENCRYPTION
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class MalformedCiphertextError(CodecError):
    """Raised when a blob is not valid base64 or is too short to hold salt and nonce."""

    length: int = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Malformed ciphertext ({self.length} bytes)"
        if self.code == 0:
            self.code = ERROR_CODEC_MALFORMED
        super().__post_init__()
        self.context["length"] = self.length


# =============================================================================
# Config Errors
# =============================================================================


@dataclass
class ConfigError(VaultError):
    """Raised when configuration is invalid or key material is missing."""

    setting: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid configuration: {self.setting}"
        if self.code == 0:
            self.code = ERROR_CONFIG
        self.context["setting"] = self.setting
