"""
Error taxonomy for VM credential operations.

Every failure surfaced to a caller is one of the classes below. Each error
carries a machine-readable code and structured details; details never
contain secrets or key material, so errors are safe to log.

Hierarchy:
- CredentialError
  - ConnectivityError (HostUnreachableError, DeadlineExceeded)
  - NotFoundError (HostResolutionError)
  - ConflictError
  - ValidationError
  - MetadataRetrievalError (MetadataRetrievalTimeout)
  - SigningError
  - InstallationError
"""

from typing import Any, Dict, Optional


class CredentialError(Exception):
    """Base exception for all credential subsystem errors."""

    code = "VMCREDS_INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConnectivityError(CredentialError):
    """Host or network unreachable, or the call ran out of time."""

    code = "VMCREDS_CONNECTIVITY"


class HostUnreachableError(ConnectivityError):
    """Raised when the control plane cannot reach the VM's host system."""

    code = "VMCREDS_HOST_UNREACHABLE"


class DeadlineExceeded(ConnectivityError):
    """Raised when a control-plane call does not finish before its deadline."""

    code = "VMCREDS_DEADLINE_EXCEEDED"

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            f"{operation} did not complete within {timeout:g}s",
            details={"operation": operation, "timeout": timeout},
        )
        self.operation = operation
        self.timeout = timeout


class NotFoundError(CredentialError):
    """VM, host system, certificate or repository row missing."""

    code = "VMCREDS_NOT_FOUND"


class HostResolutionError(NotFoundError):
    """Raised when the host system of a VM cannot be resolved."""

    code = "VMCREDS_HOST_NOT_RESOLVED"


class ConflictError(CredentialError):
    """Unique-constraint violation that was not resolved automatically."""

    code = "VMCREDS_CONFLICT"


class ValidationError(CredentialError):
    """Malformed credential material or an illegal update."""

    code = "VMCREDS_VALIDATION"


class MetadataRetrievalError(CredentialError):
    """Raised when the VM attribute fetch fails."""

    code = "VMCREDS_METADATA_RETRIEVAL"


class MetadataRetrievalTimeout(MetadataRetrievalError, DeadlineExceeded):
    """Attribute fetch that ran out of time."""

    code = "VMCREDS_METADATA_TIMEOUT"


class SigningError(CredentialError):
    """Raised when the host certificate authority rejects a signing request."""

    code = "VMCREDS_SIGNING_FAILED"


class InstallationError(CredentialError):
    """Raised when the host refuses to install a certificate."""

    code = "VMCREDS_INSTALLATION_FAILED"
