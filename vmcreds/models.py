"""Data models for the VM credential manager."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .errors import ValidationError


@dataclass
class Customer:
    """Represents a customer account in the database."""

    id: Optional[int] = None
    username: str = ""
    email: str = ""
    password_hash: str = ""

    def __post_init__(self):
        """Validate the customer data."""
        if not self.username:
            raise ValidationError("Username is required")
        if not self.email or "@" not in self.email:
            raise ValidationError("Valid email is required")
        if not self.password_hash:
            raise ValidationError("Password hash is required")


@dataclass
class VirtualMachine:
    """Represents a customer-owned virtual machine."""

    id: Optional[int] = None
    owner_id: int = 0
    name: str = ""
    item_path: str = ""
    ip_address: str = ""
    credential_strategy: Optional[str] = None
    root_password_hash: Optional[str] = None

    # Set at creation, never updated afterwards
    WRITE_ONCE_FIELDS = ("owner_id", "item_path", "ip_address")

    def __post_init__(self):
        """Validate the virtual machine data."""
        if not self.owner_id:
            raise ValidationError("Owner id is required")
        if not self.name:
            raise ValidationError("Virtual machine name is required")
        if not self.item_path:
            raise ValidationError("Item path is required")
        if not self.ip_address:
            raise ValidationError("IP address is required")


@dataclass
class SSHPublicKey:
    """Represents the single key row attached to a virtual machine."""

    id: Optional[int] = None
    key: str = ""
    filename: str = ""
    virtual_machine_id: int = 0

    def __post_init__(self):
        """Validate the SSH key data."""
        if isinstance(self.key, bytes):
            try:
                self.key = self.key.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ValidationError("Key content must be UTF-8 text") from e
        if not self.key:
            raise ValidationError("Key content is required")
        if not self.filename:
            raise ValidationError("Filename is required")
        if not self.virtual_machine_id:
            raise ValidationError("Virtual machine id is required")


@dataclass
class AuditEvent:
    """Represents a credential event for the audit log."""

    level: str  # 'debug', 'info', 'error'
    message: str
    fields: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[str] = None


@dataclass
class CertificateCredentials:
    """Signed-certificate blob produced for a virtual machine."""

    content: bytes
    filename: str
    distinguished_name: str = ""

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


@dataclass
class CertificateInfo:
    """Certificate currently installed on a host system."""

    subject: str
    issuer: str = ""
    not_before: Optional[str] = None
    not_after: Optional[str] = None
    status: str = "good"
    filename: Optional[str] = None


@dataclass
class RootCredentials:
    """Root username/password pair for a virtual machine.

    ``password`` is the plaintext secret handed to the caller exactly once;
    only ``password_hash`` is ever persisted.
    """

    username: str
    password: str = field(repr=False)
    password_hash: str = field(repr=False)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StoredCredentialReference:
    """Persisted credential material known for a virtual machine."""

    virtual_machine_id: int
    strategy: Optional[str] = None
    filename: Optional[str] = None
    key: Optional[str] = None
    fingerprint: Optional[str] = None
    has_root_password: bool = False
