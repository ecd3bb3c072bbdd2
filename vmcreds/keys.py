"""OpenSSH public key parsing, fingerprinting and key-pair generation."""

import base64
import hashlib
import io
import logging
from typing import Optional, Tuple

import paramiko

from .errors import ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_KEY_TYPES = ("rsa", "ecdsa")


def load_public_key(content: str) -> paramiko.PublicBlob:
    """
    Parse an OpenSSH public key line (``<type> <base64> [comment]``).
    
    Raises:
        ValidationError: if the content is not a well-formed public key
    """
    try:
        return paramiko.PublicBlob.from_string(content.strip())
    except (ValueError, paramiko.SSHException) as e:
        raise ValidationError(f"Malformed SSH public key: {e}") from e


def get_key_fingerprint(content: str) -> str:
    """Calculate the SHA256 fingerprint of an OpenSSH public key."""
    blob = load_public_key(content)
    
    sha256_hash = hashlib.sha256(blob.key_blob).digest()
    
    # Format as SSH fingerprint (SHA256:base64)
    return "SHA256:" + base64.b64encode(sha256_hash).decode().rstrip('=')


def try_key_fingerprint(content: Optional[str]) -> Optional[str]:
    """Fingerprint for OpenSSH key content, None for other blobs (e.g. PEM)."""
    if not content:
        return None
    try:
        return get_key_fingerprint(content)
    except ValidationError:
        return None


def generate_key_pair(key_type: str = 'rsa', key_size: int = 2048,
                      comment: str = "") -> Tuple[str, str]:
    """
    Generate an SSH key pair.
    
    Args:
        key_type: 'rsa' or 'ecdsa'
        key_size: Key size in bits (RSA only)
        comment: Comment appended to the public key line
    
    Returns:
        Tuple of (private_key_pem, public_key_line)
    """
    key_type = key_type.lower()
    if key_type == 'rsa':
        key = paramiko.RSAKey.generate(key_size)
    elif key_type == 'ecdsa':
        key = paramiko.ECDSAKey.generate()
    else:
        raise ValidationError(f"Unsupported key type: {key_type}")
    
    private_key = io.StringIO()
    key.write_private_key(private_key)
    
    public_key = f"{key.get_name()} {key.get_base64()}"
    if comment:
        public_key = f"{public_key} {comment}"
    
    logger.debug(f"Generated {key_type.upper()} key pair")
    return private_key.getvalue(), public_key
