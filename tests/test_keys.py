"""SSH key parsing, fingerprints and key-pair generation."""

import base64
import hashlib

import pytest

from vmcreds.errors import ValidationError
from vmcreds.keys import generate_key_pair, get_key_fingerprint, load_public_key, try_key_fingerprint


def test_generate_rsa_key_pair():
    private_key, public_key = generate_key_pair('rsa', 2048, comment="web-1")

    assert "PRIVATE KEY" in private_key
    assert public_key.startswith("ssh-rsa ")
    assert public_key.endswith(" web-1")
    assert load_public_key(public_key).comment == "web-1"


def test_fingerprint_matches_openssh_format():
    _, public_key = generate_key_pair('ecdsa')
    blob = base64.b64decode(public_key.split()[1])
    expected = "SHA256:" + base64.b64encode(hashlib.sha256(blob).digest()).decode().rstrip('=')

    assert get_key_fingerprint(public_key) == expected


@pytest.mark.parametrize("content", ["", "ssh-rsa", "ssh-rsa not-base64!!", "ssh-ed25519 c3NoLXJzYQ=="])
def test_malformed_public_keys(content):
    with pytest.raises(ValidationError):
        load_public_key(content)


def test_try_key_fingerprint_ignores_certificates():
    pem = "-----BEGIN CERTIFICATE REQUEST-----\nAAAA\n-----END CERTIFICATE REQUEST-----\n"

    assert try_key_fingerprint(pem) is None
    assert try_key_fingerprint(None) is None


def test_unsupported_key_type():
    with pytest.raises(ValidationError):
        generate_key_pair('dss')
