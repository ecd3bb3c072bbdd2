"""Slow salted hashing for account passwords and generated root secrets."""

import uuid

import bcrypt


def hash_secret(secret: str, rounds: int) -> str:
    """Return the bcrypt hash of ``secret`` with the given cost factor."""
    return bcrypt.hashpw(secret.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_secret(secret: str, secret_hash: str) -> bool:
    """Check ``secret`` against a bcrypt hash."""
    try:
        return bcrypt.checkpw(secret.encode("utf-8"), secret_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash (not produced by hash_secret)
        return False


def generate_secret(rounds: int) -> str:
    """
    Generate a random secret.
    
    A fresh uuid4 (drawn from the OS random source) is fed through bcrypt,
    so the result is a 60-character string with a random salt on top of
    the random identifier.
    """
    return hash_secret(str(uuid.uuid4()), rounds)
