"""
Secret hashing for passwords and transfer PINs

Secrets are stored as ``<salt>$<scrypt hex digest>`` and never kept in
clear text. Verification recomputes the digest and compares in constant time.
"""

import hashlib
import hmac
import secrets


SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1
SEPARATOR = "$"


def _generate_salt() -> str:
    """Generate random salt for secret hashing"""
    return secrets.token_hex(16)


def _scrypt(plain: str, salt: str) -> str:
    return hashlib.scrypt(
        plain.encode(),
        salt=salt.encode(),
        n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P
    ).hex()


def hash_secret(plain: str) -> str:
    """Hash a password or PIN with a fresh salt"""
    salt = _generate_salt()
    return f"{salt}{SEPARATOR}{_scrypt(plain, salt)}"


def verify_secret(plain: str, hashed: str) -> bool:
    """Check a clear-text secret against a stored hash"""
    if not plain or not hashed or SEPARATOR not in hashed:
        return False
    salt, expected = hashed.split(SEPARATOR, 1)
    return hmac.compare_digest(_scrypt(plain, salt), expected)


def generate_token_id() -> str:
    """Random identifier for an issued auth token"""
    return secrets.token_urlsafe(24)
