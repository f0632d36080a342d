# tekitoi/utils/security.py
import base64
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidKey
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

logger = logging.getLogger(__name__)

SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1
SCRYPT_SALT_BYTES = 16
SCRYPT_KEY_BYTES = 32


def _b64encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).rstrip(b"=").decode("ascii")


def _b64decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def hash_password(password: str) -> str:
    """
    Derive a salted scrypt hash of password.

    Returns:
        A self-describing string: scrypt$<n>$<r>$<p>$<salt>$<hash>
    """
    salt = os.urandom(SCRYPT_SALT_BYTES)
    kdf = Scrypt(salt=salt, length=SCRYPT_KEY_BYTES, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    derived = kdf.derive(password.encode("utf-8"))
    return f"scrypt${SCRYPT_N}${SCRYPT_R}${SCRYPT_P}${_b64encode(salt)}${_b64encode(derived)}"


def verify_password(password: str, password_hash: str) -> bool:
    """Constant-time check of password against a hash produced by hash_password."""
    try:
        scheme, n, r, p, salt, expected = password_hash.split("$")
        if scheme != "scrypt":
            raise ValueError(f"unknown scheme '{scheme}'")
        expected_bytes = _b64decode(expected)
        kdf = Scrypt(
            salt=_b64decode(salt),
            length=len(expected_bytes),
            n=int(n),
            r=int(r),
            p=int(p),
        )
    except ValueError as e:
        logger.error(f"Malformed password hash in dataset: {e}")
        return False
    try:
        kdf.verify(password.encode("utf-8"), expected_bytes)
    except InvalidKey:
        return False
    return True


# Verified against when the login is unknown, so both failure paths cost one scrypt run
DUMMY_PASSWORD_HASH = hash_password("tekitoi-dummy-password")


def generate_fernet_key() -> str:
    """Generates a new Fernet key and returns it as a string."""
    return Fernet.generate_key().decode('utf-8')


class FernetEncryptor:
    """Encrypts upstream access tokens before they are written to the correlation store."""

    def __init__(self, encryption_key: str):
        """
        Args:
            encryption_key: Base64-encoded Fernet key string

        Raises:
            ValueError: If the key does not decode to 32 bytes
        """
        self.fernet_instance = Fernet(encryption_key.encode('utf-8'))
        logger.info("FernetEncryptor initialized.")

    def encrypt(self, data: str) -> str:
        return self.fernet_instance.encrypt(data.encode('utf-8')).decode('utf-8')

    def decrypt(self, encrypted_data: str) -> Optional[str]:
        """Returns None when the payload was not produced with this key."""
        try:
            return self.fernet_instance.decrypt(encrypted_data.encode('utf-8')).decode('utf-8')
        except InvalidToken:
            logger.error("Failed to decrypt stored upstream token: invalid token or key.")
            return None
