# tekitoi/utils/__init__.py

"""
Security helpers: salted password hashing for local credentials and
Fernet encryption of upstream tokens at rest.
"""

from .security import FernetEncryptor, generate_fernet_key, hash_password, verify_password

__all__ = ["FernetEncryptor", "generate_fernet_key", "hash_password", "verify_password"]
