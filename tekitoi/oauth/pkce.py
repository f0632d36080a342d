# tekitoi/oauth/pkce.py
import secrets
import string
import hashlib
import hmac
import base64
from typing import Tuple

# RFC 7636 bounds verifiers to 43..128 characters
CODE_VERIFIER_LENGTH = 64
SUPPORTED_CODE_CHALLENGE_METHODS = ("S256", "plain")

ALPHANUMERIC = string.ascii_letters + string.digits

# Opaque value lengths, in characters
AUTHORIZATION_CODE_LENGTH = 24
ACCESS_TOKEN_LENGTH = 42
CSRF_TOKEN_LENGTH = 32

# Unreserved URL characters of RFC 7636 - Section 4.1, without its 43 character minimum
PKCE_VALUE_PATTERN = r"^[A-Za-z0-9\-._~]{1,128}$"


def generate_pkce_code_verifier(length: int = CODE_VERIFIER_LENGTH) -> str:
    """
    Random PKCE code verifier made of unreserved URL characters, used for
    the broker's own hop to upstream providers. (RFC 7636 - Section 4.1)
    """
    if not (43 <= length <= 128):
        raise ValueError("PKCE code verifier length must be between 43 and 128 characters.")

    # token_urlsafe yields ~4/3 chars per byte, so ask for enough bytes and truncate
    verifier = secrets.token_urlsafe(length)
    return verifier[:length]


def generate_pkce_code_challenge(code_verifier: str, method: str = "S256") -> str:
    """
    Derive the code challenge sent alongside a verifier.

    Raises:
        ValueError: For a method other than "S256" or "plain" (RFC 7636 - Section 4.2)
    """
    if method == "S256":
        hashed_verifier = hashlib.sha256(code_verifier.encode('ascii')).digest()
        return base64.urlsafe_b64encode(hashed_verifier).rstrip(b'=').decode('ascii')
    elif method == "plain":
        return code_verifier
    else:
        raise ValueError(f"Unsupported PKCE code challenge method: {method}. Must be 'S256' or 'plain'.")


def generate_challenge_pair(method: str = "S256") -> Tuple[str, str]:
    """Returns a fresh (challenge, verifier) pair for the given method."""
    verifier = generate_pkce_code_verifier()
    return generate_pkce_code_challenge(verifier, method), verifier


def verify_pkce(method: str, stored_challenge: str, code_verifier: str) -> bool:
    """
    Recomputes the challenge from code_verifier and compares it with the
    stored one in constant time. Unknown methods and non-ASCII verifiers
    never verify.
    """
    if method not in SUPPORTED_CODE_CHALLENGE_METHODS:
        return False
    try:
        expected = generate_pkce_code_challenge(code_verifier, method)
        return hmac.compare_digest(expected.encode('ascii'), stored_challenge.encode('ascii'))
    except UnicodeEncodeError:
        return False


def generate_opaque_token(length: int = AUTHORIZATION_CODE_LENGTH) -> str:
    """Alphanumeric random string used for codes, CSRF tokens and access tokens."""
    if length < 24:
        raise ValueError("Opaque tokens must be at least 24 characters long.")
    return ''.join(secrets.choice(ALPHANUMERIC) for _ in range(length))
