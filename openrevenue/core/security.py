"""
Security Module
===============

Credential handling:
- API key extraction from request headers
- HTTP Basic verification for the admin surface
- API key generation and digests (cache keys never hold raw keys)
- Service-account assertion signing (RS256 JWT) for store APIs
"""

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from typing import Any, Optional

from jose import jwt

API_KEY_PREFIX = "or_"


def parse_api_key(
    authorization: Optional[str],
    x_api_key: Optional[str],
) -> Optional[str]:
    """
    Extract the API key from request headers.

    ``Authorization: Bearer <key>`` wins over ``X-API-Key``.  Empty
    values count as absent.

    Args:
        authorization: Raw Authorization header value
        x_api_key: Raw X-API-Key header value

    Returns:
        The key, or None if no usable key was sent
    """
    if authorization:
        scheme, _, value = authorization.strip().partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()

    if x_api_key and x_api_key.strip():
        return x_api_key.strip()

    return None


def verify_basic_auth(
    authorization: Optional[str],
    username: str,
    password: str,
) -> bool:
    """
    Check an ``Authorization: Basic ...`` header against expected credentials.

    Comparison is constant-time.  Malformed headers never match.
    """
    if not authorization:
        return False

    scheme, _, encoded = authorization.strip().partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return False

    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False

    given_user, sep, given_password = decoded.partition(":")
    if not sep:
        return False

    user_ok = hmac.compare_digest(given_user.encode(), username.encode())
    password_ok = hmac.compare_digest(given_password.encode(), password.encode())
    return user_ok and password_ok


def generate_api_key() -> str:
    """Generate a new tenant API key."""
    return f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"


def api_key_digest(api_key: str) -> str:
    """SHA-256 hex digest of an API key."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def create_service_account_assertion(
    service_account: dict[str, Any],
    scope: str,
    audience: str,
    ttl_seconds: int,
    issued_at: Optional[int] = None,
) -> str:
    """
    Sign a JWT-bearer assertion for a Google-style service account.

    Args:
        service_account: Parsed credentials with ``client_email`` and
            ``private_key`` (PEM), optionally ``private_key_id``
        scope: Space-separated scopes requested
        audience: Token endpoint the assertion is presented to
        ttl_seconds: Assertion lifetime
        issued_at: Epoch seconds (defaults to now)

    Returns:
        Encoded RS256 JWT

    Raises:
        jose.exceptions.JOSEError: If the key cannot sign
    """
    iat = issued_at if issued_at is not None else int(time.time())
    claims = {
        "iss": service_account["client_email"],
        "scope": scope,
        "aud": audience,
        "iat": iat,
        "exp": iat + ttl_seconds,
    }
    headers = None
    if service_account.get("private_key_id"):
        headers = {"kid": service_account["private_key_id"]}

    return jwt.encode(
        claims,
        service_account["private_key"],
        algorithm="RS256",
        headers=headers,
    )
