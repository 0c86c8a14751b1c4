"""
API key authentication for the retention admin API.

Provides key generation, hashing, verification, and a FastAPI dependency
for protecting the admin endpoints. Auth is only enforced when
API_REQUIRE_AUTH=true; loopback requests are always allowed so an
operator on the host can trigger runs without a key.

The server never stores the raw key, only its SHA-256 digest
(API_ADMIN_KEY_HASH).
"""

import hashlib
import hmac
import ipaddress
import logging
import secrets
from typing import Optional

from fastapi import Request, Security
from fastapi.security import APIKeyHeader

from errors import ErrorCode, raise_api_error

logger = logging.getLogger(__name__)

# Key format constants
KEY_PREFIX = "ret_sk_"
KEY_RANDOM_BYTES = 32

# FastAPI security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Loopback addresses (auth bypass)
LOOPBACK_ADDRS = {"127.0.0.1", "::1", "localhost"}


# ---------------------------------------------------------------------------
# Key generation and hashing
# ---------------------------------------------------------------------------


def generate_api_key() -> tuple[str, str]:
    """Generate a new API key.

    Returns:
        Tuple of (full_key, key_hash).
        full_key is shown to the operator once; key_hash goes into
        API_ADMIN_KEY_HASH.
    """
    full_key = f"{KEY_PREFIX}{secrets.token_hex(KEY_RANDOM_BYTES)}"
    return full_key, hash_api_key(full_key)


def hash_api_key(key: str) -> str:
    """Compute the hex SHA-256 hash of an API key."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def verify_api_key(key: str, stored_hash: str) -> bool:
    """Verify an API key against its stored hash (constant-time)."""
    return hmac.compare_digest(hash_api_key(key), stored_hash.lower())


def get_key_prefix(key: str) -> str:
    """Return the first 12 characters of a key, safe to log."""
    return key[:12]


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def is_loopback_request(request: Request) -> bool:
    """Check if the request originates from a loopback address."""
    client_host = request.client.host if request.client else None
    if not client_host:
        return False

    if client_host in LOOPBACK_ADDRS:
        return True

    try:
        return ipaddress.ip_address(client_host).is_loopback
    except ValueError:
        return False


def is_auth_required(request: Request) -> bool:
    """Auth is required when API_REQUIRE_AUTH=true, except for loopback requests."""
    from config import get_config
    if not get_config().api.require_auth:
        return False
    return not is_loopback_request(request)


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------


async def require_api_key(
    request: Request,
    api_key: Optional[str] = Security(api_key_header),
) -> Optional[str]:
    """FastAPI dependency that enforces API key auth when required.

    - If auth is not required, returns None.
    - If auth is required and the key matches, returns the key prefix.
    - Otherwise raises 401 (AUTH_2001 missing key, AUTH_2003 bad key).
    """
    if not is_auth_required(request):
        return None

    if not api_key:
        raise_api_error(ErrorCode.UNAUTHORIZED, message="API key required. Include X-API-Key header.")

    if not api_key.startswith(KEY_PREFIX):
        raise_api_error(ErrorCode.INVALID_API_KEY, message="Invalid API key format.")

    from config import get_config
    stored_hash = get_config().api.admin_key_hash
    if not stored_hash:
        logger.error("API_REQUIRE_AUTH is set but API_ADMIN_KEY_HASH is empty; denying request")
        raise_api_error(ErrorCode.INVALID_API_KEY, message="Invalid or revoked API key.")

    if not verify_api_key(api_key, stored_hash):
        raise_api_error(ErrorCode.INVALID_API_KEY, message="Invalid or revoked API key.")

    return get_key_prefix(api_key)
