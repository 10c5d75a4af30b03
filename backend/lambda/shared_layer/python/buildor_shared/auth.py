"""buildor_shared.auth: Cognito JWT authentication for the Buildor API Lambdas.

Reads ``buildor_id_token`` from the Cookie header or the API Gateway v2
cookies array and validates it as an RS256 JWT against the Cognito User
Pool JWKS. Trusted callers (CI, smoke tests) may instead present an internal
API key in the ``X-Buildor-Internal-Key`` header.

Requires environment variables:
    COGNITO_USER_POOL_ID   e.g. us-west-2_AbCdEf123
    COGNITO_CLIENT_ID      app client id used as the token audience

Optional:
    BUILDOR_INTERNAL_API_KEY            enables internal key auth
    BUILDOR_INTERNAL_API_KEY_PREVIOUS   rollover key accepted during rotation
    BUILDOR_INTERNAL_API_KEYS           comma-separated allowlist
"""

from __future__ import annotations

import json
import logging
import os
import time
import urllib.request
from typing import Any, Callable, Dict, List, Optional, Tuple

import jwt
from jwt.algorithms import RSAAlgorithm

from buildor_shared.http_utils import _error

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "buildor_id_token"
INTERNAL_KEY_HEADER = "x-buildor-internal-key"


def _normalize_api_keys(*raw_values: str) -> Tuple[str, ...]:
    """Return deduplicated, non-empty key values from scalar/csv env sources."""
    keys: List[str] = []
    for raw in raw_values:
        for part in str(raw or "").split(","):
            key = part.strip()
            if key and key not in keys:
                keys.append(key)
    return tuple(keys)


# ---------------------------------------------------------------------------
# Configuration (read from env; tests override the module globals)
# ---------------------------------------------------------------------------

COGNITO_USER_POOL_ID: str = os.environ.get("COGNITO_USER_POOL_ID", "")
COGNITO_CLIENT_ID: str = os.environ.get("COGNITO_CLIENT_ID", "")
INTERNAL_API_KEYS: Tuple[str, ...] = _normalize_api_keys(
    os.environ.get("BUILDOR_INTERNAL_API_KEYS", ""),
    os.environ.get("BUILDOR_INTERNAL_API_KEY", ""),
    os.environ.get("BUILDOR_INTERNAL_API_KEY_PREVIOUS", ""),
)

# ---------------------------------------------------------------------------
# JWKS cache
# ---------------------------------------------------------------------------

_jwks_cache: Dict[str, Any] = {}
_jwks_fetched_at: float = 0.0
_JWKS_TTL: float = 3600.0


def _extract_token(event: Dict[str, Any]) -> Optional[str]:
    """Extract buildor_id_token from cookies (headers or API GW v2 array)."""
    headers = event.get("headers") or {}
    cookie_header = headers.get("cookie") or headers.get("Cookie") or ""
    cookie_parts = [part.strip() for part in cookie_header.split(";") if part.strip()]

    event_cookies = event.get("cookies") or []
    if isinstance(event_cookies, str):
        event_cookies = [event_cookies]
    cookie_parts.extend(
        part.strip() for part in event_cookies if isinstance(part, str) and part.strip()
    )

    prefix = f"{TOKEN_COOKIE}="
    for part in cookie_parts:
        if part.startswith(prefix):
            return part[len(prefix):] or None
    return None


def _get_jwks() -> Dict[str, Any]:
    """Fetch (and cache) Cognito User Pool JWKS."""
    global _jwks_cache, _jwks_fetched_at
    now = time.time()
    if _jwks_cache and (now - _jwks_fetched_at) < _JWKS_TTL:
        return _jwks_cache

    if not COGNITO_USER_POOL_ID:
        raise ValueError("COGNITO_USER_POOL_ID not set")

    region = COGNITO_USER_POOL_ID.split("_")[0]
    url = (
        f"https://cognito-idp.{region}.amazonaws.com/"
        f"{COGNITO_USER_POOL_ID}/.well-known/jwks.json"
    )
    with urllib.request.urlopen(url, timeout=5) as resp:
        data = json.loads(resp.read())

    _jwks_cache = {
        key_data["kid"]: RSAAlgorithm.from_jwk(json.dumps(key_data))
        for key_data in data.get("keys", [])
    }
    _jwks_fetched_at = now
    return _jwks_cache


def _verify_token(token: str) -> Dict[str, Any]:
    """Verify a Cognito JWT (RS256). Returns decoded claims dict."""
    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise ValueError(f"Invalid token header: {exc}") from exc

    alg = header.get("alg", "RS256")
    if alg != "RS256":
        raise ValueError(f"Unexpected token algorithm: {alg}")

    key = _get_jwks().get(header.get("kid"))
    if key is None:
        raise ValueError("Token key ID not found in JWKS")

    try:
        return jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=COGNITO_CLIENT_ID,
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError as exc:
        raise ValueError("Token has expired. Please sign in again.") from exc
    except jwt.InvalidAudienceError as exc:
        raise ValueError("Token audience mismatch.") from exc
    except jwt.PyJWTError as exc:
        raise ValueError(f"Token validation failed: {exc}") from exc


def _internal_key(event: Dict[str, Any]) -> str:
    headers = event.get("headers") or {}
    for name, value in headers.items():
        if str(name).lower() == INTERNAL_KEY_HEADER:
            return str(value or "")
    return ""


def _authenticate(
    event: Dict[str, Any],
    *,
    error_fn: Optional[Callable[..., Dict[str, Any]]] = None,
) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """Authenticate a request via internal API key or cookie JWT.

    Returns (claims, None) on success or (None, error_response) on failure.
    """
    error_fn = error_fn or _error

    if INTERNAL_API_KEYS:
        key = _internal_key(event)
        if key and key in INTERNAL_API_KEYS:
            return {"auth_mode": "internal-key"}, None

    token = _extract_token(event)
    if not token:
        logger.warning("[WARNING] No %s cookie found", TOKEN_COOKIE)
        return None, error_fn(401, "Authentication required. Please sign in.")

    try:
        return _verify_token(token), None
    except ValueError as exc:
        logger.warning("[WARNING] Auth failed: %s", exc)
        return None, error_fn(401, str(exc))
