"""
Webserver Authentication and Authorization
Provides API key checks, permission scopes and rate limiting.

Features:
- API keys in the X-API-Key header (or ?api_key= for WebSocket clients)
- bcrypt verification with a short-lived in-memory cache
- Permission scopes per route, "admin" implies every scope
- Rate limiting per operation type and per key, plus a per-IP limit on bad keys
"""

import hashlib
from collections import defaultdict
from time import time
from typing import Any, Dict, Optional, Tuple

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from ..errors import ErrorCode, FingerprintError
from ..logger import log_auth
from .config import API_KEY_CACHE_TTL_S, API_KEY_HEADER, RATE_LIMITS, SCOPE_ADMIN


# API key header (missing keys are reported by get_api_key, not by FastAPI)
api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)

# Database reference (set by server.py)
_db = None

# Verified keys: {sha256(key): (expires_at, record)}
_key_cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}

# Rate limiting storage
# Format: {(identifier, operation): [timestamp, ...]}
_rate_limit_storage: Dict[Tuple[str, str], list] = defaultdict(list)


def set_database(db):
    """Set global database reference."""
    global _db
    _db = db
    _key_cache.clear()


# ==================== API Keys ====================

def authenticate_key(key: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Resolve a plaintext API key to its record.

    bcrypt is slow by design, so verified keys are cached for
    API_KEY_CACHE_TTL_S under their SHA-256 digest.

    Returns:
        Dict with id, name and scopes, or None if the key is unknown or revoked
    """
    if not key or _db is None:
        return None

    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    now = time()
    cached = _key_cache.get(digest)
    if cached and cached[0] > now:
        return cached[1]

    record = _db.authenticate_api_key(key)
    if record is None:
        _key_cache.pop(digest, None)
        return None

    _key_cache[digest] = (now + API_KEY_CACHE_TTL_S, record)
    return record


def invalidate_key_cache():
    """Forget cached keys (call after a revocation)."""
    _key_cache.clear()


def has_scope(record: Dict[str, Any], scope: str) -> bool:
    scopes = record.get("scopes", [])
    return SCOPE_ADMIN in scopes or scope in scopes


def ensure_scope(record: Dict[str, Any], scope: str):
    """
    Raise unless the key holds ``scope``.

    Raises:
        FingerprintError: FORBIDDEN
    """
    if not has_scope(record, scope):
        raise FingerprintError(
            ErrorCode.FORBIDDEN,
            f"API key lacks the '{scope}' permission",
            {"required": scope},
        )


def auth_exception(
    code: ErrorCode,
    status_code: int,
    message: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
    **details
) -> HTTPException:
    """HTTPException whose detail is the standard error dict."""
    return HTTPException(
        status_code=status_code,
        detail=FingerprintError(code, message, details).to_dict(),
        headers=headers,
    )


# ==================== Rate Limiting ====================

def check_rate_limit(
    identifier: str,
    operation: str,
    max_requests: Optional[int] = None,
    window_seconds: Optional[int] = None
) -> Tuple[bool, Optional[int]]:
    """
    Sliding-window limiter keyed by (identifier, operation).

    Limits come from RATE_LIMITS; operations not listed there fall back to
    ``max_requests`` per ``window_seconds`` (10 per 60s when omitted).

    Returns:
        (True, None) when the call is admitted and recorded, otherwise
        (False, seconds until the oldest recorded call leaves the window)
    """
    limit, window = RATE_LIMITS.get(operation, (max_requests or 10, window_seconds or 60))

    now = time()
    calls = _rate_limit_storage[(identifier, operation)]
    calls[:] = [ts for ts in calls if ts > now - window]

    if len(calls) >= limit:
        return False, int(calls[0] + window - now) + 1

    calls.append(now)
    return True, None


def cleanup_rate_limit_storage():
    """Drop call histories and cached keys that can no longer matter."""
    now = time()
    horizon = now - max(window for _, window in RATE_LIMITS.values())

    for bucket in list(_rate_limit_storage):
        calls = [ts for ts in _rate_limit_storage[bucket] if ts > horizon]
        if calls:
            _rate_limit_storage[bucket] = calls
        else:
            del _rate_limit_storage[bucket]

    for digest, (expires_at, _) in list(_key_cache.items()):
        if expires_at <= now:
            del _key_cache[digest]


# ==================== FastAPI Dependencies ====================

async def get_api_key(
    request: Request,
    key: Optional[str] = Depends(api_key_header)
) -> Dict[str, Any]:
    """
    FastAPI dependency: authenticate the X-API-Key header.

    Returns:
        API key record (id, name, scopes)

    Raises:
        HTTPException: 401 for a missing or invalid key, 429 when an IP keeps
            presenting bad keys
    """
    ip = get_client_ip(request)
    record = authenticate_key(key)

    if record is None:
        label = key[:8] + "..." if key else "-"
        log_auth("API_KEY", label, ip, success=False)

        allowed, retry_after = check_rate_limit(ip, "auth_failure")
        if not allowed:
            log_auth("RATE_LIMIT", label, ip, success=False, details="auth_failure")
            raise auth_exception(
                ErrorCode.RATE_LIMIT_EXCEEDED,
                status.HTTP_429_TOO_MANY_REQUESTS,
                f"Too many invalid API keys. Retry after {retry_after} seconds",
                headers={"Retry-After": str(retry_after)},
                retryAfter=retry_after,
            )

        raise auth_exception(ErrorCode.UNAUTHORIZED, status.HTTP_401_UNAUTHORIZED)

    # read by the access-log middleware
    request.state.api_key = record

    return record


def require_permission(scope: str):
    """
    FastAPI dependency factory: require an API key holding ``scope``.

    Usage:
        @router.get("/devices", dependencies=[Depends(require_permission("device:read"))])
    """
    async def check_permission(
        request: Request,
        key: Dict[str, Any] = Depends(get_api_key)
    ) -> Dict[str, Any]:
        if not has_scope(key, scope):
            log_auth("PERMISSION", key["name"], get_client_ip(request), success=False,
                     details=f"required={scope}")
            raise auth_exception(
                ErrorCode.FORBIDDEN,
                status.HTTP_403_FORBIDDEN,
                f"API key lacks the '{scope}' permission",
                required=scope,
            )
        return key

    return check_permission


def rate_limit(operation: str):
    """
    FastAPI dependency factory: Enforce rate limiting for an operation.

    The limit is counted per API key.

    Raises:
        HTTPException: If rate limit exceeded (429)
    """
    async def check_limit(
        request: Request,
        key: Dict[str, Any] = Depends(get_api_key)
    ) -> Dict[str, Any]:
        allowed, retry_after = check_rate_limit(f"key:{key['id']}", operation)

        if not allowed:
            log_auth("RATE_LIMIT", key["name"], get_client_ip(request), success=False,
                     details=operation)
            raise auth_exception(
                ErrorCode.RATE_LIMIT_EXCEEDED,
                status.HTTP_429_TOO_MANY_REQUESTS,
                f"Rate limit exceeded for {operation}. Retry after {retry_after} seconds",
                headers={"Retry-After": str(retry_after)},
                retryAfter=retry_after,
            )

        return key

    return check_limit


# ==================== Utility Functions ====================

def get_client_ip(request) -> str:
    """
    Extract client IP address from a request or WebSocket (handles proxies).

    Returns:
        Client IP address string
    """
    # Check for proxy headers
    forwarded = request.headers.get('X-Forwarded-For')
    if forwarded:
        return forwarded.split(',')[0].strip()

    real_ip = request.headers.get('X-Real-IP')
    if real_ip:
        return real_ip

    # Fallback to direct connection
    return request.client.host if request.client else "unknown"
