"""
Admin Routes
System administration endpoints (stats, audit log, API keys, sessions).
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from ...errors import ErrorCode, FingerprintError
from ...logger import log_auth
from ...models_serialization import session_to_dict
from ..auth import auth_exception, get_client_ip, invalidate_key_cache, rate_limit, require_permission
from ..config import SCOPE_ADMIN, SCOPES


router = APIRouter(
    tags=["Admin"],
    dependencies=[Depends(require_permission(SCOPE_ADMIN)), Depends(rate_limit("admin"))],
)


# Global references (set by server.py)
db = None
service = None
job_manager = None


def set_globals(database, svc, jobs):
    """Set global database, scan service and job manager references."""
    global db, service, job_manager
    db = database
    service = svc
    job_manager = jobs


class CreateKeyRequest(BaseModel):
    """New API key."""
    name: str = Field(min_length=1, max_length=64)
    scopes: List[str] = Field(min_length=1)


@router.get("/stats")
async def get_stats():
    """
    Get system statistics.

    Returns:
        - num_users: Number of enrolled users
        - avg_template_quality: Average merged template quality
        - num_api_keys: Active API keys
        - devices / active_sessions / subscribers / running_jobs
    """
    stats = db.get_stats()

    stats["devices"] = len(service.devices.list_devices())
    stats["active_sessions"] = len(service.list_sessions(active_only=True))
    stats["subscribers"] = service.broadcaster.subscriber_count
    stats["running_jobs"] = len(job_manager.running_jobs)

    return stats


@router.get("/audit")
async def get_audit_log(
    limit: int = 100
):
    """
    Get audit log entries.

    Query Parameters:
        - limit: Maximum number of entries (default 100)

    Returns:
        - logs: List of audit log entries
    """
    logs = db.get_audit_log(limit=limit)

    return {"logs": logs}


@router.post("/api-keys", status_code=201)
async def create_api_key(req: CreateKeyRequest, request: Request):
    """
    Create an API key. The plaintext key is returned once and never stored.

    Request:
        - name: Key label (shown in logs)
        - scopes: Granted scopes (see config.SCOPES)
    """
    unknown = sorted(set(req.scopes) - set(SCOPES))
    if unknown:
        raise FingerprintError(ErrorCode.INVALID_REQUEST, f"Unknown scopes: {', '.join(unknown)}",
                               {"allowed": list(SCOPES)})

    creator = request.state.api_key["name"]
    key_id, key = db.create_api_key(req.name, req.scopes, created_by=creator)
    log_auth("KEY_CREATED", req.name, get_client_ip(request), details=f"id={key_id} by={creator}")

    return {
        "success": True,
        "id": key_id,
        "name": req.name,
        "scopes": sorted(set(req.scopes)),
        "apiKey": key,
    }


@router.get("/api-keys")
async def list_api_keys():
    """List API keys (prefix and metadata only)."""
    return {"keys": db.list_api_keys()}


@router.delete("/api-keys/{key_id}")
async def revoke_api_key(key_id: int, request: Request):
    """Revoke an API key. Cached authentications are dropped immediately."""
    actor = request.state.api_key["name"]
    if not db.revoke_api_key(key_id, username=actor):
        raise auth_exception(ErrorCode.INVALID_REQUEST, status.HTTP_404_NOT_FOUND,
                             "API key not found or already revoked", keyId=key_id)

    invalidate_key_cache()
    log_auth("KEY_REVOKED", str(key_id), get_client_ip(request), details=f"by={actor}")
    return {"success": True, "id": key_id}


@router.get("/sessions")
async def list_sessions(active_only: bool = False) -> Dict[str, Any]:
    """Scan sessions still held in memory (active ones plus recent history)."""
    sessions = [session_to_dict(s) for s in service.list_sessions(active_only=active_only)]
    return {"sessions": sessions, "total": len(sessions)}
