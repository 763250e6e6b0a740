"""
Fingerprint Operations Routes
Scan sessions (async, progress over /ws) and blocking enroll / verify / identify.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ...models import ScanPurpose, ScanSession
from ...models_serialization import enrollment_template_to_dict, match_result_to_dict, session_to_dict
from ..auth import ensure_scope, get_api_key, rate_limit, require_permission
from ..config import PURPOSE_SCOPES


router = APIRouter(tags=["Fingerprint"])


# Global references (set by server.py)
service = None
job_manager = None


def set_globals(svc, jobs):
    """Set global scan service and job manager references."""
    global service, job_manager
    service = svc
    job_manager = jobs


# ==================== Request models ====================

class ScanStartRequest(BaseModel):
    """Start an asynchronous scan session."""
    purpose: ScanPurpose
    deviceId: str = Field(min_length=1)
    userId: Optional[str] = None
    threshold: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    securityLevel: Optional[str] = None
    candidateUserIds: Optional[List[str]] = None
    timeoutMs: Optional[int] = Field(default=None, gt=0)
    replace: bool = False


class EnrollRequest(BaseModel):
    deviceId: str = Field(min_length=1)
    userId: str = Field(min_length=1)
    timeoutMs: Optional[int] = Field(default=None, gt=0)
    replace: bool = False


class VerifyRequest(BaseModel):
    deviceId: str = Field(min_length=1)
    userId: str = Field(min_length=1)
    threshold: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    securityLevel: Optional[str] = None
    timeoutMs: Optional[int] = Field(default=None, gt=0)


class IdentifyRequest(BaseModel):
    deviceId: str = Field(min_length=1)
    threshold: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    securityLevel: Optional[str] = None
    candidateUserIds: Optional[List[str]] = None
    timeoutMs: Optional[int] = Field(default=None, gt=0)


def open_session(req: ScanStartRequest, key: Dict[str, Any]) -> ScanSession:
    """
    Check the purpose scope and start a session (shared with /ws).

    Raises:
        FingerprintError: FORBIDDEN or any start_session error
    """
    ensure_scope(key, PURPOSE_SCOPES[req.purpose.value])
    return service.start_session(
        req.deviceId,
        req.purpose,
        user_id=req.userId,
        threshold=req.threshold,
        security_level=req.securityLevel,
        candidate_user_ids=req.candidateUserIds,
        timeout_ms=req.timeoutMs,
        replace=req.replace,
    )


def _stopped_response(session: ScanSession) -> Dict[str, Any]:
    return {"success": False, "stopped": True, "session": session_to_dict(session)}


# ==================== Scan sessions ====================

@router.post("/scan/start", status_code=202)
async def scan_start(
    req: ScanStartRequest,
    key: Dict[str, Any] = Depends(get_api_key),
    _limit: Dict[str, Any] = Depends(rate_limit("scan"))
):
    """
    Start an enroll / verify / identify session and return immediately.

    Progress and the terminal event are pushed over /ws; the session can also
    be polled with GET /api/scan/{sessionId}.
    """
    session = open_session(req, key)
    job_manager.start(session, replace=req.replace, actor=key["name"])
    return {"success": True, "session": session_to_dict(session)}


@router.post("/scan/{session_id}/stop", dependencies=[Depends(require_permission("scan"))])
async def scan_stop(session_id: str):
    """Stop a session. Stopping an ended session is a no-op (stopped=false)."""
    stopped = job_manager.stop(session_id)
    return {
        "success": True,
        "stopped": stopped,
        "session": session_to_dict(service.get_session(session_id)),
    }


@router.get("/scan/{session_id}", dependencies=[Depends(require_permission("scan"))])
async def scan_status(session_id: str):
    """Session state, progress counters and result / error once ended."""
    return {"success": True, "session": session_to_dict(service.get_session(session_id))}


# ==================== Blocking operations ====================

@router.post("/enroll")
async def enroll(
    req: EnrollRequest,
    key: Dict[str, Any] = Depends(require_permission("enroll")),
    _limit: Dict[str, Any] = Depends(rate_limit("enroll"))
):
    """
    Capture three scans, merge them and store the template.

    Returns:
        - enrollment: merged template metadata (no template bytes)
    """
    session = service.start_session(req.deviceId, ScanPurpose.ENROLL, user_id=req.userId,
                                    timeout_ms=req.timeoutMs, replace=req.replace)
    result = await job_manager.run(session, replace=req.replace, actor=key["name"])
    if result is None:
        return _stopped_response(session)

    return {
        "success": True,
        "sessionId": session.session_id,
        "enrollment": enrollment_template_to_dict(result),
    }


@router.post("/verify")
async def verify(
    req: VerifyRequest,
    key: Dict[str, Any] = Depends(require_permission("verify")),
    _limit: Dict[str, Any] = Depends(rate_limit("verify"))
):
    """
    1:1 verification of a live scan against the claimed user.

    Returns:
        - result: match, confidence, threshold, elapsedMs
    """
    session = service.start_session(req.deviceId, ScanPurpose.VERIFY, user_id=req.userId,
                                    threshold=req.threshold, security_level=req.securityLevel,
                                    timeout_ms=req.timeoutMs)
    result = await job_manager.run(session, actor=key["name"])
    if result is None:
        return _stopped_response(session)

    return {"success": True, "sessionId": session.session_id, "result": match_result_to_dict(result)}


@router.post("/identify")
async def identify(
    req: IdentifyRequest,
    key: Dict[str, Any] = Depends(require_permission("identify")),
    _limit: Dict[str, Any] = Depends(rate_limit("identify"))
):
    """
    1:N identification of a live scan against every stored template
    (or the candidateUserIds subset).

    Returns:
        - result: match, best userId, confidence and topMatches
    """
    session = service.start_session(req.deviceId, ScanPurpose.IDENTIFY, threshold=req.threshold,
                                    security_level=req.securityLevel,
                                    candidate_user_ids=req.candidateUserIds,
                                    timeout_ms=req.timeoutMs)
    result = await job_manager.run(session, actor=key["name"])
    if result is None:
        return _stopped_response(session)

    return {"success": True, "sessionId": session.session_id, "result": match_result_to_dict(result)}
