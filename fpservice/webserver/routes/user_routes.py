"""
User Management Routes
Enrolled template listing and deletion. Enrollment itself is a scan
operation (POST /api/enroll).
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ...errors import ErrorCode, FingerprintError
from ...logger import log_biometric
from ..auth import rate_limit, require_permission


router = APIRouter(tags=["Users"])


# Global reference to the database (set by server.py)
db = None


def set_globals(database):
    """Set global database reference."""
    global db
    db = database


@router.get("", dependencies=[Depends(require_permission("templates:read")), Depends(rate_limit("list_users"))])
async def list_users():
    """
    List all enrolled users.

    Returns:
        - users: List of user objects (without template data)
    """
    users = [
        {
            "userId": row["user_id"],
            "quality": row["quality"],
            "consistency": row["consistency"],
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
        }
        for row in db.list_fingerprints()
    ]

    return {"users": users, "total": len(users)}


@router.get("/{user_id}", dependencies=[Depends(require_permission("templates:read"))])
async def get_user(user_id: str):
    """
    Get enrollment metadata by user ID.

    Returns:
        User object (without template data)
    """
    user = db.get_fingerprint(user_id)

    if not user:
        raise FingerprintError(ErrorCode.USER_NOT_FOUND, details={"userId": user_id})

    return {
        "userId": user["user_id"],
        "quality": user["quality"],
        "sourceQualities": user["source_qualities"],
        "consistency": user["consistency"],
        "enrollmentId": user["enrollment_id"],
        "templateSize": user["template_size"],
        "createdAt": user["created_at"],
        "updatedAt": user["updated_at"],
    }


@router.delete("/{user_id}")
async def delete_user(
    user_id: str,
    key: Dict[str, Any] = Depends(require_permission("templates:write")),
    _limit: Dict[str, Any] = Depends(rate_limit("delete"))
):
    """
    Delete a user's template.

    Returns:
        - userId: Deleted user ID
    """
    if not db.delete_fingerprint(user_id, username=key["name"]):
        raise FingerprintError(ErrorCode.USER_NOT_FOUND, details={"userId": user_id})

    log_biometric("DELETE", user_id, "SUCCESS", details={"by": key["name"]})

    return {
        "success": True,
        "message": "User deleted successfully",
        "userId": user_id
    }
