"""JSON serialization for engine objects

Converts devices, sessions, enrollment templates, match results and events
into the camelCase dictionaries used on the wire.

Template bytes are base64 encoded and only included on request: API responses
never echo biometric data by default.
"""

from __future__ import annotations
import base64
from typing import Any, Dict, Optional

from .events import Event
from .models import (
    Device, EnrollmentTemplate, MatchResult, ScanSession,
)


def encode_template(template: bytes) -> str:
    return base64.b64encode(template).decode("ascii")


def device_to_dict(device: Device) -> Dict[str, Any]:
    info = device.info
    return {
        "deviceId": info.device_id,
        "serialNumber": info.serial_number,
        "model": info.model,
        "firmwareVersion": info.firmware_version,
        "capabilities": {
            "resolutionDpi": info.capabilities.resolution_dpi,
            "imageWidth": info.capabilities.image_width,
            "imageHeight": info.capabilities.image_height,
        },
        "state": device.state.value,
        "busy": device.lease_id is not None,
        "lastError": device.last_error,
        "connectedAt": device.connected_at,
    }


def enrollment_template_to_dict(template: EnrollmentTemplate,
                                include_template: bool = False) -> Dict[str, Any]:
    payload = {
        "enrollmentId": template.enrollment_id,
        "userId": template.user_id,
        "quality": template.quality,
        "sourceQualities": list(template.source_qualities),
        "scansCompleted": template.scans_completed,
        "consistency": template.consistency,
        "createdAt": template.created_at,
    }
    if include_template:
        payload["template"] = encode_template(template.template)
    return payload


def match_result_to_dict(result: MatchResult) -> Dict[str, Any]:
    return {
        "match": result.match,
        "confidence": result.confidence,
        "threshold": result.threshold,
        "elapsedMs": result.elapsed_ms,
        "userId": result.user_id,
        "candidatesChecked": result.candidates_checked,
        "topMatches": [
            {"userId": user_id, "confidence": confidence}
            for user_id, confidence in result.top_matches
        ],
    }


def result_to_dict(result: Any) -> Optional[Dict[str, Any]]:
    if result is None:
        return None
    if isinstance(result, EnrollmentTemplate):
        return enrollment_template_to_dict(result)
    if isinstance(result, MatchResult):
        return match_result_to_dict(result)
    raise TypeError(f"Unsupported session result: {type(result).__name__}")


def session_to_dict(session: ScanSession) -> Dict[str, Any]:
    return {
        "sessionId": session.session_id,
        "deviceId": session.device_id,
        "purpose": session.purpose.value,
        "state": session.state.value,
        "userId": session.user_id,
        "threshold": session.threshold,
        "timeoutMs": session.timeout_ms,
        "scansCompleted": session.scans_completed,
        "scansRequired": session.scans_required,
        "retries": session.retries,
        "lastQuality": session.last_quality,
        "createdAt": session.created_at,
        "finishedAt": session.finished_at,
        "result": result_to_dict(session.result),
        "error": session.error,
    }


def event_to_message(event: Event) -> Dict[str, Any]:
    return {
        "type": event.type,
        "sessionId": event.session_id,
        "sequence": event.sequence,
        "timestamp": event.timestamp,
        "data": event.data,
    }

