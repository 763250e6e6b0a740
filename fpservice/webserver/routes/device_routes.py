"""
Device Routes
Reader listing plus simulator controls (finger placement, hot-plug).
"""

from typing import Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ...errors import ErrorCode, FingerprintError
from ...logger import log_device
from ...models_serialization import device_to_dict
from ...simulator import SimulatedReader
from ..auth import require_permission
from ..config import SCOPE_ADMIN


router = APIRouter(tags=["Devices"])


# Global references (set by server.py)
device_manager = None
simulated_readers: Dict[str, SimulatedReader] = {}


def set_globals(devices, readers: Dict[str, SimulatedReader]):
    """Set global device manager and simulated reader references."""
    global device_manager, simulated_readers
    device_manager = devices
    simulated_readers = readers


class TouchRequest(BaseModel):
    """Finger placement on a simulated reader."""
    fingerId: str = Field(min_length=1)
    quality: int = Field(default=90, ge=0, le=100)
    count: int = Field(default=1, ge=1, le=20)


def _simulated(device_id: str) -> SimulatedReader:
    reader = simulated_readers.get(device_id)
    if reader is None:
        raise FingerprintError(
            ErrorCode.DEVICE_NOT_FOUND,
            f"{device_id} is not a simulated reader",
            {"deviceId": device_id},
        )
    return reader


@router.get("", dependencies=[Depends(require_permission("device:read"))])
async def list_devices():
    """All known readers with their state and lease status."""
    devices = [device_to_dict(d) for d in device_manager.list_devices()]
    return {"devices": devices, "total": len(devices)}


@router.get("/{device_id}", dependencies=[Depends(require_permission("device:read"))])
async def get_device(device_id: str):
    return device_to_dict(device_manager.get(device_id))


@router.post("/{device_id}/simulate/touch", dependencies=[Depends(require_permission(SCOPE_ADMIN))])
async def simulate_touch(device_id: str, req: TouchRequest):
    """
    Queue finger placements on a simulated reader.

    Request:
        - fingerId: Synthetic finger identity (same id -> matching templates)
        - quality: Requested capture quality (0-100)
        - count: Number of identical touches to queue (3 for an enrollment)
    """
    reader = _simulated(device_id)
    for _ in range(req.count):
        reader.place_finger(req.fingerId, req.quality)

    log_device(device_id, "SIMULATED_TOUCH", {"finger": req.fingerId, "quality": req.quality,
                                              "count": req.count})
    return {"success": True, "deviceId": device_id, "pendingTouches": reader.pending_touches}


@router.post("/{device_id}/simulate/unplug", dependencies=[Depends(require_permission(SCOPE_ADMIN))])
async def simulate_unplug(device_id: str):
    """Simulate USB removal (revokes the active lease)."""
    _simulated(device_id)
    return {"success": True, "device": device_to_dict(device_manager.remove(device_id))}


@router.post("/{device_id}/simulate/plug", dependencies=[Depends(require_permission(SCOPE_ADMIN))])
async def simulate_plug(device_id: str):
    """Simulate the reader being plugged back in."""
    _simulated(device_id)
    return {"success": True, "device": device_to_dict(device_manager.reconnect(device_id))}
