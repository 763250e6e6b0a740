"""Data structures for the fingerprint session engine

This module defines the core data classes shared by the device manager, the
capture pipeline, the enrollment orchestrator, the match engine and the
event broadcaster.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import time


class DeviceState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    BUSY = "busy"
    ERROR = "error"


class ScanPurpose(str, Enum):
    ENROLL = "enroll"
    VERIFY = "verify"
    IDENTIFY = "identify"


class SessionState(str, Enum):
    WAITING = "waiting"
    SCANNING = "scanning"
    COMPLETE = "complete"
    ERROR = "error"
    TIMEOUT = "timeout"
    STOPPED = "stopped"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMPLETE, SessionState.ERROR,
                        SessionState.TIMEOUT, SessionState.STOPPED)


@dataclass(frozen=True)
class DeviceCapabilities:
    """Reader capability descriptor.

    Attributes:
        resolution_dpi: Sensor resolution
        image_width: Raw image width (pixels)
        image_height: Raw image height (pixels)
    """
    resolution_dpi: int = 500
    image_width: int = 256
    image_height: int = 288


@dataclass(frozen=True)
class DeviceInfo:
    """Identity of a reader as reported by hardware enumeration."""
    device_id: str
    serial_number: str
    model: str = "ZK9500"
    firmware_version: str = "unknown"
    capabilities: DeviceCapabilities = field(default_factory=DeviceCapabilities)


@dataclass
class Device:
    """A reader known to the device manager and its lifecycle state."""
    info: DeviceInfo
    state: DeviceState = DeviceState.CONNECTED
    lease_id: Optional[str] = None
    last_error: Optional[str] = None
    connected_at: float = field(default_factory=time.time)

    @property
    def device_id(self) -> str:
        return self.info.device_id


@dataclass(frozen=True)
class CaptureAttempt:
    """One completed scan: quality score plus template when it met the gate.

    Attributes:
        attempt_id: Unique attempt identifier
        session_id: Owning scan session
        purpose: Purpose the quality gate was applied for
        quality: Raw quality score, integer in [0, 100]
        min_quality: Gate applied for ``purpose``
        template: Extracted template bytes, None when quality < min_quality
        captured_at: Wall-clock capture time (epoch seconds)
    """
    attempt_id: str
    session_id: str
    purpose: ScanPurpose
    quality: int
    min_quality: int
    template: Optional[bytes] = None
    captured_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        """Validate attempt after initialization."""
        if not isinstance(self.quality, int) or self.quality < 0 or self.quality > 100:
            raise ValueError(f"Quality must be an integer in [0, 100], got {self.quality!r}")

        if self.quality >= self.min_quality and not self.template:
            raise ValueError("An attempt meeting the quality gate must carry a template")

    @property
    def accepted(self) -> bool:
        return self.quality >= self.min_quality and bool(self.template)


@dataclass(frozen=True)
class EnrollmentTemplate:
    """Merged enrollment artifact handed back to the caller for persistence.

    Attributes:
        enrollment_id: Unique enrollment identifier
        user_id: Owner of the template
        template: Merged template bytes (opaque)
        quality: Final merged quality (0-100)
        source_qualities: Qualities of the constituent captures
        consistency: Lowest pairwise confidence among the constituents
        created_at: Creation time (epoch seconds)
    """
    enrollment_id: str
    user_id: str
    template: bytes
    quality: int
    source_qualities: Tuple[int, ...]
    consistency: float = 100.0
    created_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if not self.source_qualities:
            raise ValueError("An enrollment template needs at least one source capture")

        if self.quality > max(self.source_qualities):
            raise ValueError(
                f"Merged quality {self.quality} exceeds best constituent {max(self.source_qualities)}"
            )

    @property
    def scans_completed(self) -> int:
        return len(self.source_qualities)


@dataclass
class MatchResult:
    """Outcome of one verify or identify call. Never persisted by the core.

    Attributes:
        match: True when confidence cleared the threshold
        confidence: Best confidence found (0-100)
        threshold: Threshold that was applied
        elapsed_ms: Wall time spent comparing
        user_id: Matched (identify) or claimed (verify) user
        candidates_checked: Number of stored templates compared
        top_matches: Ranked (user_id, confidence) pairs (identify only)
    """
    match: bool
    confidence: float
    threshold: float
    elapsed_ms: float
    user_id: Optional[str] = None
    candidates_checked: int = 0
    top_matches: List[Tuple[str, float]] = field(default_factory=list)


@dataclass
class ScanSession:
    """Ephemeral state of one enroll / verify / identify session."""
    session_id: str
    device_id: str
    purpose: ScanPurpose
    state: SessionState = SessionState.WAITING
    user_id: Optional[str] = None
    threshold: Optional[float] = None
    candidate_user_ids: Optional[List[str]] = None
    timeout_ms: int = 30000
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    scans_completed: int = 0
    scans_required: int = 1
    retries: int = 0
    last_quality: Optional[int] = None
    result: Any = None
    error: Optional[Dict[str, Any]] = None

    @property
    def terminal(self) -> bool:
        return self.state.terminal
