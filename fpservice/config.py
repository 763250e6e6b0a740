"""Configuration for the fingerprint session engine

This module contains all configurable parameters for the capture, enrollment,
matching and event subsystems. Every constant can be overridden with an
``FP_*`` environment variable so deployments do not need to edit source code.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ============================================================================
# PATHS
# ============================================================================

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("FP_DATA_DIR", str(PROJECT_ROOT / "data")))
LOG_DIR = Path(os.getenv("FP_LOG_DIR", str(DATA_DIR / "logs")))
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB per file
LOG_BACKUP_COUNT = 5

# ============================================================================
# QUALITY THRESHOLDS (0-100)
# ============================================================================

# Minimum capture quality accepted into an enrollment template
ENROLL_MIN_QUALITY: int = _env_int("FP_ENROLL_MIN_QUALITY", 60)

# Minimum capture quality accepted for verification / identification probes
MATCH_MIN_QUALITY: int = _env_int("FP_MATCH_MIN_QUALITY", 50)

# ============================================================================
# MATCHING THRESHOLDS (confidence 0-100)
# ============================================================================

VERIFICATION_THRESHOLD: float = _env_float("FP_VERIFICATION_THRESHOLD", 70.0)
IDENTIFICATION_THRESHOLD: float = _env_float("FP_IDENTIFICATION_THRESHOLD", 70.0)

# Named risk contexts (time & attendance ... high security doors)
SECURITY_LEVELS: Dict[str, float] = {
    "low": 60.0,
    "standard": 70.0,
    "high": 80.0,
    "maximum": 90.0,
}

# Number of ranked candidates reported by identify
IDENTIFY_TOP_K: int = 5

# ============================================================================
# ENROLLMENT
# ============================================================================

ENROLL_SCANS_REQUIRED = 3  # fixed by the reader's template merge routine
MAX_RETRIES_PER_SLOT: int = _env_int("FP_MAX_RETRIES_PER_SLOT", 3)
INTER_SCAN_DELAY_S: float = _env_float("FP_INTER_SCAN_DELAY_S", 1.0)

# Minimum pairwise SDK confidence for 3 captures to count as the same finger
MIN_SCAN_CONSISTENCY: float = _env_float("FP_MIN_SCAN_CONSISTENCY", 60.0)

# Merged quality = mean - penalty * stddev
QUALITY_VARIANCE_PENALTY: float = 0.5

# ============================================================================
# TIMEOUTS
# ============================================================================

SCAN_TIMEOUT_MS: int = _env_int("FP_SCAN_TIMEOUT_MS", 30000)
DEVICE_OPERATION_TIMEOUT_MS: int = _env_int("FP_DEVICE_TIMEOUT_MS", 30000)
IDENTIFY_TIMEOUT_MS: int = _env_int("FP_IDENTIFY_TIMEOUT_MS", 10000)

# ============================================================================
# EVENT CHANNEL
# ============================================================================

HEARTBEAT_INTERVAL_S: float = _env_float("FP_HEARTBEAT_INTERVAL_S", 30.0)
HEARTBEAT_TIMEOUT_S: float = _env_float("FP_HEARTBEAT_TIMEOUT_S", 60.0)

# ============================================================================
# REFERENCE ENGINE (simulator)
# ============================================================================

SEGMENTATION_BLOCK_SIZE: int = 16  # Block size for variance segmentation and orientation
SEGMENTATION_VARIANCE_THRESHOLD: float = 100.0  # Minimum block variance for foreground
CONTRAST_REFERENCE_STD: float = 32.0  # Foreground std giving full contrast credit
MIN_FOREGROUND_RATIO: float = 0.1  # Below this no template can be extracted
TEMPLATE_PROJECTION_DIM: int = 512  # Bits per template
TEMPLATE_KEY: str = os.getenv("FP_TEMPLATE_KEY", "fpservice-reference-engine")

# ============================================================================
# MISC
# ============================================================================

# Verbose console output
VERBOSE: bool = _env_bool("FP_VERBOSE", True)


# ============================================================================
# SETTINGS OBJECT
# ============================================================================

@dataclass
class EngineSettings:
    """Runtime settings shared by the capture, enrollment and matching layers.

    Defaults come from the module constants above. Tests and the web server
    build their own instances instead of mutating module globals.

    Attributes:
        enroll_min_quality: Minimum quality for an enrollment capture (0-100)
        match_min_quality: Minimum quality for a verify/identify probe (0-100)
        verification_threshold: Default 1:1 acceptance confidence
        identification_threshold: Default 1:N acceptance confidence
        max_retries_per_slot: Rejected captures tolerated per enrollment slot
        inter_scan_delay_s: Pause between enrollment captures
        min_scan_consistency: Minimum pairwise confidence between enrollment captures
        scan_timeout_ms: Wait-for-finger bound
        device_operation_timeout_ms: Lease revocation bound per hardware operation
        identify_timeout_ms: Bound on one identify pool scan
        identify_top_k: Ranked candidates reported by identify
    """
    enroll_min_quality: int = ENROLL_MIN_QUALITY
    match_min_quality: int = MATCH_MIN_QUALITY
    verification_threshold: float = VERIFICATION_THRESHOLD
    identification_threshold: float = IDENTIFICATION_THRESHOLD
    max_retries_per_slot: int = MAX_RETRIES_PER_SLOT
    inter_scan_delay_s: float = INTER_SCAN_DELAY_S
    min_scan_consistency: float = MIN_SCAN_CONSISTENCY
    quality_variance_penalty: float = QUALITY_VARIANCE_PENALTY
    scan_timeout_ms: int = SCAN_TIMEOUT_MS
    device_operation_timeout_ms: int = DEVICE_OPERATION_TIMEOUT_MS
    identify_timeout_ms: int = IDENTIFY_TIMEOUT_MS
    identify_top_k: int = IDENTIFY_TOP_K
    security_levels: Dict[str, float] = field(default_factory=lambda: dict(SECURITY_LEVELS))

    def __post_init__(self) -> None:
        """Validate settings after initialization."""
        for name in ("enroll_min_quality", "match_min_quality"):
            value = getattr(self, name)
            if value < 0 or value > 100:
                raise ValueError(f"{name} must be in [0, 100], got {value}")

        for name in ("verification_threshold", "identification_threshold", "min_scan_consistency"):
            value = getattr(self, name)
            if value < 0.0 or value > 100.0:
                raise ValueError(f"{name} must be in [0.0, 100.0], got {value}")

        if self.max_retries_per_slot < 0:
            raise ValueError(f"max_retries_per_slot must be >= 0, got {self.max_retries_per_slot}")

        if self.inter_scan_delay_s < 0:
            raise ValueError(f"inter_scan_delay_s must be >= 0, got {self.inter_scan_delay_s}")

        for name in ("scan_timeout_ms", "device_operation_timeout_ms", "identify_timeout_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")

    def min_quality_for(self, purpose: str) -> int:
        """Minimum accepted capture quality for a scan purpose."""
        if purpose == "enroll":
            return self.enroll_min_quality
        return self.match_min_quality

    def resolve_threshold(self, threshold=None, security_level: str = None, purpose: str = "verify") -> float:
        """Pick the acceptance threshold for a request.

        An explicit threshold wins, then a named security level, then the
        purpose default.

        Raises:
            ValueError: If the level is unknown or the threshold is out of range
        """
        if threshold is not None:
            value = float(threshold)
        elif security_level:
            if security_level not in self.security_levels:
                raise ValueError(f"Unknown security level: {security_level}")
            value = self.security_levels[security_level]
        elif purpose == "identify":
            value = self.identification_threshold
        else:
            value = self.verification_threshold

        if value < 0.0 or value > 100.0:
            raise ValueError(f"Threshold must be in [0.0, 100.0], got {value}")
        return value
