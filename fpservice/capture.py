"""Scan capture pipeline

Drives one scan attempt on a leased reader:

1. wait for finger presence (bounded by the scan timeout)
2. raw image acquisition
3. quality scoring (0-100)
4. template extraction, only when the quality gate for the purpose is met

A scan below the gate is still returned as a completed ``CaptureAttempt``
(without a template) so the caller can decide whether to retry. Extraction
failure is reported separately as TEMPLATE_EXTRACTION_FAILED.
"""

from __future__ import annotations

import uuid
from typing import Any, Callable, Dict, Optional

from .config import EngineSettings
from .errors import ErrorCode, FingerprintError
from .logger import log_biometric
from .models import CaptureAttempt, ScanPurpose
from .sdk import BiometricEngine, ExtractionError

StepCallback = Callable[[str, Dict[str, Any]], None]


def clamp_quality(raw: Any) -> int:
    """Coerce an SDK quality value to an integer in [0, 100]."""
    value = int(round(float(raw)))
    return max(0, min(100, value))


class CapturePipeline:
    """Runs wait → capture → score → extract against a lease."""

    def __init__(self, engine: BiometricEngine, settings: Optional[EngineSettings] = None) -> None:
        self.engine = engine
        self.settings = settings or EngineSettings()

    def capture(
        self,
        lease,
        session_id: str,
        purpose: ScanPurpose,
        timeout_ms: Optional[int] = None,
        on_step: Optional[StepCallback] = None,
    ) -> CaptureAttempt:
        """Run one scan attempt.

        Args:
            lease: Active DeviceLease for the reader
            session_id: Owning scan session
            purpose: Scan purpose (selects the quality gate)
            timeout_ms: Wait-for-finger bound (settings default if None)
            on_step: Progress callback ``(step, data)``

        Returns:
            CaptureAttempt, with ``template`` None when below the quality gate

        Raises:
            FingerprintError: NO_FINGERPRINT_DETECTED, TEMPLATE_EXTRACTION_FAILED,
                DEVICE_TIMEOUT, DEVICE_DISCONNECTED
            CaptureCancelled: The session was stopped mid-capture
        """
        purpose = ScanPurpose(purpose)
        timeout_ms = timeout_ms or self.settings.scan_timeout_ms
        details = {"deviceId": lease.device_id, "sessionId": session_id}

        def emit(step: str, **data: Any) -> None:
            if on_step is not None:
                on_step(step, data)

        # 1. Wait for finger
        lease.touch(budget_s=timeout_ms / 1000.0)
        emit("waiting", timeoutMs=timeout_ms)
        detected = self._hardware_call(
            lease, lambda: lease.reader.wait_for_finger(timeout_ms / 1000.0, lease.cancel_event)
        )
        lease.ensure_active()
        if not detected:
            raise FingerprintError(
                ErrorCode.NO_FINGERPRINT_DETECTED,
                f"No finger detected within {timeout_ms}ms",
                dict(details, timeoutMs=timeout_ms),
            )
        emit("finger_detected")

        # 2. Acquire image
        lease.touch()
        image = self._hardware_call(lease, lease.reader.capture_image)
        lease.ensure_active()
        emit("captured")

        # 3. Quality before extraction
        try:
            quality = clamp_quality(self.engine.score_quality(image))
        except Exception as exc:
            raise FingerprintError(
                ErrorCode.TEMPLATE_EXTRACTION_FAILED,
                f"Quality scoring failed: {exc}",
                details,
            ) from exc

        min_quality = self.settings.min_quality_for(purpose.value)
        accepted = quality >= min_quality
        emit("quality_scored", quality=quality, minQuality=min_quality, accepted=accepted)

        if not accepted:
            log_biometric("CAPTURE", None, "LOW_QUALITY",
                          details={"quality": quality, "min": min_quality, "purpose": purpose.value},
                          device_id=lease.device_id)
            return CaptureAttempt(
                attempt_id=uuid.uuid4().hex,
                session_id=session_id,
                purpose=purpose,
                quality=quality,
                min_quality=min_quality,
            )

        # 4. Extract
        try:
            template = self.engine.extract_template(image)
        except ExtractionError as exc:
            raise FingerprintError(
                ErrorCode.TEMPLATE_EXTRACTION_FAILED,
                str(exc) or None,
                dict(details, quality=quality),
            ) from exc

        if not template:
            raise FingerprintError(
                ErrorCode.TEMPLATE_EXTRACTION_FAILED,
                details=dict(details, quality=quality),
            )

        emit("extracted", quality=quality, templateSize=len(template))
        return CaptureAttempt(
            attempt_id=uuid.uuid4().hex,
            session_id=session_id,
            purpose=purpose,
            quality=quality,
            min_quality=min_quality,
            template=bytes(template),
        )

    @staticmethod
    def _hardware_call(lease, call: Callable[[], Any]) -> Any:
        """Invoke the reader, translating driver failures into error codes."""
        try:
            return call()
        except FingerprintError:
            raise
        except TimeoutError as exc:
            raise FingerprintError(
                ErrorCode.DEVICE_TIMEOUT,
                f"Reader did not respond: {exc}",
                {"deviceId": lease.device_id},
            ) from exc
        except Exception as exc:
            # A lease revoked mid-call (unplug) explains the driver failure.
            lease.ensure_active()
            raise FingerprintError(
                ErrorCode.INTERNAL_ERROR,
                f"Reader failure: {exc}",
                {"deviceId": lease.device_id},
            ) from exc
