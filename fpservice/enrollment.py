"""Enrollment orchestrator

Coordinates exactly three accepted captures for one logical enrollment and
merges them into a single template.

State machine::

    Idle -> AwaitingScan(1) -> Validating(1) -> AwaitingScan(2) -> ...
         -> Validating(3) -> Merging -> Complete
    Error is reachable from every non-terminal state.

A capture below the enrollment gate keeps the machine at ``AwaitingScan(n)``
and consumes one retry of slot ``n``. Exhausting the per-slot budget fails the
enrollment with ENROLLMENT_FAILED.
"""

from __future__ import annotations

import statistics
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .capture import CapturePipeline
from .config import ENROLL_SCANS_REQUIRED, EngineSettings
from .errors import CaptureCancelled, ErrorCode, FingerprintError
from .logger import log_biometric
from .models import CaptureAttempt, EnrollmentTemplate, ScanPurpose
from .sdk import BiometricEngine


class EnrollmentPhase(str, Enum):
    IDLE = "idle"
    AWAITING_SCAN = "awaiting_scan"
    VALIDATING = "validating"
    MERGING = "merging"
    COMPLETE = "complete"
    ERROR = "error"


class StepOutcome(str, Enum):
    STARTED = "started"
    ACCEPTED = "accepted"   # slot filled, machine moved to the next slot
    RETRY = "retry"         # slot not filled, retry budget left
    READY = "ready"         # all slots filled, merge pending
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class EnrollmentStep:
    """Typed result of feeding one event into the state machine.

    Attributes:
        outcome: What the step did
        phase: Phase after the step
        slot: Current slot (1-based) after the step
        scans_completed: Accepted captures so far
        retries_used: Retries consumed by the current slot
        retries_left: Retries remaining for the current slot
        quality: Quality of the capture that produced this step, if any
        error: Reason for RETRY / FAILED
        template: Final template on COMPLETE
    """
    outcome: StepOutcome
    phase: EnrollmentPhase
    slot: int
    scans_completed: int
    retries_used: int
    retries_left: int
    quality: Optional[int] = None
    error: Optional[FingerprintError] = None
    template: Optional[EnrollmentTemplate] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "outcome": self.outcome.value,
            "phase": self.phase.value,
            "slot": self.slot,
            "scansCompleted": self.scans_completed,
            "retriesUsed": self.retries_used,
            "retriesLeft": self.retries_left,
        }
        if self.quality is not None:
            payload["quality"] = self.quality
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload


# ---------------------------------------------------------------------------
# Merging


def merged_quality(qualities: Sequence[int], floor: int, penalty: float) -> int:
    """Final template quality: mean minus a variance penalty.

    The result never exceeds the best constituent and never drops below the
    enrollment floor (every constituent already cleared it).
    """
    if not qualities:
        raise ValueError("merged_quality needs at least one quality")

    mean = statistics.fmean(qualities)
    spread = statistics.pstdev(qualities) if len(qualities) > 1 else 0.0
    value = int(round(mean - penalty * spread))
    return max(floor, min(max(qualities), value))


class TemplateMerger(Protocol):
    """Decides whether captures belong to one finger and merges them."""

    def merge(self, templates: Sequence[bytes]) -> Tuple[bytes, float]:
        """Return ``(merged_template, consistency)``.

        Raises:
            FingerprintError: ENROLLMENT_FAILED when the captures are inconsistent
        """
        ...


class SdkTemplateMerger:
    """Default merger: pairwise SDK comparison, then the SDK merge routine."""

    def __init__(self, engine: BiometricEngine, min_consistency: float) -> None:
        self.engine = engine
        self.min_consistency = min_consistency

    def merge(self, templates: Sequence[bytes]) -> Tuple[bytes, float]:
        scores: List[float] = []
        for i in range(len(templates)):
            for j in range(i + 1, len(templates)):
                try:
                    scores.append(float(self.engine.compare(templates[i], templates[j])))
                except Exception as exc:
                    raise FingerprintError(
                        ErrorCode.ENROLLMENT_FAILED,
                        f"Consistency check failed: {exc}",
                    ) from exc

        consistency = min(scores) if scores else 100.0
        if consistency < self.min_consistency:
            raise FingerprintError(
                ErrorCode.ENROLLMENT_FAILED,
                "Scans do not appear to come from the same finger",
                {"consistency": round(consistency, 2), "minConsistency": self.min_consistency},
            )

        try:
            merged = self.engine.merge_templates(list(templates))
        except Exception as exc:
            raise FingerprintError(
                ErrorCode.ENROLLMENT_FAILED,
                f"Template merge failed: {exc}",
            ) from exc

        if not merged:
            raise FingerprintError(ErrorCode.ENROLLMENT_FAILED, "Template merge returned no data")
        return bytes(merged), consistency


# ---------------------------------------------------------------------------
# State machine


class EnrollmentStateMachine:
    """Pure enrollment state: no I/O, fed with capture outcomes."""

    def __init__(
        self,
        user_id: str,
        merger: TemplateMerger,
        settings: Optional[EngineSettings] = None,
        scans_required: int = ENROLL_SCANS_REQUIRED,
    ) -> None:
        self.user_id = user_id
        self.merger = merger
        self.settings = settings or EngineSettings()
        self.scans_required = scans_required

        self.phase = EnrollmentPhase.IDLE
        self.slot = 0
        self.accepted: List[CaptureAttempt] = []
        self.retries: Dict[int, int] = {}
        self.error: Optional[FingerprintError] = None
        self.template: Optional[EnrollmentTemplate] = None

    @property
    def retries_used(self) -> int:
        return self.retries.get(self.slot, 0)

    @property
    def retries_left(self) -> int:
        return max(0, self.settings.max_retries_per_slot - self.retries_used)

    @property
    def finished(self) -> bool:
        return self.phase in (EnrollmentPhase.COMPLETE, EnrollmentPhase.ERROR)

    def start(self) -> EnrollmentStep:
        self._expect(EnrollmentPhase.IDLE)
        self.phase = EnrollmentPhase.AWAITING_SCAN
        self.slot = 1
        return self._step(StepOutcome.STARTED)

    def submit(self, attempt: CaptureAttempt) -> EnrollmentStep:
        """Validate one capture for the current slot."""
        self._expect(EnrollmentPhase.AWAITING_SCAN)
        self.phase = EnrollmentPhase.VALIDATING

        floor = self.settings.enroll_min_quality
        if attempt.quality < floor or not attempt.template:
            error = FingerprintError(
                ErrorCode.LOW_QUALITY,
                f"Quality {attempt.quality} below enrollment minimum {floor}",
                {"quality": attempt.quality, "minQuality": floor, "slot": self.slot},
            )
            return self._reject(error, attempt.quality)

        self.accepted.append(attempt)
        if len(self.accepted) >= self.scans_required:
            self.phase = EnrollmentPhase.MERGING
            return self._step(StepOutcome.READY, quality=attempt.quality)

        self.slot += 1
        self.phase = EnrollmentPhase.AWAITING_SCAN
        return self._step(StepOutcome.ACCEPTED, quality=attempt.quality)

    def record_failure(self, error: FingerprintError) -> EnrollmentStep:
        """Count a retryable capture failure against the current slot."""
        self._expect(EnrollmentPhase.AWAITING_SCAN)
        if error.code != ErrorCode.TEMPLATE_EXTRACTION_FAILED:
            return self.fail(error)
        self.phase = EnrollmentPhase.VALIDATING
        return self._reject(error, error.details.get("quality"))

    def merge(self) -> EnrollmentStep:
        self._expect(EnrollmentPhase.MERGING)
        templates = [a.template for a in self.accepted]
        qualities = tuple(a.quality for a in self.accepted)

        try:
            merged, consistency = self.merger.merge(templates)
        except FingerprintError as exc:
            if exc.code != ErrorCode.ENROLLMENT_FAILED:
                exc = FingerprintError(ErrorCode.ENROLLMENT_FAILED, exc.message, exc.details)
            return self.fail(exc.with_details(qualities=list(qualities)))

        self.template = EnrollmentTemplate(
            enrollment_id=uuid.uuid4().hex,
            user_id=self.user_id,
            template=merged,
            quality=merged_quality(qualities, self.settings.enroll_min_quality,
                                   self.settings.quality_variance_penalty),
            source_qualities=qualities,
            consistency=round(consistency, 2),
        )
        self.phase = EnrollmentPhase.COMPLETE
        return self._step(StepOutcome.COMPLETE, quality=self.template.quality,
                          template=self.template)

    def fail(self, error: FingerprintError) -> EnrollmentStep:
        if self.finished:
            raise RuntimeError(f"Enrollment already finished ({self.phase.value})")
        self.phase = EnrollmentPhase.ERROR
        self.error = error
        return self._step(StepOutcome.FAILED, error=error)

    def _reject(self, error: FingerprintError, quality: Optional[int]) -> EnrollmentStep:
        self.retries[self.slot] = self.retries_used + 1
        if self.retries[self.slot] > self.settings.max_retries_per_slot:
            failure = FingerprintError(
                ErrorCode.ENROLLMENT_FAILED,
                f"Scan {self.slot} failed after {self.retries[self.slot]} attempts",
                {"slot": self.slot, "attempts": self.retries[self.slot], "lastError": error.name,
                 "quality": quality},
            )
            self.phase = EnrollmentPhase.ERROR
            self.error = failure
            return self._step(StepOutcome.FAILED, quality=quality, error=failure)

        self.phase = EnrollmentPhase.AWAITING_SCAN
        return self._step(StepOutcome.RETRY, quality=quality, error=error)

    def _expect(self, phase: EnrollmentPhase) -> None:
        if self.phase != phase:
            raise RuntimeError(f"Invalid enrollment transition from {self.phase.value}")

    def _step(self, outcome: StepOutcome, quality: Optional[int] = None,
              error: Optional[FingerprintError] = None,
              template: Optional[EnrollmentTemplate] = None) -> EnrollmentStep:
        return EnrollmentStep(
            outcome=outcome,
            phase=self.phase,
            slot=self.slot,
            scans_completed=len(self.accepted),
            retries_used=self.retries_used,
            retries_left=self.retries_left,
            quality=quality,
            error=error,
            template=template,
        )


# ---------------------------------------------------------------------------
# Driver


StepListener = Callable[[EnrollmentStep], None]
CaptureListener = Callable[[str, Dict[str, Any]], None]


class EnrollmentOrchestrator:
    """Runs the state machine against a leased reader."""

    def __init__(
        self,
        pipeline: CapturePipeline,
        settings: Optional[EngineSettings] = None,
        merger: Optional[TemplateMerger] = None,
    ) -> None:
        self.pipeline = pipeline
        self.settings = settings or pipeline.settings
        self.merger = merger or SdkTemplateMerger(pipeline.engine, self.settings.min_scan_consistency)

    def enroll(
        self,
        lease,
        session_id: str,
        user_id: str,
        timeout_ms: Optional[int] = None,
        on_step: Optional[StepListener] = None,
        on_capture_step: Optional[CaptureListener] = None,
    ) -> EnrollmentTemplate:
        """Capture three scans and return the merged template.

        Raises:
            FingerprintError: ENROLLMENT_FAILED, NO_FINGERPRINT_DETECTED or a
                device error
            CaptureCancelled: The session was stopped
        """
        machine = EnrollmentStateMachine(user_id, self.merger, self.settings)
        notify = on_step or (lambda step: None)
        notify(machine.start())

        while machine.phase == EnrollmentPhase.AWAITING_SCAN:
            try:
                attempt = self.pipeline.capture(
                    lease, session_id, ScanPurpose.ENROLL, timeout_ms, on_step=on_capture_step
                )
            except FingerprintError as exc:
                if exc.code != ErrorCode.TEMPLATE_EXTRACTION_FAILED:
                    machine.fail(exc)
                    raise
                step = machine.record_failure(exc)
            else:
                step = machine.submit(attempt)

            log_biometric("ENROLL", user_id, step.outcome.value.upper(),
                          details={"slot": step.slot, "quality": step.quality,
                                   "retries": step.retries_used},
                          device_id=lease.device_id)
            notify(step)

            if step.outcome == StepOutcome.FAILED:
                raise step.error
            if step.outcome in (StepOutcome.ACCEPTED, StepOutcome.RETRY):
                self._pause(lease)

        step = machine.merge()
        notify(step)
        if step.outcome == StepOutcome.FAILED:
            log_biometric("ENROLL", user_id, "FAILURE", details={"reason": step.error.message},
                          device_id=lease.device_id)
            raise step.error

        template = step.template
        log_biometric("ENROLL", user_id, "SUCCESS",
                      details={"quality": template.quality, "sources": list(template.source_qualities),
                               "consistency": template.consistency},
                      device_id=lease.device_id)
        return template

    def _pause(self, lease) -> None:
        """Inter-scan delay; the user lifts and re-places the finger."""
        delay = self.settings.inter_scan_delay_s
        if delay <= 0:
            lease.ensure_active()
            return
        cancel: threading.Event = lease.cancel_event
        if cancel.wait(delay):
            lease.ensure_active()
            raise CaptureCancelled("Enrollment cancelled between scans")
        lease.ensure_active()
