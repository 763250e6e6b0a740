"""Fingerprint service: scan session coordinator

Wires the device manager, capture pipeline, enrollment orchestrator and match
engine together and reports every session transition to the event
broadcaster.

Session lifecycle:
    start_session -> (lease acquired, ``scan:started``)
    run_session   -> blocking; ends with exactly one terminal event
                     (``scan:complete`` / ``scan:error`` / ``scan:timeout``)
    stop_session  -> idempotent; aborts the capture, releases the lease and
                     emits ``scan:stopped`` once
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from . import events
from .capture import CapturePipeline
from .config import ENROLL_SCANS_REQUIRED, EngineSettings
from .devices import DeviceLease, DeviceManager
from .enrollment import EnrollmentOrchestrator, EnrollmentStep, TemplateMerger
from .errors import CaptureCancelled, ErrorCode, FingerprintError
from .events import EventBroadcaster
from .logger import log_error, log_session
from .matching import MatchEngine
from .models import (
    Device, DeviceState, EnrollmentTemplate, MatchResult, ScanPurpose, ScanSession, SessionState,
)
from .models_serialization import result_to_dict
from .sdk import BiometricEngine
from .store import TemplateStore


@dataclass
class _ActiveSession:
    session: ScanSession
    lease: DeviceLease
    stored_template: Optional[bytes] = None
    lock: threading.RLock = field(default_factory=threading.RLock)


class FingerprintService:
    """Owns scan sessions and drives them against leased devices."""

    def __init__(
        self,
        devices: DeviceManager,
        engine: BiometricEngine,
        store: TemplateStore,
        broadcaster: Optional[EventBroadcaster] = None,
        settings: Optional[EngineSettings] = None,
        merger: Optional[TemplateMerger] = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.devices = devices
        self.store = store
        self.broadcaster = broadcaster or EventBroadcaster()
        self.pipeline = CapturePipeline(engine, self.settings)
        self.enrollment = EnrollmentOrchestrator(self.pipeline, self.settings, merger)
        self.matcher = MatchEngine(engine, self.settings)

        self._lock = threading.RLock()
        self._sessions: Dict[str, _ActiveSession] = {}

        devices.add_revocation_listener(self._on_revocation)
        devices.add_state_listener(self._on_device_state)

    # ------------------------------------------------------------------
    # Session API

    def start_session(
        self,
        device_id: str,
        purpose: ScanPurpose,
        user_id: Optional[str] = None,
        threshold: Optional[float] = None,
        security_level: Optional[str] = None,
        candidate_user_ids: Optional[Sequence[str]] = None,
        timeout_ms: Optional[int] = None,
        replace: bool = False,
    ) -> ScanSession:
        """Validate the request, lease the device and open a session.

        Nothing is leased when validation fails.

        Raises:
            FingerprintError: INVALID_REQUEST, USER_NOT_FOUND,
                USER_ALREADY_EXISTS or any acquire error
        """
        try:
            purpose = ScanPurpose(purpose)
        except ValueError as exc:
            raise FingerprintError(ErrorCode.INVALID_REQUEST, f"Unknown purpose: {purpose}") from exc

        if purpose in (ScanPurpose.ENROLL, ScanPurpose.VERIFY) and not user_id:
            raise FingerprintError(ErrorCode.INVALID_REQUEST, f"{purpose.value} requires a userId")

        if timeout_ms is not None and timeout_ms <= 0:
            raise FingerprintError(ErrorCode.INVALID_REQUEST, "timeoutMs must be positive")

        resolved: Optional[float] = None
        if purpose != ScanPurpose.ENROLL:
            try:
                resolved = self.settings.resolve_threshold(threshold, security_level, purpose.value)
            except ValueError as exc:
                raise FingerprintError(ErrorCode.INVALID_REQUEST, str(exc)) from exc

        stored = None
        if purpose == ScanPurpose.VERIFY:
            stored = self._load(user_id)
            if stored is None:
                raise FingerprintError(ErrorCode.USER_NOT_FOUND, details={"userId": user_id})
        elif purpose == ScanPurpose.ENROLL and not replace and self._load(user_id) is not None:
            raise FingerprintError(ErrorCode.USER_ALREADY_EXISTS, details={"userId": user_id})

        lease = self.devices.acquire(device_id)
        session = ScanSession(
            session_id=uuid.uuid4().hex,
            device_id=device_id,
            purpose=purpose,
            user_id=user_id,
            threshold=resolved,
            candidate_user_ids=list(candidate_user_ids) if candidate_user_ids is not None else None,
            timeout_ms=timeout_ms or self.settings.scan_timeout_ms,
            scans_required=ENROLL_SCANS_REQUIRED if purpose == ScanPurpose.ENROLL else 1,
        )
        with self._lock:
            self._sessions[session.session_id] = _ActiveSession(session, lease, stored)

        log_session(session.session_id, purpose.value, "STARTED",
                    {"device": device_id, "user_id": user_id})
        self._publish(events.SCAN_STARTED, session, {
            "deviceId": device_id,
            "purpose": purpose.value,
            "userId": user_id,
            "timeoutMs": session.timeout_ms,
            "scansRequired": session.scans_required,
        })
        return session

    def run_session(self, session_id: str,
                    on_result: Optional[Callable[[ScanSession, Any], None]] = None) -> Any:
        """Drive a started session to its end.

        ``on_result`` runs before ``scan:complete`` is published (the web layer
        persists enrollments there); an exception from it ends the session
        in error instead.

        Returns:
            EnrollmentTemplate or MatchResult, or None when the session was
            stopped

        Raises:
            FingerprintError: The terminal error, after its event was published
        """
        record = self._record(session_id)
        session = record.session

        with record.lock:
            if session.terminal:
                return session.result if session.state == SessionState.COMPLETE else None
            session.state = SessionState.SCANNING

        try:
            if session.purpose == ScanPurpose.ENROLL:
                result = self._run_enrollment(record)
            else:
                result = self._run_match(record)

            # Held until the terminal event is out: a stop or revocation
            # arriving while on_result persists the result waits and no-ops.
            with record.lock:
                if session.terminal:
                    return None
                if on_result is not None:
                    self._apply_result_hook(record, on_result, result)
                self._finish(record, SessionState.COMPLETE, result=result)
            return result
        except CaptureCancelled:
            return None
        except FingerprintError as exc:
            if exc.code == ErrorCode.NO_FINGERPRINT_DETECTED:
                self._finish(record, SessionState.TIMEOUT, error=exc)
            else:
                self._finish(record, SessionState.ERROR, error=exc)
            raise
        except Exception as exc:
            log_error(exc, context=f"run_session:{session_id}")
            error = FingerprintError(ErrorCode.INTERNAL_ERROR, str(exc), {"sessionId": session_id})
            self._finish(record, SessionState.ERROR, error=error)
            raise error from exc
        finally:
            self.devices.release(record.lease)

    def _apply_result_hook(self, record: _ActiveSession, on_result, result: Any) -> None:
        """Run ``on_result``; a failure ends the session in error before it propagates."""
        try:
            on_result(record.session, result)
        except FingerprintError as exc:
            self._finish(record, SessionState.ERROR, error=exc)
            raise
        except Exception as exc:
            log_error(exc, context=f"on_result:{record.session.session_id}")
            error = FingerprintError(ErrorCode.INTERNAL_ERROR, str(exc),
                                     {"sessionId": record.session.session_id})
            self._finish(record, SessionState.ERROR, error=error)
            raise error from exc

    def stop_session(self, session_id: str) -> bool:
        """Abort a session. Stopping an ended session is a no-op.

        Returns:
            True if this call stopped the session
        """
        record = self._record(session_id)
        stopped = self._finish(record, SessionState.STOPPED)
        self.devices.release(record.lease)
        return stopped

    def get_session(self, session_id: str) -> ScanSession:
        return self._record(session_id).session

    def list_sessions(self, active_only: bool = False) -> List[ScanSession]:
        with self._lock:
            sessions = [record.session for record in self._sessions.values()]
        if active_only:
            sessions = [s for s in sessions if not s.terminal]
        return sessions

    def cleanup_sessions(self, max_age_s: float = 300.0, now: Optional[float] = None) -> int:
        """Archive terminal sessions older than ``max_age_s``."""
        now = time.time() if now is None else now
        with self._lock:
            expired = [
                sid for sid, record in self._sessions.items()
                if record.session.terminal and now - (record.session.finished_at or now) > max_age_s
            ]
            for sid in expired:
                del self._sessions[sid]

        for sid in expired:
            self.broadcaster.forget_session(sid)
        return len(expired)

    # ------------------------------------------------------------------
    # Blocking conveniences

    def enroll(self, device_id: str, user_id: str, timeout_ms: Optional[int] = None,
               replace: bool = False) -> Optional[EnrollmentTemplate]:
        session = self.start_session(device_id, ScanPurpose.ENROLL, user_id=user_id,
                                     timeout_ms=timeout_ms, replace=replace)
        return self.run_session(session.session_id)

    def verify(self, device_id: str, user_id: str, threshold: Optional[float] = None,
               security_level: Optional[str] = None,
               timeout_ms: Optional[int] = None) -> Optional[MatchResult]:
        session = self.start_session(device_id, ScanPurpose.VERIFY, user_id=user_id,
                                     threshold=threshold, security_level=security_level,
                                     timeout_ms=timeout_ms)
        return self.run_session(session.session_id)

    def identify(self, device_id: str, threshold: Optional[float] = None,
                 security_level: Optional[str] = None,
                 candidate_user_ids: Optional[Sequence[str]] = None,
                 timeout_ms: Optional[int] = None) -> Optional[MatchResult]:
        session = self.start_session(device_id, ScanPurpose.IDENTIFY, threshold=threshold,
                                     security_level=security_level,
                                     candidate_user_ids=candidate_user_ids,
                                     timeout_ms=timeout_ms)
        return self.run_session(session.session_id)

    # ------------------------------------------------------------------
    # Runners

    def _run_enrollment(self, record: _ActiveSession) -> EnrollmentTemplate:
        session = record.session

        def on_step(step: EnrollmentStep) -> None:
            with record.lock:
                session.scans_completed = step.scans_completed
                session.retries = step.retries_used
                if step.quality is not None:
                    session.last_quality = step.quality
            self._emit(record, events.SCAN_PROGRESS, dict(step.to_dict(), step="enrollment"))

        return self.enrollment.enroll(
            record.lease,
            session.session_id,
            session.user_id,
            session.timeout_ms,
            on_step=on_step,
            on_capture_step=self._capture_listener(record),
        )

    def _run_match(self, record: _ActiveSession) -> MatchResult:
        session = record.session
        on_capture_step = self._capture_listener(record)

        while True:
            attempt = self.pipeline.capture(record.lease, session.session_id, session.purpose,
                                            session.timeout_ms, on_step=on_capture_step)
            if attempt.accepted:
                break

            with record.lock:
                session.retries += 1
                retries = session.retries
            if retries > self.settings.max_retries_per_slot:
                raise FingerprintError(
                    ErrorCode.LOW_QUALITY,
                    f"Probe quality {attempt.quality} below minimum {attempt.min_quality}",
                    {"quality": attempt.quality, "minQuality": attempt.min_quality,
                     "attempts": retries},
                )

        with record.lock:
            session.scans_completed = 1

        # Matching needs no hardware; free the reader for the next caller.
        self.devices.release(record.lease)

        if session.purpose == ScanPurpose.VERIFY:
            return self.matcher.verify(attempt, record.stored_template, session.threshold,
                                       user_id=session.user_id)

        return self.matcher.identify(
            attempt,
            self._iterate_pool(),
            session.threshold,
            candidate_user_ids=session.candidate_user_ids,
        )

    def _capture_listener(self, record: _ActiveSession):
        session = record.session

        def on_capture_step(step: str, data: Dict[str, Any]) -> None:
            if step == "waiting":
                with record.lock:
                    if not session.terminal:
                        session.state = SessionState.WAITING
                self._emit(record, events.SCAN_PROGRESS, dict(data, step=step))
            elif step == "finger_detected":
                with record.lock:
                    if not session.terminal:
                        session.state = SessionState.SCANNING
                self._emit(record, events.FINGERPRINT_DETECTED, {"deviceId": session.device_id})
            elif step == "quality_scored":
                with record.lock:
                    session.last_quality = data.get("quality")
                self._emit(record, events.SCAN_QUALITY, dict(
                    data,
                    scan=session.scans_completed + 1,
                    scansRequired=session.scans_required,
                ))
            else:
                self._emit(record, events.SCAN_PROGRESS, dict(data, step=step))

        return on_capture_step

    # ------------------------------------------------------------------
    # Terminal transitions

    def _finish(
        self,
        record: _ActiveSession,
        state: SessionState,
        result: Any = None,
        error: Optional[FingerprintError] = None,
    ) -> bool:
        """Move the session to a terminal state once; later calls are no-ops."""
        session = record.session
        with record.lock:
            if session.terminal:
                return False
            session.state = state
            session.finished_at = time.time()
            session.result = result
            session.error = None
            if error is not None:
                context = {
                    "sessionId": session.session_id,
                    "deviceId": session.device_id,
                    "scansCompleted": session.scans_completed,
                    "quality": session.last_quality,
                }
                # keys set where the error was raised win
                context.update(error.details)
                session.error = FingerprintError(error.code, error.message, context).to_dict()

            if state == SessionState.COMPLETE:
                event_type, data = events.SCAN_COMPLETE, {"result": result_to_dict(result)}
            elif state == SessionState.STOPPED:
                event_type, data = events.SCAN_STOPPED, {}
            elif state == SessionState.TIMEOUT:
                event_type, data = events.SCAN_TIMEOUT, {"error": session.error}
            else:
                event_type, data = events.SCAN_ERROR, {"error": session.error}

            # Published under the session lock so no progress event can follow it.
            self._publish(event_type, session, dict(data, purpose=session.purpose.value))

        log_session(session.session_id, session.purpose.value, state.value.upper(),
                    {"error": error.name} if error is not None else None)
        return True

    def _on_revocation(self, lease: DeviceLease, error: FingerprintError) -> None:
        with self._lock:
            records = [r for r in self._sessions.values() if r.lease is lease]
        for record in records:
            self._finish(record, SessionState.ERROR, error=error)

    def _on_device_state(self, device: Device, old: DeviceState, new: DeviceState) -> None:
        if new == DeviceState.DISCONNECTED:
            self.broadcaster.publish(events.DEVICE_DISCONNECTED, None, {"deviceId": device.device_id})
        elif new == DeviceState.CONNECTED and old in (DeviceState.DISCONNECTED, DeviceState.ERROR):
            self.broadcaster.publish(events.DEVICE_CONNECTED, None, {
                "deviceId": device.device_id,
                "serialNumber": device.info.serial_number,
                "model": device.info.model,
            })

    # ------------------------------------------------------------------
    # Helpers

    def _publish(self, event_type: str, session: ScanSession, data: Dict[str, Any]) -> None:
        self.broadcaster.publish(event_type, session.session_id, data)

    def _emit(self, record: _ActiveSession, event_type: str, data: Dict[str, Any]) -> None:
        """Publish a progress event unless the session already ended."""
        with record.lock:
            if record.session.terminal:
                return
            self._publish(event_type, record.session, data)

    def _record(self, session_id: str) -> _ActiveSession:
        with self._lock:
            record = self._sessions.get(session_id)
        if record is None:
            raise FingerprintError(ErrorCode.SESSION_NOT_FOUND, details={"sessionId": session_id})
        return record

    def _load(self, user_id: str) -> Optional[bytes]:
        try:
            return self.store.load_template(user_id)
        except FingerprintError:
            raise
        except Exception as exc:
            raise FingerprintError(ErrorCode.DATABASE_ERROR, str(exc)) from exc

    def _iterate_pool(self):
        try:
            pool = list(self.store.iterate_templates())
        except FingerprintError:
            raise
        except Exception as exc:
            raise FingerprintError(ErrorCode.DATABASE_ERROR, str(exc)) from exc
        return pool
