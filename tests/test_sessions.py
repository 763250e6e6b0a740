"""FingerprintService: session lifecycle end to end on a scripted reader."""

import time

import pytest

from conftest import Scan, Worker, template_for

from fpservice import events
from fpservice.errors import ErrorCode, FingerprintError
from fpservice.models import EnrollmentTemplate, ScanPurpose, SessionState


def test_enroll_publishes_progress_then_complete(service, reader, event_log):
    reader.place(Scan("alice", 85), Scan("alice", 88), Scan("alice", 90))

    session = service.start_session("dev-1", ScanPurpose.ENROLL, user_id="alice")
    template = service.run_session(session.session_id)

    assert isinstance(template, EnrollmentTemplate)
    assert template.quality <= 90
    assert template.scans_completed == 3
    assert session.state == SessionState.COMPLETE
    assert session.scans_completed == 3

    types = event_log.types(session.session_id)
    assert types[0] == events.SCAN_STARTED
    assert types[-1] == events.SCAN_COMPLETE
    assert types.count(events.SCAN_QUALITY) == 3
    assert types.count(events.FINGERPRINT_DETECTED) == 3

    sequences = [e.sequence for e in event_log.for_session(session.session_id)]
    assert sequences == list(range(1, len(sequences) + 1))

    complete = event_log.for_session(session.session_id)[-1]
    assert complete.data["result"]["scansCompleted"] == 3
    assert "template" not in complete.data["result"]


def test_enroll_retry_reported_in_progress(service, reader, event_log):
    reader.place(Scan("alice", 40), Scan("alice", 85), Scan("alice", 88), Scan("alice", 90))

    session = service.start_session("dev-1", ScanPurpose.ENROLL, user_id="alice")
    service.run_session(session.session_id)

    progress = [e.data for e in event_log.for_session(session.session_id)
                if e.type == events.SCAN_PROGRESS and e.data.get("step") == "enrollment"]
    retry = [p for p in progress if p["outcome"] == "retry"]
    assert len(retry) == 1
    assert retry[0]["slot"] == 1
    assert retry[0]["quality"] == 40


def test_enroll_existing_user_needs_replace(service, store, devices):
    store.save_template("alice", template_for("alice"))

    with pytest.raises(FingerprintError) as exc_info:
        service.start_session("dev-1", ScanPurpose.ENROLL, user_id="alice")
    assert exc_info.value.code == ErrorCode.USER_ALREADY_EXISTS
    assert devices.lease_for("dev-1") is None

    session = service.start_session("dev-1", ScanPurpose.ENROLL, user_id="alice", replace=True)
    assert session.state == SessionState.WAITING


def test_verify_match_and_no_match(service, store, engine, reader):
    store.save_template("alice", template_for("alice"))
    engine.scores[("alice", "alice")] = 95.5
    engine.scores[("mallory", "alice")] = 45.2

    reader.place(Scan("alice", 80))
    result = service.verify("dev-1", "alice", threshold=70)
    assert result.match is True
    assert result.confidence == 95.5

    reader.place(Scan("mallory", 80))
    result = service.verify("dev-1", "alice", threshold=70)
    assert result.match is False
    assert result.confidence == 45.2


def test_verify_unknown_user_does_not_lease(service, devices, reader):
    with pytest.raises(FingerprintError) as exc_info:
        service.start_session("dev-1", ScanPurpose.VERIFY, user_id="ghost")
    assert exc_info.value.code == ErrorCode.USER_NOT_FOUND
    assert devices.lease_for("dev-1") is None
    assert reader.wait_calls == 0


def test_verify_security_level(service, store, engine, reader):
    store.save_template("alice", template_for("alice"))
    engine.scores[("alice", "alice")] = 85.0

    reader.place(Scan("alice", 80))
    result = service.verify("dev-1", "alice", security_level="maximum")
    assert result.threshold == 90.0
    assert result.match is False


def test_identify(service, store, engine, reader):
    for user in ("alice", "bob", "carol"):
        store.save_template(user, template_for(user))
    engine.scores[("bob", "bob")] = 88.3

    reader.place(Scan("bob", 75))
    result = service.identify("dev-1", threshold=60)

    assert result.match is True
    assert result.user_id == "bob"
    assert result.confidence == 88.3
    assert result.candidates_checked == 3


def test_low_quality_probe_is_recaptured(service, store, reader, event_log):
    store.save_template("alice", template_for("alice"))
    reader.place(Scan("alice", 30), Scan("alice", 80))

    session = service.start_session("dev-1", ScanPurpose.VERIFY, user_id="alice")
    result = service.run_session(session.session_id)

    assert result.match is True
    assert session.retries == 1
    assert event_log.types(session.session_id).count(events.SCAN_QUALITY) == 2


def test_invalid_requests_rejected_before_leasing(service, devices):
    with pytest.raises(FingerprintError) as exc_info:
        service.start_session("dev-1", ScanPurpose.VERIFY)
    assert exc_info.value.code == ErrorCode.INVALID_REQUEST

    with pytest.raises(FingerprintError) as exc_info:
        service.start_session("dev-1", ScanPurpose.IDENTIFY, security_level="paranoid")
    assert exc_info.value.code == ErrorCode.INVALID_REQUEST

    with pytest.raises(FingerprintError) as exc_info:
        service.start_session("dev-1", "unlock")
    assert exc_info.value.code == ErrorCode.INVALID_REQUEST

    assert devices.lease_for("dev-1") is None


def test_second_session_on_leased_device_is_busy(service, reader):
    first = service.start_session("dev-1", ScanPurpose.IDENTIFY)

    with pytest.raises(FingerprintError) as exc_info:
        service.start_session("dev-1", ScanPurpose.IDENTIFY)
    assert exc_info.value.code == ErrorCode.DEVICE_BUSY
    assert reader.wait_calls == 0

    service.stop_session(first.session_id)
    assert service.start_session("dev-1", ScanPurpose.IDENTIFY).state == SessionState.WAITING


def test_no_finger_times_out(service, devices, event_log):
    session = service.start_session("dev-1", ScanPurpose.IDENTIFY, timeout_ms=30)

    with pytest.raises(FingerprintError) as exc_info:
        service.run_session(session.session_id)
    assert exc_info.value.code == ErrorCode.NO_FINGERPRINT_DETECTED

    assert session.state == SessionState.TIMEOUT
    assert event_log.types(session.session_id)[-1] == events.SCAN_TIMEOUT
    assert devices.lease_for("dev-1") is None


def test_stop_is_idempotent_and_emits_one_terminal_event(service, devices, event_log):
    session = service.start_session("dev-1", ScanPurpose.IDENTIFY, timeout_ms=5000)
    worker = Worker(service.run_session, session.session_id)
    worker.start()
    assert event_log.wait_for(events.SCAN_PROGRESS, session.session_id)

    assert service.stop_session(session.session_id) is True
    assert service.stop_session(session.session_id) is False
    worker.join(timeout=2.0)

    assert not worker.is_alive()
    assert worker.error is None
    assert worker.result is None
    assert session.state == SessionState.STOPPED
    assert [e.type for e in event_log.terminal(session.session_id)] == [events.SCAN_STOPPED]
    assert devices.lease_for("dev-1") is None


def test_stop_before_run(service, event_log):
    session = service.start_session("dev-1", ScanPurpose.IDENTIFY)
    service.stop_session(session.session_id)

    assert service.run_session(session.session_id) is None
    assert len(event_log.terminal(session.session_id)) == 1


def test_unplug_mid_capture_reports_error(service, devices, event_log):
    session = service.start_session("dev-1", ScanPurpose.IDENTIFY, timeout_ms=5000)
    worker = Worker(service.run_session, session.session_id)
    worker.start()
    assert event_log.wait_for(events.SCAN_PROGRESS, session.session_id)

    devices.remove("dev-1")
    worker.join(timeout=2.0)

    assert isinstance(worker.error, FingerprintError)
    assert worker.error.code == ErrorCode.DEVICE_DISCONNECTED
    assert session.state == SessionState.ERROR
    terminal = event_log.terminal(session.session_id)
    assert [e.type for e in terminal] == [events.SCAN_ERROR]
    assert terminal[0].data["error"]["code"] == int(ErrorCode.DEVICE_DISCONNECTED)
    assert events.DEVICE_DISCONNECTED in event_log.types(None)


def test_result_hook_runs_before_complete(service, reader, event_log):
    seen = []

    def hook(session, result):
        seen.append(event_log.types(session.session_id)[-1])

    reader.place(Scan("alice", 85), Scan("alice", 88), Scan("alice", 90))
    session = service.start_session("dev-1", ScanPurpose.ENROLL, user_id="alice")
    service.run_session(session.session_id, hook)

    assert seen and seen[0] != events.SCAN_COMPLETE
    assert event_log.types(session.session_id)[-1] == events.SCAN_COMPLETE


def test_failing_result_hook_ends_session_in_error(service, reader, event_log):
    def hook(session, result):
        raise FingerprintError(ErrorCode.USER_ALREADY_EXISTS)

    reader.place(Scan("alice", 85), Scan("alice", 88), Scan("alice", 90))
    session = service.start_session("dev-1", ScanPurpose.ENROLL, user_id="alice")

    with pytest.raises(FingerprintError):
        service.run_session(session.session_id, hook)
    assert session.state == SessionState.ERROR
    assert events.SCAN_COMPLETE not in event_log.types(session.session_id)


def test_cleanup_archives_ended_sessions(service):
    session = service.start_session("dev-1", ScanPurpose.IDENTIFY)
    service.stop_session(session.session_id)

    assert service.cleanup_sessions(max_age_s=300.0) == 0
    assert service.cleanup_sessions(max_age_s=0.0, now=time.time() + 1.0) == 1
    with pytest.raises(FingerprintError) as exc_info:
        service.get_session(session.session_id)
    assert exc_info.value.code == ErrorCode.SESSION_NOT_FOUND


def test_unknown_session(service):
    with pytest.raises(FingerprintError) as exc_info:
        service.stop_session("missing")
    assert exc_info.value.code == ErrorCode.SESSION_NOT_FOUND


def test_list_sessions(service):
    first = service.start_session("dev-1", ScanPurpose.IDENTIFY)
    service.stop_session(first.session_id)
    assert [s.session_id for s in service.list_sessions()] == [first.session_id]
    assert service.list_sessions(active_only=True) == []


def test_stop_while_result_is_saved_leaves_session_complete(service, store, reader, event_log):
    stoppers = []

    def hook(session, result):
        store.save_template(session.user_id, result.template)
        stopper = Worker(service.stop_session, session.session_id)
        stopper.start()
        stopper.join(timeout=0.2)
        stoppers.append(stopper)

    reader.place(Scan("alice", 85), Scan("alice", 88), Scan("alice", 90))
    session = service.start_session("dev-1", ScanPurpose.ENROLL, user_id="alice")
    template = service.run_session(session.session_id, hook)

    stopper = stoppers[0]
    stopper.join(timeout=2.0)
    assert stopper.error is None
    assert stopper.result is False

    assert template is not None
    assert session.state == SessionState.COMPLETE
    assert store.load_template("alice") == template.template
    assert [e.type for e in event_log.terminal(session.session_id)] == [events.SCAN_COMPLETE]


def test_enrollment_failure_reports_session_context(service, reader, event_log):
    reader.place(Scan("alice", 85), *[Scan("alice", 40)] * 4)

    session = service.start_session("dev-1", ScanPurpose.ENROLL, user_id="alice")
    with pytest.raises(FingerprintError) as exc_info:
        service.run_session(session.session_id)
    assert exc_info.value.code == ErrorCode.ENROLLMENT_FAILED

    terminal = event_log.terminal(session.session_id)
    assert [e.type for e in terminal] == [events.SCAN_ERROR]
    details = terminal[0].data["error"]["details"]
    assert details["deviceId"] == "dev-1"
    assert details["sessionId"] == session.session_id
    assert details["scansCompleted"] == 1
    assert details["slot"] == 2
    assert details["attempts"] == 4
    assert details["quality"] == 40
    assert session.error["details"]["scansCompleted"] == 1
