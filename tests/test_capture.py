"""Capture pipeline: wait, capture, quality gate, extraction."""

import pytest

from conftest import Scan, template_for

from fpservice.capture import CapturePipeline, clamp_quality
from fpservice.errors import CaptureCancelled, ErrorCode, FingerprintError
from fpservice.models import ScanPurpose


@pytest.fixture
def pipeline(engine, settings):
    return CapturePipeline(engine, settings)


@pytest.fixture
def lease(devices):
    return devices.acquire("dev-1")


def test_accepted_capture_carries_template(pipeline, lease, reader):
    steps = []
    reader.place(Scan("alice", 80))

    attempt = pipeline.capture(lease, "s1", ScanPurpose.ENROLL,
                               on_step=lambda step, data: steps.append(step))

    assert attempt.accepted
    assert attempt.quality == 80
    assert attempt.min_quality == 60
    assert attempt.template == template_for("alice")
    assert steps == ["waiting", "finger_detected", "captured", "quality_scored", "extracted"]


def test_below_gate_returns_attempt_without_template(pipeline, lease, reader, engine):
    reader.place(Scan("alice", 55))

    attempt = pipeline.capture(lease, "s1", ScanPurpose.ENROLL)

    assert not attempt.accepted
    assert attempt.template is None
    assert attempt.quality == 55
    assert engine.extract_calls == 0


def test_quality_gate_depends_on_purpose(pipeline, lease, reader):
    reader.place(Scan("alice", 55))
    attempt = pipeline.capture(lease, "s1", ScanPurpose.VERIFY)
    assert attempt.accepted
    assert attempt.min_quality == 50


def test_no_finger_within_timeout(pipeline, lease):
    with pytest.raises(FingerprintError) as exc_info:
        pipeline.capture(lease, "s1", ScanPurpose.VERIFY, timeout_ms=30)
    assert exc_info.value.code == ErrorCode.NO_FINGERPRINT_DETECTED
    assert exc_info.value.details["timeoutMs"] == 30


def test_extraction_failure(pipeline, lease, reader):
    reader.place(Scan("alice", 90, extract_fails=True))
    with pytest.raises(FingerprintError) as exc_info:
        pipeline.capture(lease, "s1", ScanPurpose.ENROLL)
    assert exc_info.value.code == ErrorCode.TEMPLATE_EXTRACTION_FAILED
    assert exc_info.value.details["quality"] == 90


def test_released_lease_cancels_capture(pipeline, lease, devices):
    devices.release(lease)
    with pytest.raises(CaptureCancelled):
        pipeline.capture(lease, "s1", ScanPurpose.VERIFY)


def test_unplug_during_wait(pipeline, lease, devices):
    devices.remove("dev-1")
    with pytest.raises(FingerprintError) as exc_info:
        pipeline.capture(lease, "s1", ScanPurpose.VERIFY, timeout_ms=500)
    assert exc_info.value.code == ErrorCode.DEVICE_DISCONNECTED


@pytest.mark.parametrize("raw,expected", [(120, 100), (-3, 0), (59.6, 60), ("42", 42)])
def test_clamp_quality(raw, expected):
    assert clamp_quality(raw) == expected
