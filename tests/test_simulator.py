"""Simulated reader and reference engine."""

import threading

import numpy as np
import pytest

from fpservice.errors import ErrorCode, FingerprintError
from fpservice.models import DeviceCapabilities
from fpservice.sdk import ExtractionError
from fpservice.simulator import SimulatedEngine, SimulatedReader, Touch, render_finger
from fpservice.template_creation import TEMPLATE_MAGIC


@pytest.fixture(scope="module")
def sim_engine():
    return SimulatedEngine()


def capture(reader, finger, quality):
    reader.place_finger(finger, quality)
    assert reader.wait_for_finger(1.0, threading.Event())
    return reader.capture_image()


@pytest.fixture
def sim_reader():
    reader = SimulatedReader(seed=7)
    reader.open()
    return reader


def test_open_reports_capabilities(sim_reader):
    info = sim_reader.open()
    assert info.model.startswith("ZK9500")
    assert info.capabilities == DeviceCapabilities()


def test_image_shape(sim_reader):
    image = capture(sim_reader, "alice", 90)
    assert image.shape == (288, 256)
    assert image.dtype == np.uint8
    assert sim_reader.captures == 1


def test_quality_follows_coverage(sim_reader, sim_engine):
    good = sim_engine.score_quality(capture(sim_reader, "alice", 90))
    poor = sim_engine.score_quality(capture(sim_reader, "alice", 20))
    assert good >= 70
    assert poor < 60
    assert good > poor


def test_same_finger_matches_better_than_other_finger(sim_reader, sim_engine):
    a1 = sim_engine.extract_template(capture(sim_reader, "alice", 90))
    a2 = sim_engine.extract_template(capture(sim_reader, "alice", 90))
    b1 = sim_engine.extract_template(capture(sim_reader, "bob", 90))

    assert a1.startswith(TEMPLATE_MAGIC)
    assert sim_engine.compare(a1, a1) == 100.0
    same = sim_engine.compare(a1, a2)
    other = sim_engine.compare(a1, b1)
    assert same >= 70.0
    assert same > other + 15.0


def test_merge_keeps_template_format(sim_reader, sim_engine):
    templates = [sim_engine.extract_template(capture(sim_reader, "alice", 90)) for _ in range(3)]
    merged = sim_engine.merge_templates(templates)
    assert len(merged) == len(templates[0])
    assert sim_engine.compare(merged, templates[0]) >= 70.0


def test_blank_image_cannot_be_extracted(sim_engine):
    blank = render_finger("alice", 0, rng=np.random.default_rng(1))
    with pytest.raises(ExtractionError):
        sim_engine.extract_template(blank)


def test_wrong_image_size_rejected(sim_engine):
    with pytest.raises(ExtractionError):
        sim_engine.extract_template(np.zeros((10, 10), dtype=np.uint8))


def test_wait_times_out_without_finger(sim_reader):
    assert sim_reader.wait_for_finger(0.05, threading.Event()) is False


def test_wait_honours_cancel(sim_reader):
    cancel = threading.Event()
    cancel.set()
    assert sim_reader.wait_for_finger(5.0, cancel) is False


def test_auto_touch(sim_engine):
    reader = SimulatedReader(auto_touch=Touch("kiosk", 90))
    reader.open()
    assert reader.wait_for_finger(1.0, threading.Event())
    assert sim_engine.score_quality(reader.capture_image()) >= 60


def test_closed_reader_fails():
    reader = SimulatedReader()
    with pytest.raises(RuntimeError):
        reader.wait_for_finger(0.01, threading.Event())


def test_failed_open():
    with pytest.raises(RuntimeError):
        SimulatedReader(fail_open=True).open()


def test_different_keys_give_unrelated_templates(sim_reader, sim_engine):
    image = capture(sim_reader, "alice", 90)
    other_engine = SimulatedEngine(key="rotated-key")
    template = sim_engine.extract_template(image)
    rotated = other_engine.extract_template(image)
    assert template != rotated
    with pytest.raises(ValueError):
        sim_engine.compare(template, b"garbage")


def test_engine_with_service(devices, store):
    from fpservice.config import EngineSettings
    from fpservice.sessions import FingerprintService

    reader = SimulatedReader(serial_number="SIM-9000", seed=3)
    devices.register("sim", reader)
    service = FingerprintService(devices, SimulatedEngine(), store,
                                 settings=EngineSettings(inter_scan_delay_s=0.0))

    for _ in range(3):
        reader.place_finger("carol", 90)
    template = service.enroll("sim", "carol")
    store.save_template("carol", template.template)

    reader.place_finger("carol", 90)
    result = service.verify("sim", "carol")
    assert result.match is True

    with pytest.raises(FingerprintError) as exc_info:
        service.verify("sim", "carol", timeout_ms=30)
    assert exc_info.value.code == ErrorCode.NO_FINGERPRINT_DETECTED
