"""Shared fixtures: a scripted reader, a scripted biometric engine and a
fully wired FingerprintService around them.

Environment overrides are applied before any fpservice module is imported so
log files, the database and the admin key land in a throwaway directory.
"""

import os
import queue
import tempfile
import threading
import time
from dataclasses import dataclass

_TEST_DIR = tempfile.mkdtemp(prefix="fpservice-tests-")
os.environ["FP_DATA_DIR"] = _TEST_DIR
os.environ["FP_LOG_DIR"] = os.path.join(_TEST_DIR, "logs")
os.environ["FP_ADMIN_API_KEY"] = "fp_test_admin_key_0123456789"
os.environ["FP_VERBOSE"] = "0"
os.environ["FP_INTER_SCAN_DELAY_S"] = "0"
os.environ["FP_BCRYPT_ROUNDS"] = "4"
os.environ["FP_SIMULATED_DEVICES"] = "2"
os.environ["FP_BACKGROUND_TASKS"] = "0"

import pytest  # noqa: E402

from fpservice.config import EngineSettings  # noqa: E402
from fpservice.devices import DeviceManager  # noqa: E402
from fpservice.events import EventBroadcaster  # noqa: E402
from fpservice.models import DeviceInfo  # noqa: E402
from fpservice.sdk import ExtractionError  # noqa: E402
from fpservice.sessions import FingerprintService  # noqa: E402
from fpservice.store import InMemoryTemplateStore  # noqa: E402

ADMIN_KEY = os.environ["FP_ADMIN_API_KEY"]


@dataclass(frozen=True)
class Scan:
    """What the scripted reader returns as its "image"."""
    finger: str
    quality: int
    extract_fails: bool = False


def template_for(finger: str) -> bytes:
    return f"T:{finger}".encode("utf-8")


class FakeReader:
    """Reader driven by a queue of Scan objects. Honours the cancel event."""

    def __init__(self, serial_number: str = "FAKE-0001", fail_open: bool = False):
        self.serial_number = serial_number
        self.fail_open = fail_open
        self.is_open = False
        self.wait_calls = 0
        self.capture_calls = 0
        self._scans = queue.Queue()
        self._current = None

    def open(self):
        if self.fail_open:
            raise RuntimeError("USB handle unavailable")
        self.is_open = True
        return DeviceInfo(device_id=self.serial_number, serial_number=self.serial_number,
                          model="FAKE")

    def close(self):
        self.is_open = False

    def place(self, *scans):
        for scan in scans:
            self._scans.put(scan)

    def wait_for_finger(self, timeout_s, cancel):
        self.wait_calls += 1
        deadline = time.monotonic() + timeout_s
        while not cancel.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            try:
                self._current = self._scans.get(timeout=min(0.01, remaining))
                return True
            except queue.Empty:
                continue
        return False

    def capture_image(self):
        self.capture_calls += 1
        scan, self._current = self._current, None
        return scan


class ScriptedEngine:
    """Biometric engine whose answers come from the Scan and a score table.

    ``scores[(probe_finger, stored_finger)]`` overrides the default
    confidence (100 for the same finger, 20 otherwise).
    """

    def __init__(self):
        self.scores = {}
        self.extract_calls = 0
        self.compare_calls = 0

    def score_quality(self, image):
        return image.quality

    def extract_template(self, image):
        self.extract_calls += 1
        if image.extract_fails:
            raise ExtractionError("ridge structure unreadable")
        return template_for(image.finger)

    def compare(self, template_a, template_b):
        self.compare_calls += 1
        a = template_a.decode("utf-8")[2:]
        b = template_b.decode("utf-8")[2:]
        if (a, b) in self.scores:
            return self.scores[(a, b)]
        if (b, a) in self.scores:
            return self.scores[(b, a)]
        return 100.0 if a == b else 20.0

    def merge_templates(self, templates):
        return templates[0]


class EventLog:
    """Subscriber that records every delivered event."""

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def __call__(self, event):
        with self._lock:
            self.events.append(event)

    def types(self, session_id=None):
        with self._lock:
            return [e.type for e in self.events if session_id is None or e.session_id == session_id]

    def for_session(self, session_id):
        with self._lock:
            return [e for e in self.events if e.session_id == session_id]

    def terminal(self, session_id):
        return [e for e in self.for_session(session_id) if e.terminal]

    def wait_for(self, event_type, session_id=None, timeout=2.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if event_type in self.types(session_id):
                return True
            time.sleep(0.005)
        return False


class Worker(threading.Thread):
    """Runs a blocking call and keeps its return value or exception."""

    def __init__(self, target, *args, **kwargs):
        super().__init__(daemon=True)
        self._call = (target, args, kwargs)
        self.result = None
        self.error = None

    def run(self):
        target, args, kwargs = self._call
        try:
            self.result = target(*args, **kwargs)
        except Exception as exc:
            self.error = exc


@pytest.fixture
def settings():
    return EngineSettings(inter_scan_delay_s=0.0, scan_timeout_ms=2000)


@pytest.fixture
def engine():
    return ScriptedEngine()


@pytest.fixture
def reader():
    return FakeReader()


@pytest.fixture
def devices(reader):
    manager = DeviceManager()
    manager.register("dev-1", reader)
    return manager


@pytest.fixture
def store():
    return InMemoryTemplateStore()


@pytest.fixture
def event_log():
    return EventLog()


@pytest.fixture
def service(devices, engine, store, settings, event_log):
    broadcaster = EventBroadcaster()
    broadcaster.subscribe(event_log)
    return FingerprintService(devices, engine, store, broadcaster, settings)
