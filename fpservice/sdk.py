"""Contracts for the vendor reader driver and biometric SDK.

The engine never implements minutiae extraction or template comparison
itself; it calls into these capabilities. ``fpservice.simulator`` provides a
software implementation for development and tests.
"""

from __future__ import annotations

import threading
from typing import Any, Protocol, Sequence

from .models import DeviceInfo


class ExtractionError(Exception):
    """Raised by an engine when no template can be built from an image."""


class FingerprintReader(Protocol):
    """One physical reader (ZKFPM_OpenDevice handle equivalent)."""

    def open(self) -> DeviceInfo: ...

    def close(self) -> None: ...

    def wait_for_finger(self, timeout_s: float, cancel: threading.Event) -> bool:
        """Block until a finger is present, the timeout expires or ``cancel`` is set.

        Returns True only when a finger was detected.
        """
        ...

    def capture_image(self) -> Any: ...


class BiometricEngine(Protocol):
    """Template algorithms (ZKFPM_* matching library equivalent)."""

    def score_quality(self, image: Any) -> int: ...

    def extract_template(self, image: Any) -> bytes: ...

    def compare(self, template_a: bytes, template_b: bytes) -> float:
        """Confidence in [0, 100] that both templates come from the same finger."""
        ...

    def merge_templates(self, templates: Sequence[bytes]) -> bytes: ...
