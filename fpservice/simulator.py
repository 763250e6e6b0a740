"""Simulated reader and reference biometric engine

Lets the service run without ZKTeco hardware or the vendor SDK.

SimulatedReader
    Renders synthetic ridge images. Each finger id seeds a fixed orientation
    field, so repeated touches of the same finger produce matching templates.
    The requested quality controls how much of the sensor the finger covers
    (a partial placement is the common cause of a low quality score).

SimulatedEngine
    Quality from block-variance segmentation and ridge contrast, templates
    from the block orientation field through a cancelable hasher.
"""

from __future__ import annotations

import hashlib
import math
import queue
import threading
import time
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np
from scipy import ndimage

from .config import SEGMENTATION_BLOCK_SIZE, TEMPLATE_KEY
from .models import DeviceCapabilities, DeviceInfo
from .sdk import ExtractionError
from .template_creation import (
    CancelableHasher, build_feature_vector, evaluate_quality, feature_dimension,
)

RIDGE_AMPLITUDE = 60.0
BACKGROUND_LEVEL = 128.0
SENSOR_NOISE_STD = 6.0
ORIENTATION_GRID = (8, 8)


@dataclass(frozen=True)
class Touch:
    finger_id: str
    quality: int = 90


def _finger_rng(finger_id: str) -> np.random.Generator:
    digest = hashlib.sha256(f"finger|{finger_id}".encode("utf-8")).digest()
    return np.random.default_rng(int.from_bytes(digest[:8], "big"))


def render_finger(
    finger_id: str,
    quality: int,
    shape: Tuple[int, int] = (288, 256),
    rng: Optional[np.random.Generator] = None,
    block_size: int = SEGMENTATION_BLOCK_SIZE,
) -> np.ndarray:
    """Synthetic sensor image (uint8) of one finger touch.

    Every foreground block holds a plane-wave ridge pattern whose direction
    follows the finger's smooth orientation field. ``quality`` (0-100) sets
    the share of blocks covered, growing outward from the sensor centre.
    """
    rng = rng or np.random.default_rng()
    finger = _finger_rng(finger_id)
    rows, cols = shape[0] // block_size, shape[1] // block_size

    # Smooth doubled-angle orientation field
    coarse = finger.uniform(0.0, math.pi, size=ORIENTATION_GRID)
    cos2 = cv2.resize(np.cos(2.0 * coarse).astype(np.float32), (cols, rows), interpolation=cv2.INTER_LINEAR)
    sin2 = cv2.resize(np.sin(2.0 * coarse).astype(np.float32), (cols, rows), interpolation=cv2.INTER_LINEAR)
    cos2 = ndimage.gaussian_filter(cos2, sigma=0.5)
    sin2 = ndimage.gaussian_filter(sin2, sigma=0.5)
    theta = 0.5 * np.arctan2(sin2, cos2)

    wavelength = finger.uniform(7.0, 10.0)
    phases = finger.uniform(0.0, 2.0 * math.pi, size=(rows, cols))

    # Blocks ordered by distance from the centre
    centre_y, centre_x = (rows - 1) / 2.0, (cols - 1) / 2.0
    order = sorted(
        ((r, c) for r in range(rows) for c in range(cols)),
        key=lambda rc: ((rc[0] - centre_y) ** 2 + (rc[1] - centre_x) ** 2, rc),
    )
    covered = int(round(max(0, min(100, quality)) / 100.0 * rows * cols))

    image = np.full(shape, BACKGROUND_LEVEL, dtype=np.float32)
    yy, xx = np.mgrid[0:block_size, 0:block_size].astype(np.float32)
    for r, c in order[:covered]:
        t = theta[r, c]
        wave = np.cos(2.0 * math.pi / wavelength * (xx * math.cos(t) + yy * math.sin(t)) + phases[r, c])
        image[r * block_size:(r + 1) * block_size, c * block_size:(c + 1) * block_size] += RIDGE_AMPLITUDE * wave

    image += rng.normal(0.0, SENSOR_NOISE_STD, size=shape).astype(np.float32)
    return np.clip(image, 0.0, 255.0).astype(np.uint8)


class SimulatedReader:
    """In-process stand-in for a USB reader.

    Tests and the simulator routes queue touches with ``place_finger``;
    ``wait_for_finger`` consumes them.
    """

    def __init__(
        self,
        serial_number: str = "SIM-0001",
        capabilities: Optional[DeviceCapabilities] = None,
        seed: Optional[int] = None,
        fail_open: bool = False,
        auto_touch: Optional[Touch] = None,
    ) -> None:
        self.serial_number = serial_number
        self.capabilities = capabilities or DeviceCapabilities()
        self.fail_open = fail_open
        self.auto_touch = auto_touch
        self.is_open = False
        self.captures = 0
        self._rng = np.random.default_rng(seed)
        self._touches: "queue.Queue[Touch]" = queue.Queue()
        self._current: Optional[Touch] = None

    def open(self) -> DeviceInfo:
        if self.fail_open:
            raise RuntimeError(f"Unable to open reader {self.serial_number}")
        self.is_open = True
        return DeviceInfo(
            device_id=self.serial_number,
            serial_number=self.serial_number,
            model="ZK9500 (simulated)",
            firmware_version="sim-1.0",
            capabilities=self.capabilities,
        )

    def close(self) -> None:
        self.is_open = False
        self._current = None

    def place_finger(self, finger_id: str, quality: int = 90) -> None:
        self._touches.put(Touch(finger_id, int(quality)))

    @property
    def pending_touches(self) -> int:
        return self._touches.qsize()

    def wait_for_finger(self, timeout_s: float, cancel: threading.Event) -> bool:
        if not self.is_open:
            raise RuntimeError("Reader is not open")

        deadline = time.monotonic() + timeout_s
        while not cancel.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            try:
                self._current = self._touches.get(timeout=min(0.05, remaining))
                return True
            except queue.Empty:
                if self.auto_touch is not None:
                    self._current = self.auto_touch
                    return True
        return False

    def capture_image(self) -> np.ndarray:
        if not self.is_open:
            raise RuntimeError("Reader is not open")
        if self._current is None:
            raise RuntimeError("No finger on the sensor")

        touch, self._current = self._current, None
        self.captures += 1
        shape = (self.capabilities.image_height, self.capabilities.image_width)
        return render_finger(touch.finger_id, touch.quality, shape=shape, rng=self._rng)


class SimulatedEngine:
    """Reference implementation of the biometric SDK contract."""

    def __init__(
        self,
        capabilities: Optional[DeviceCapabilities] = None,
        key: str = TEMPLATE_KEY,
    ) -> None:
        capabilities = capabilities or DeviceCapabilities()
        self.image_shape = (capabilities.image_height, capabilities.image_width)
        self.hasher = CancelableHasher(feature_dimension(self.image_shape), key=key)

    def score_quality(self, image: np.ndarray) -> int:
        return evaluate_quality(image)

    def extract_template(self, image: np.ndarray) -> bytes:
        if np.asarray(image).shape != self.image_shape:
            raise ExtractionError(f"Unexpected image size {np.asarray(image).shape}")
        try:
            features = build_feature_vector(image)
        except ValueError as exc:
            raise ExtractionError(str(exc)) from exc
        return self.hasher.encode(features)

    def compare(self, template_a: bytes, template_b: bytes) -> float:
        return round(100.0 * self.hasher.similarity(template_a, template_b), 2)

    def merge_templates(self, templates: Sequence[bytes]) -> bytes:
        return self.hasher.fuse(templates)
