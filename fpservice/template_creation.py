"""Template creation for the reference biometric engine

This module contains:
- CancelableHasher: protected template generation using random projection
- Quality assessment (foreground coverage x ridge contrast)
- Feature vector construction (block orientation field)
- Template packing, comparison and majority-vote fusion

Templates are ``TEMPLATE_MAGIC + packed bits``. Comparison is the hamming
similarity of the bit strings scaled to 0-100: identical templates score 100,
unrelated fingers score around 50.
"""

from __future__ import annotations
import hashlib
import math
from typing import List, Sequence
import numpy as np

from .config import (
    CONTRAST_REFERENCE_STD, MIN_FOREGROUND_RATIO, SEGMENTATION_BLOCK_SIZE,
    TEMPLATE_KEY, TEMPLATE_PROJECTION_DIM,
)
from .preprocessing import as_float_image, block_orientation_field, block_variance_segmentation

TEMPLATE_MAGIC = b"FPT1"


# ---------------------------------------------------------------------------
# Cancelable Hasher


def _derive_seed_from_key(key: str, feature_dim: int, projection_dim: int) -> np.random.Generator:
    """Derive deterministic random seed from key and dimensions."""
    key_material = f"{key}|{feature_dim}|{projection_dim}".encode("utf-8")
    digest = hashlib.sha256(key_material).digest()
    seed = int.from_bytes(digest[:8], "big", signed=False)
    return np.random.default_rng(seed)


class CancelableHasher:
    """Cancelable template encoder: hash = sign(Px + b), P derived from a key.

    Changing the key yields unrelated templates for the same finger, so a
    leaked template store can be revoked by re-enrolling under a new key.

    Attributes:
        feature_dim: Input vector dimension
        projection_dim: Output bits
    """

    def __init__(self, feature_dim: int, projection_dim: int = TEMPLATE_PROJECTION_DIM,
                 key: str = TEMPLATE_KEY) -> None:
        if feature_dim <= 0 or projection_dim <= 0:
            raise ValueError("feature_dim and projection_dim must be positive")

        self.feature_dim = feature_dim
        self.projection_dim = projection_dim

        rng = _derive_seed_from_key(key, feature_dim, projection_dim)
        self._projection = rng.normal(0.0, 1.0 / math.sqrt(projection_dim),
                                      size=(projection_dim, feature_dim)).astype(np.float32)
        self._bias = rng.normal(0.0, 0.005, size=(projection_dim,)).astype(np.float32)
        self._pack_length = (projection_dim + 7) // 8

    @property
    def template_size(self) -> int:
        return len(TEMPLATE_MAGIC) + self._pack_length

    def encode(self, features: np.ndarray) -> bytes:
        """Encode a feature vector into a template."""
        vector = np.asarray(features, dtype=np.float32)
        if vector.ndim != 1 or vector.shape[0] != self.feature_dim:
            raise ValueError(f"Expected 1D vector of length {self.feature_dim}")

        bits = ((self._projection @ vector) + self._bias >= 0.0).astype(np.uint8)
        return TEMPLATE_MAGIC + np.packbits(bits).tobytes()

    def unpack(self, template: bytes) -> np.ndarray:
        """Template bytes -> bit array.

        Raises:
            ValueError: On a foreign or truncated template
        """
        if len(template) != self.template_size or not template.startswith(TEMPLATE_MAGIC):
            raise ValueError("Template format or size mismatch")
        packed = np.frombuffer(template[len(TEMPLATE_MAGIC):], dtype=np.uint8)
        return np.unpackbits(packed)[:self.projection_dim]

    def similarity(self, template_a: bytes, template_b: bytes) -> float:
        """1 - hamming_distance / bits, in [0, 1]."""
        a = self.unpack(template_a)
        b = self.unpack(template_b)
        mismatches = int(np.count_nonzero(a != b))
        return 1.0 - mismatches / float(self.projection_dim)

    def fuse(self, templates: Sequence[bytes]) -> bytes:
        """Majority vote per bit. Ties (even counts) resolve to the first template's bit."""
        if not templates:
            raise ValueError("Nothing to fuse")

        stacked = np.stack([self.unpack(t) for t in templates], axis=0).astype(np.float32)
        votes = stacked.mean(axis=0)
        fused = (votes > 0.5).astype(np.uint8)
        ties = np.isclose(votes, 0.5)
        fused[ties] = stacked[0][ties].astype(np.uint8)
        return TEMPLATE_MAGIC + np.packbits(fused).tobytes()


# ---------------------------------------------------------------------------
# Quality and features


def evaluate_quality(image: np.ndarray) -> int:
    """Estimate capture quality in [0, 100].

    Combines:
    - foreground coverage (share of blocks carrying ridges)
    - ridge contrast (foreground standard deviation vs. a reference)
    """
    pixels = as_float_image(image)
    mask = block_variance_segmentation(pixels)
    if not mask.any():
        return 0

    coverage = float(mask.mean())
    contrast = float(np.clip(np.std(pixels[mask]) / CONTRAST_REFERENCE_STD, 0.0, 1.0))
    return int(round(100.0 * coverage * contrast))


def feature_dimension(image_shape: Sequence[int], block_size: int = SEGMENTATION_BLOCK_SIZE) -> int:
    return 2 * (image_shape[0] // block_size) * (image_shape[1] // block_size)


def build_feature_vector(image: np.ndarray) -> np.ndarray:
    """Orientation-field feature vector (L2-normalized).

    Raises:
        ValueError: If too little of the image carries ridges
    """
    pixels = as_float_image(image)
    ratio = float(block_variance_segmentation(pixels).mean())
    if ratio < MIN_FOREGROUND_RATIO:
        raise ValueError(f"Insufficient ridge area ({ratio:.2f})")

    cos_field, sin_field = block_orientation_field(pixels)
    features: List[np.ndarray] = [cos_field.ravel(), sin_field.ravel()]
    vector = np.concatenate(features).astype(np.float32)

    norm = float(np.linalg.norm(vector))
    if norm <= 0.0:
        raise ValueError("Empty orientation field")
    return vector / norm
