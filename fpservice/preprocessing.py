"""Preprocessing module for the reference biometric engine

This module contains the image-level helpers used by the simulated SDK:
- Segmentation (foreground/background separation by block variance)
- Smoothed gradients
- Block orientation field (structure tensor per block)

"""

from __future__ import annotations
from typing import Tuple
import cv2
import numpy as np

from .config import SEGMENTATION_BLOCK_SIZE, SEGMENTATION_VARIANCE_THRESHOLD


def as_float_image(image: np.ndarray) -> np.ndarray:
    """Validate a raw sensor image and convert it to float32.

    Raises:
        ValueError: If the image is not a non-empty 2D array
    """
    array = np.asarray(image)
    if array.ndim != 2 or array.size == 0:
        raise ValueError(f"Expected a 2D grayscale image, got shape {array.shape}")
    return array.astype(np.float32)


def block_variance_segmentation(image: np.ndarray,
                                block_size: int = None,
                                threshold: float = None) -> np.ndarray:
    """Segment fingerprint foreground from background using block variance.

    Divides the image into blocks and computes variance for each block.
    High-variance blocks indicate ridge structures (foreground), while
    low-variance blocks indicate background or noise.

    Args:
        image: Input grayscale image (float32, 0-255)
        block_size: Size of square blocks (uses config default if None)
        threshold: Variance threshold (uses config default if None)

    Returns:
        Boolean mask: True for foreground, False for background
    """
    if block_size is None:
        block_size = SEGMENTATION_BLOCK_SIZE
    if threshold is None:
        threshold = SEGMENTATION_VARIANCE_THRESHOLD

    h, w = image.shape
    mask = np.zeros_like(image, dtype=np.uint8)

    for y in range(0, h, block_size):
        for x in range(0, w, block_size):
            block = image[y:y + block_size, x:x + block_size]
            if block.size < block_size * block_size:
                continue
            if block.var() >= threshold:
                mask[y:y + block_size, x:x + block_size] = 1

    # Morphological operations to clean up mask
    kernel = np.ones((3, 3), np.uint8)
    mask = cv2.morphologyEx(mask, cv2.MORPH_CLOSE, kernel, iterations=1)
    mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, kernel, iterations=1)

    return mask.astype(bool)


def gaussian_derivatives(image: np.ndarray, sigma: float) -> Tuple[np.ndarray, np.ndarray]:
    """Compute smoothed image gradients (Gaussian blur followed by Sobel).

    Returns:
        Tuple of (gx, gy) in float64
    """
    ksize = int(6 * sigma + 1) | 1  # Ensure odd kernel size
    blurred = cv2.GaussianBlur(image, (ksize, ksize), sigma)
    gx = cv2.Sobel(blurred, cv2.CV_64F, 1, 0, ksize=3)
    gy = cv2.Sobel(blurred, cv2.CV_64F, 0, 1, ksize=3)
    return gx, gy


def block_orientation_field(image: np.ndarray,
                            block_size: int = None,
                            grad_sigma: float = 1.0) -> Tuple[np.ndarray, np.ndarray]:
    """Doubled-angle ridge orientation per block, weighted by coherence.

    For each block the structure tensor (Gxx, Gyy, Gxy) is summed and turned
    into the vector ``((Gxx - Gyy), 2 Gxy) / (Gxx + Gyy)``, whose direction is
    twice the dominant gradient angle and whose length is the coherence in
    [0, 1]. Flat or noisy blocks therefore contribute short vectors.

    Returns:
        Tuple of (cos_field, sin_field), each shaped (rows, cols)
    """
    if block_size is None:
        block_size = SEGMENTATION_BLOCK_SIZE

    gx, gy = gaussian_derivatives(image, grad_sigma)
    rows = image.shape[0] // block_size
    cols = image.shape[1] // block_size
    if rows == 0 or cols == 0:
        raise ValueError(f"Image {image.shape} smaller than one {block_size}px block")

    def block_sum(values: np.ndarray) -> np.ndarray:
        cropped = values[:rows * block_size, :cols * block_size]
        return cropped.reshape(rows, block_size, cols, block_size).sum(axis=(1, 3))

    gxx = block_sum(gx * gx)
    gyy = block_sum(gy * gy)
    gxy = block_sum(gx * gy)

    energy = gxx + gyy
    safe = np.where(energy > 1e-9, energy, 1.0)
    cos_field = np.where(energy > 1e-9, (gxx - gyy) / safe, 0.0)
    sin_field = np.where(energy > 1e-9, (2.0 * gxy) / safe, 0.0)
    return cos_field.astype(np.float32), sin_field.astype(np.float32)
