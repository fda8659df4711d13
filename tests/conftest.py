from __future__ import annotations

import cv2
import numpy as np
import pytest

from siftmatch.config.options import SiftMatchingOptions
from siftmatch.core.feature_extraction import FeatureData, FeatureKeypoint


def block_descriptor(start: int) -> np.ndarray:
    """Descriptor with 16 entries of 128 starting at ``start``.

    Its squared norm is exactly 512^2, and descriptors with disjoint blocks
    have a dot product of 0.
    """
    desc = np.zeros(128, dtype=np.uint8)
    desc[start:start + 16] = 128
    return desc


def make_features(starts, points, image_id: int = -1) -> FeatureData:
    descriptors = np.stack([block_descriptor(s) for s in starts])
    keypoints = [FeatureKeypoint.from_scale_orientation(x, y, 1.0, 0.0) for x, y in points]
    return FeatureData(keypoints=keypoints, descriptors=descriptors, image_id=image_id)


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def matching_options():
    return SiftMatchingOptions(max_ratio=0.8, max_distance=1.0, cross_check=True, max_error=4.0)


@pytest.fixture
def blob_image():
    """Synthetic 256x256 grayscale image with blurred blobs of varying contrast."""
    rng = np.random.default_rng(42)
    image = np.full((256, 256), 128, dtype=np.uint8)
    for _ in range(40):
        center = (int(rng.integers(20, 236)), int(rng.integers(20, 236)))
        radius = int(rng.integers(4, 18))
        color = int(rng.choice([rng.integers(0, 70), rng.integers(190, 256)]))
        cv2.circle(image, center, radius, color, -1)
    for _ in range(10):
        x, y = int(rng.integers(10, 200)), int(rng.integers(10, 200))
        w, h = int(rng.integers(10, 40)), int(rng.integers(10, 40))
        cv2.rectangle(image, (x, y), (x + w, y + h), int(rng.integers(0, 256)), -1)
    return cv2.GaussianBlur(image, (5, 5), 1.0)
