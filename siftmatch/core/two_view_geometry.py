#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Two-view geometry container and geometric consistency filters for guided matching.

The geometry itself (fundamental matrix, homography and configuration type)
is estimated elsewhere; this module only consumes it to decide whether a
candidate correspondence agrees with the model.

Author: Sarah Li
Date: 2024-01-22
Last modified: 2024-03-10
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

logger = logging.getLogger(__name__)

# Configuration types of a two-view geometry
UNDEFINED = "undefined"
DEGENERATE = "degenerate"
CALIBRATED = "calibrated"  # Essential matrix
UNCALIBRATED = "uncalibrated"  # Fundamental matrix
PLANAR = "planar"  # Homography, planar scene with baseline
PANORAMIC = "panoramic"  # Homography, pure rotation without baseline
PLANAR_OR_PANORAMIC = "planar_or_panoramic"  # Homography, planar or panoramic
WATERMARK = "watermark"  # Watermark, pure 2D translation in image borders
MULTIPLE = "multiple"  # Multi-model configuration

CONFIG_TYPES = (UNDEFINED, DEGENERATE, CALIBRATED, UNCALIBRATED, PLANAR,
                PANORAMIC, PLANAR_OR_PANORAMIC, WATERMARK, MULTIPLE)
EPIPOLAR_CONFIGS = (CALIBRATED, UNCALIBRATED)
HOMOGRAPHY_CONFIGS = (PLANAR, PANORAMIC, PLANAR_OR_PANORAMIC)


def _empty_matches() -> np.ndarray:
    return np.zeros((0, 2), dtype=int)


@dataclass
class TwoViewGeometry:
    """Two-view geometry between an image pair."""
    config: str = UNDEFINED  # Configuration type
    F: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))  # Fundamental matrix
    H: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))  # Homography
    inlier_matches: np.ndarray = field(default_factory=_empty_matches)  # Mx2 (idx1, idx2)

    def __post_init__(self):
        if self.config not in CONFIG_TYPES:
            raise ValueError(f"Unknown two-view geometry configuration: {self.config}")
        self.F = np.asarray(self.F, dtype=np.float64)
        self.H = np.asarray(self.H, dtype=np.float64)
        if self.F.shape != (3, 3) or self.H.shape != (3, 3):
            raise ValueError("F and H must be 3x3 matrices")

    @property
    def num_inliers(self) -> int:
        """Get number of inlier matches."""
        return len(self.inlier_matches)


class GuidedFilter:
    """Base class for geometric consistency filters.

    ``is_inconsistent`` accepts scalars or numpy arrays that broadcast
    against each other, so a full NxM mask is evaluated in one call.
    """

    def __init__(self, max_error: float):
        """Initialize guided filter.

        Args:
            max_error: Maximum residual in pixels
        """
        if not max_error > 0:
            raise ValueError(f"max_error must be > 0, got {max_error}")
        self.max_error = max_error
        self.max_residual = max_error * max_error

    def is_inconsistent(self, x1, y1, x2, y2) -> np.ndarray:
        """Check whether correspondences violate the model.

        Args:
            x1, y1: Point coordinates in the first image
            x2, y2: Point coordinates in the second image

        Returns:
            Boolean (array), True where the residual exceeds max_error
        """
        raise NotImplementedError("Subclasses must implement is_inconsistent")

    def __call__(self, x1, y1, x2, y2) -> np.ndarray:
        return self.is_inconsistent(x1, y1, x2, y2)


class EpipolarGuidedFilter(GuidedFilter):
    """Filter based on the Sampson distance to the epipolar lines of F."""

    def __init__(self, F: np.ndarray, max_error: float):
        super().__init__(max_error)
        self.F = np.asarray(F, dtype=np.float64)

    def residuals(self, x1, y1, x2, y2) -> np.ndarray:
        """Compute squared Sampson residuals.

        Returns:
            Residuals, inf where the epipolar lines are degenerate
        """
        F = self.F
        x1, y1, x2, y2 = np.broadcast_arrays(*(np.asarray(v, dtype=np.float64) for v in (x1, y1, x2, y2)))

        # F * p1 with p1 = (x1, y1, 1)
        Fx1_0 = F[0, 0] * x1 + F[0, 1] * y1 + F[0, 2]
        Fx1_1 = F[1, 0] * x1 + F[1, 1] * y1 + F[1, 2]
        Fx1_2 = F[2, 0] * x1 + F[2, 1] * y1 + F[2, 2]

        # F^T * p2 with p2 = (x2, y2, 1)
        Ftx2_0 = F[0, 0] * x2 + F[1, 0] * y2 + F[2, 0]
        Ftx2_1 = F[0, 1] * x2 + F[1, 1] * y2 + F[2, 1]

        x2tFx1 = x2 * Fx1_0 + y2 * Fx1_1 + Fx1_2
        denom = Fx1_0 * Fx1_0 + Fx1_1 * Fx1_1 + Ftx2_0 * Ftx2_0 + Ftx2_1 * Ftx2_1

        return np.divide(x2tFx1 * x2tFx1, denom,
                         out=np.full(denom.shape, np.inf), where=denom > 0)

    def is_inconsistent(self, x1, y1, x2, y2) -> np.ndarray:
        return self.residuals(x1, y1, x2, y2) > self.max_residual


class HomographyGuidedFilter(GuidedFilter):
    """Filter based on the transfer error of points mapped by H."""

    def __init__(self, H: np.ndarray, max_error: float):
        super().__init__(max_error)
        self.H = np.asarray(H, dtype=np.float64)

    def residuals(self, x1, y1, x2, y2) -> np.ndarray:
        """Compute squared transfer errors ||H * p1 - p2||^2.

        Returns:
            Residuals, inf where H maps p1 to infinity
        """
        H = self.H
        x1, y1, x2, y2 = np.broadcast_arrays(*(np.asarray(v, dtype=np.float64) for v in (x1, y1, x2, y2)))

        u = H[0, 0] * x1 + H[0, 1] * y1 + H[0, 2]
        v = H[1, 0] * x1 + H[1, 1] * y1 + H[1, 2]
        w = H[2, 0] * x1 + H[2, 1] * y1 + H[2, 2]

        valid = w != 0
        safe_w = np.where(valid, w, 1.0)
        dx = u / safe_w - x2
        dy = v / safe_w - y2

        return np.where(valid, dx * dx + dy * dy, np.inf)

    def is_inconsistent(self, x1, y1, x2, y2) -> np.ndarray:
        return self.residuals(x1, y1, x2, y2) > self.max_residual


def create_guided_filter(two_view_geometry: TwoViewGeometry,
                         max_error: float) -> Optional[GuidedFilter]:
    """Create the guided filter matching the geometry configuration.

    Args:
        two_view_geometry: Estimated two-view geometry
        max_error: Maximum residual in pixels

    Returns:
        Guided filter, or None if the configuration has no usable model
    """
    if two_view_geometry.config in EPIPOLAR_CONFIGS:
        return EpipolarGuidedFilter(two_view_geometry.F, max_error)
    elif two_view_geometry.config in HOMOGRAPHY_CONFIGS:
        return HomographyGuidedFilter(two_view_geometry.H, max_error)
    else:
        return None


class TwoViewGeometryEstimator:
    """Interface of the external two-view geometry estimator."""

    def estimate(self, features1, features2, matches: np.ndarray) -> TwoViewGeometry:
        """Estimate the two-view geometry of an image pair.

        Args:
            features1: Features from first image
            features2: Features from second image
            matches: Mx2 array of putative matches

        Returns:
            Two-view geometry with configuration type, F and H
        """
        raise NotImplementedError("Subclasses must implement estimate")

    def estimate_batch(self, features_list: List, pairs: List, matches_list: List) -> List[TwoViewGeometry]:
        """Estimate the two-view geometries of multiple image pairs.

        Args:
            features_list: List of feature data for each image
            pairs: List of image pairs (i, j)
            matches_list: Putative matches for each pair

        Returns:
            List of two-view geometries
        """
        return [self.estimate(features_list[i], features_list[j], matches)
                for (i, j), matches in zip(pairs, matches_list)]
