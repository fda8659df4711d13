#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
SIFT feature matching with ratio test, cross-check and guided matching.

Descriptors are compared through the dot product of their quantized
representations. Since quantized descriptors have norm 512, the dot product
divided by 512^2 is the cosine of the angle between the descriptors, and
matches are selected on that angle.

Author: Alex Johnson
Date: 2024-01-20
Last modified: 2024-03-15
"""

import logging
import numpy as np
from typing import Callable, List, Optional, Tuple
from dataclasses import dataclass
from tqdm import tqdm

from siftmatch.config.options import SiftMatchingOptions
from siftmatch.core.descriptors import DESCRIPTOR_DIM, DESCRIPTOR_NORM
from siftmatch.core.feature_extraction import FeatureData, FeatureKeypoint
from siftmatch.core.two_view_geometry import GuidedFilter, TwoViewGeometry, create_guided_filter

logger = logging.getLogger(__name__)

NO_MATCH = -1

# Quantized descriptors are normalized to length 512
DIST_NORM = 1.0 / (DESCRIPTOR_NORM * DESCRIPTOR_NORM)

GuidedFilterFn = Callable[..., np.ndarray]


@dataclass
class MatchData:
    """Container for feature matching data."""
    image_pair: Tuple[int, int]  # Pair of image ids
    matches: np.ndarray  # Mx2 array of feature indices (idx_1, idx_2)
    match_type: str  # Type of matching used ('sift' or 'sift_guided')

    @property
    def num_matches(self) -> int:
        """Get number of matches."""
        return len(self.matches)


def _as_descriptor_matrix(descriptors: np.ndarray, name: str) -> np.ndarray:
    descriptors = np.asarray(descriptors)
    if descriptors.size == 0:
        return np.zeros((0, DESCRIPTOR_DIM), dtype=np.float32)
    if descriptors.ndim != 2 or descriptors.shape[1] != DESCRIPTOR_DIM:
        raise ValueError(f"{name} must have shape (N, {DESCRIPTOR_DIM}), got {descriptors.shape}")
    return descriptors.astype(np.float32)


def _as_points(keypoints, num_descriptors: int, name: str) -> np.ndarray:
    if keypoints is None:
        raise ValueError(f"{name} are required for guided matching")
    if isinstance(keypoints, FeatureData):
        points = keypoints.points
    elif len(keypoints) > 0 and isinstance(keypoints[0], FeatureKeypoint):
        points = np.array([(kp.x, kp.y) for kp in keypoints], dtype=np.float64)
    else:
        points = np.asarray(keypoints, dtype=np.float64)
        if points.size == 0:
            points = points.reshape(0, 2)
    if points.ndim != 2 or points.shape[1] < 2:
        raise ValueError(f"{name} must be an array of (x, y, ...) rows, got shape {points.shape}")
    if points.shape[0] != num_descriptors:
        raise ValueError(
            f"Number of {name} ({points.shape[0]}) must match number of descriptors ({num_descriptors})")
    return points


def compute_distance_matrix(descriptors1: np.ndarray,
                            descriptors2: np.ndarray,
                            guided_filter: Optional[GuidedFilterFn] = None,
                            keypoints1: Optional[np.ndarray] = None,
                            keypoints2: Optional[np.ndarray] = None) -> np.ndarray:
    """Compute the dot products between all pairs of quantized descriptors.

    The guided filter must return True for pairs that violate the geometry.
    Those entries are set to 0, the minimum possible similarity. A
    ``GuidedFilter`` is evaluated once on broadcast coordinate arrays of
    shape (N1, 1) and (1, N2); any other callable is evaluated per cell.

    Args:
        descriptors1: N1x128 quantized descriptors of the first image
        descriptors2: N2x128 quantized descriptors of the second image
        guided_filter: Optional predicate (x1, y1, x2, y2) -> inconsistent
        keypoints1: N1x2 (or wider) keypoint array, required with a filter
        keypoints2: N2x2 (or wider) keypoint array, required with a filter

    Returns:
        N1xN2 int32 matrix of dot products
    """
    desc1 = _as_descriptor_matrix(descriptors1, "descriptors1")
    desc2 = _as_descriptor_matrix(descriptors2, "descriptors2")

    if guided_filter is not None:
        points1 = _as_points(keypoints1, desc1.shape[0], "keypoints1")
        points2 = _as_points(keypoints2, desc2.shape[0], "keypoints2")

    # Exact in float32: every partial sum is an integer below 128 * 255^2 < 2^24
    dists = np.rint(desc1 @ desc2.T).astype(np.int32)

    if guided_filter is not None and dists.size > 0:
        coords = (points1[:, 0:1], points1[:, 1:2],
                  points2[:, 0][np.newaxis, :], points2[:, 1][np.newaxis, :])
        if isinstance(guided_filter, GuidedFilter):
            inconsistent = guided_filter(*coords)
        else:
            # Plain predicates may only accept scalars
            inconsistent = np.vectorize(guided_filter, otypes=[bool])(*coords)
        inconsistent = np.broadcast_to(np.asarray(inconsistent, dtype=bool), dists.shape)
        dists[inconsistent] = 0

    return dists


def find_best_matches_one_way(dists: np.ndarray,
                              max_ratio: float,
                              max_distance: float) -> Tuple[np.ndarray, int]:
    """Find the best match in the columns for every row of a distance matrix.

    The second best similarity of a row is the second largest value counting
    duplicates, so a tie with the best match fails the ratio test. Only
    positive similarities count as candidates.

    Args:
        dists: N1xN2 dot product matrix
        max_ratio: Maximum ratio of best to second best angular distance
        max_distance: Maximum angular distance of the best match (radians)

    Returns:
        Tuple of (N1 array of column indices or NO_MATCH, number of matches)
    """
    dists = np.asarray(dists)
    num_rows, num_cols = dists.shape
    matches = np.full(num_rows, NO_MATCH, dtype=int)

    if num_rows == 0 or num_cols == 0:
        return matches, 0

    best_idx = np.argmax(dists, axis=1)
    best_dist = dists[np.arange(num_rows), best_idx].astype(np.float64)

    if num_cols > 1:
        second_best_dist = -np.partition(-dists, 1, axis=1)[:, 1].astype(np.float64)
        second_best_dist = np.maximum(second_best_dist, 0.0)
    else:
        second_best_dist = np.zeros(num_rows)

    best_dist_normed = np.arccos(np.minimum(DIST_NORM * best_dist, 1.0))
    second_best_dist_normed = np.arccos(np.minimum(DIST_NORM * second_best_dist, 1.0))

    # Keep the ratio comparison >= so that best == second_best is rejected
    valid = ((best_dist > 0) &
             (best_dist_normed <= max_distance) &
             ~(best_dist_normed >= max_ratio * second_best_dist_normed))

    matches[valid] = best_idx[valid]
    return matches, int(valid.sum())


def find_best_matches(dists: np.ndarray,
                      max_ratio: float,
                      max_distance: float,
                      cross_check: bool) -> np.ndarray:
    """Find matches in a distance matrix, optionally with mutual cross-check.

    Args:
        dists: N1xN2 dot product matrix
        max_ratio: Ratio test threshold
        max_distance: Maximum angular distance
        cross_check: Whether to require mutual best matches

    Returns:
        Mx2 array of (idx_1, idx_2) in increasing idx_1 order
    """
    matches12, num_matches12 = find_best_matches_one_way(dists, max_ratio, max_distance)
    rows = np.flatnonzero(matches12 != NO_MATCH)

    if cross_check:
        matches21, num_matches21 = find_best_matches_one_way(np.asarray(dists).T, max_ratio, max_distance)
        rows = rows[matches21[matches12[rows]] == rows]
        logger.debug(f"Cross-check kept {len(rows)} of {num_matches12} forward "
                     f"and {num_matches21} backward matches")

    return np.stack([rows, matches12[rows]], axis=1).astype(int)


def match_sift_features(options: SiftMatchingOptions,
                        descriptors1: np.ndarray,
                        descriptors2: np.ndarray) -> np.ndarray:
    """Match two sets of quantized SIFT descriptors.

    Args:
        options: Matching options
        descriptors1: N1x128 descriptors of the first image
        descriptors2: N2x128 descriptors of the second image

    Returns:
        Mx2 array of matches
    """
    options.check()

    dists = compute_distance_matrix(descriptors1, descriptors2)

    return find_best_matches(dists, options.max_ratio, options.max_distance, options.cross_check)


def match_guided_sift_features(options: SiftMatchingOptions,
                               features1: FeatureData,
                               features2: FeatureData,
                               two_view_geometry: TwoViewGeometry) -> None:
    """Match features restricted to correspondences consistent with a two-view geometry.

    The result replaces ``two_view_geometry.inlier_matches``. Geometries
    without a usable model leave it untouched.

    Args:
        options: Matching options
        features1: Features from first image
        features2: Features from second image
        two_view_geometry: Estimated geometry of the pair
    """
    options.check()

    guided_filter = create_guided_filter(two_view_geometry, options.max_error)
    if guided_filter is None:
        logger.debug(f"Skipping guided matching for configuration '{two_view_geometry.config}'")
        return

    dists = compute_distance_matrix(features1.descriptors, features2.descriptors,
                                    guided_filter=guided_filter,
                                    keypoints1=features1.points,
                                    keypoints2=features2.points)

    two_view_geometry.inlier_matches = find_best_matches(
        dists, options.max_ratio, options.max_distance, options.cross_check)


class FeatureMatcher:
    """Base class for feature matchers."""

    def __init__(self, name: str):
        """Initialize feature matcher.

        Args:
            name: Name of the feature matcher
        """
        self.name = name

    def match(self, features1: FeatureData, features2: FeatureData,
              two_view_geometry: Optional[TwoViewGeometry] = None) -> MatchData:
        """Match features between two images.

        Args:
            features1: Features from first image
            features2: Features from second image
            two_view_geometry: Optional geometry for guided matching

        Returns:
            Match data
        """
        raise NotImplementedError("Subclasses must implement match")

    def match_batch(self, features_list: List[FeatureData],
                    pairs: List[Tuple[int, int]],
                    geometries: Optional[List[TwoViewGeometry]] = None) -> List[MatchData]:
        """Match features between multiple image pairs.

        Args:
            features_list: List of feature data for each image
            pairs: List of image pairs to match (i, j)
            geometries: Optional two-view geometry per pair

        Returns:
            List of match data for the valid pairs
        """
        if geometries is not None and len(geometries) != len(pairs):
            raise ValueError(
                f"Number of geometries ({len(geometries)}) must match number of pairs ({len(pairs)})")

        matches = []
        for k, (i, j) in enumerate(tqdm(pairs, desc=f"Matching features using {self.name}")):
            if not (0 <= i < len(features_list) and 0 <= j < len(features_list)) or i == j:
                logger.warning(f"Skipping invalid pair ({i}, {j})")
                continue

            two_view_geometry = geometries[k] if geometries is not None else None
            matches.append(self.match(features_list[i], features_list[j], two_view_geometry))

        return matches


class SiftMatcher(FeatureMatcher):
    """Exhaustive SIFT matcher on quantized descriptors."""

    def __init__(self, options: Optional[SiftMatchingOptions] = None):
        """Initialize SIFT matcher.

        Args:
            options: Matching options
        """
        super().__init__("sift")
        self.options = options or SiftMatchingOptions()
        self.options.check()

    def match(self, features1: FeatureData, features2: FeatureData,
              two_view_geometry: Optional[TwoViewGeometry] = None) -> MatchData:
        """Match features, guided by the two-view geometry if enabled.

        Args:
            features1: Features from first image
            features2: Features from second image
            two_view_geometry: Optional geometry, used when options.guided_matching
                is set and it carries a usable model; plain matching otherwise

        Returns:
            Match data
        """
        image_pair = (features1.image_id, features2.image_id)

        guided = (self.options.guided_matching and two_view_geometry is not None and
                  create_guided_filter(two_view_geometry, self.options.max_error) is not None)

        if guided:
            match_guided_sift_features(self.options, features1, features2, two_view_geometry)
            logger.debug(f"Pair {image_pair}: {two_view_geometry.num_inliers} guided matches")
            return MatchData(
                image_pair=image_pair,
                matches=np.asarray(two_view_geometry.inlier_matches, dtype=int).reshape(-1, 2),
                match_type=self.name + "_guided"
            )

        matches = match_sift_features(self.options, features1.descriptors, features2.descriptors)
        logger.debug(f"Pair {image_pair}: {len(matches)} matches")

        return MatchData(
            image_pair=image_pair,
            matches=matches,
            match_type=self.name
        )


def match_features(features: List[FeatureData],
                   options: Optional[SiftMatchingOptions] = None,
                   pairs: Optional[List[Tuple[int, int]]] = None,
                   geometries: Optional[List[TwoViewGeometry]] = None) -> List[MatchData]:
    """Match features between images.

    Args:
        features: List of feature data for each image
        options: Matching options
        pairs: List of image pairs to match (i, j), all pairs i < j by default
        geometries: Optional two-view geometry per pair for guided matching

    Returns:
        List of match data
    """
    matcher = SiftMatcher(options)

    # Generate all pairs if not provided
    if pairs is None:
        pairs = []
        for i in range(len(features)):
            for j in range(i + 1, len(features)):
                pairs.append((i, j))

    logger.info(f"Matching features for {len(pairs)} image pairs")
    matches = matcher.match_batch(features, pairs, geometries)

    # Log statistics
    total_matches = sum(m.num_matches for m in matches)
    avg_matches = total_matches / len(matches) if matches else 0
    logger.info(f"Found {total_matches} total matches ({avg_matches:.1f} per pair)")

    return matches
