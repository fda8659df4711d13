#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
I/O utility functions for the plain-text feature and match formats.

Feature files start with a header line "N D" (number of features and
descriptor dimension, D = 128), followed by one line per feature:
"x y scale orientation d_1 ... d_D" with integer descriptor values in [0, 255].

Author: Michael Chen
Date: 2024-01-15
Last modified: 2024-03-02
"""

import os
import logging
import numpy as np
from typing import List

from siftmatch.core.descriptors import DESCRIPTOR_DIM
from siftmatch.core.feature_extraction import FeatureData, FeatureKeypoint

logger = logging.getLogger(__name__)


def ensure_dir(directory: str) -> str:
    """Ensure directory exists, creating it if necessary.

    Args:
        directory: Directory path

    Returns:
        Absolute path to directory
    """
    if directory == "":
        return directory

    directory = os.path.abspath(directory)
    if not os.path.exists(directory):
        os.makedirs(directory, exist_ok=True)

    return directory


def _parse_header(line: str, path: str):
    items = line.split()
    if len(items) != 2:
        raise ValueError(f"{path}:1: expected header 'num_features dim', got '{line.strip()}'")
    try:
        num_features, dim = int(items[0]), int(items[1])
    except ValueError:
        raise ValueError(f"{path}:1: header values must be integers, got '{line.strip()}'")
    if num_features < 0:
        raise ValueError(f"{path}:1: number of features must be non-negative, got {num_features}")
    if dim != DESCRIPTOR_DIM:
        raise ValueError(f"{path}:1: SIFT features must have {DESCRIPTOR_DIM} dimensions, got {dim}")
    return num_features, dim


def load_sift_features_from_text_file(path: str) -> FeatureData:
    """Load keypoints and quantized descriptors from a text file.

    Args:
        path: Path to feature file

    Returns:
        Feature data

    Raises:
        ValueError: If the file is malformed or a descriptor value is outside [0, 255]
    """
    with open(path, 'r') as f:
        lines = f.read().splitlines()

    if not lines:
        raise ValueError(f"{path}: empty feature file")

    num_features, dim = _parse_header(lines[0], path)

    if len(lines) - 1 < num_features:
        raise ValueError(f"{path}: expected {num_features} features, found {len(lines) - 1} lines")

    keypoints = []
    descriptors = np.zeros((num_features, dim), dtype=np.uint8)

    for i in range(num_features):
        line_number = i + 2
        items = lines[i + 1].split()
        if len(items) != 4 + dim:
            raise ValueError(
                f"{path}:{line_number}: expected {4 + dim} values, got {len(items)}")

        try:
            x, y, scale, orientation = (float(v) for v in items[:4])
            values = np.array([float(v) for v in items[4:]])
        except ValueError:
            raise ValueError(f"{path}:{line_number}: non-numeric value")

        if np.any(~np.isfinite(values)) or np.any(values < 0) or np.any(values > 255):
            raise ValueError(f"{path}:{line_number}: descriptor values must be in [0, 255]")

        keypoints.append(FeatureKeypoint.from_scale_orientation(x, y, scale, orientation))
        # Truncate like a C cast after the range check
        descriptors[i] = values.astype(np.uint8)

    logger.debug(f"Loaded {num_features} features from {path}")

    return FeatureData(keypoints=keypoints, descriptors=descriptors)


def save_sift_features_to_text_file(path: str, features: FeatureData) -> None:
    """Save keypoints and descriptors to a text file.

    Args:
        path: Output file path
        features: Feature data
    """
    ensure_dir(os.path.dirname(path))

    with open(path, 'w') as f:
        f.write(f"{features.num_features} {DESCRIPTOR_DIM}\n")
        for kp, desc in zip(features.keypoints, features.descriptors):
            values = " ".join(str(int(v)) for v in desc)
            f.write(f"{kp.x:.6f} {kp.y:.6f} {kp.scale:.6f} {kp.orientation:.6f} {values}\n")

    logger.debug(f"Saved {features.num_features} features to {path}")


def save_matches_to_text_file(path: str, matches: np.ndarray) -> None:
    """Save matches as one "idx_1 idx_2" pair per line.

    Args:
        path: Output file path
        matches: Mx2 array of matches
    """
    ensure_dir(os.path.dirname(path))

    matches = np.asarray(matches, dtype=int).reshape(-1, 2)
    with open(path, 'w') as f:
        for idx1, idx2 in matches:
            f.write(f"{idx1} {idx2}\n")


def load_matches_from_text_file(path: str) -> np.ndarray:
    """Load matches written by ``save_matches_to_text_file``.

    Args:
        path: Path to match file

    Returns:
        Mx2 array of matches
    """
    matches: List[List[int]] = []
    with open(path, 'r') as f:
        for line_number, line in enumerate(f, start=1):
            items = line.split()
            if not items:
                continue
            if len(items) != 2:
                raise ValueError(f"{path}:{line_number}: expected 'idx_1 idx_2', got '{line.strip()}'")
            try:
                idx1, idx2 = int(items[0]), int(items[1])
            except ValueError:
                raise ValueError(f"{path}:{line_number}: match indices must be integers")
            if idx1 < 0 or idx2 < 0:
                raise ValueError(f"{path}:{line_number}: match indices must be non-negative")
            matches.append([idx1, idx2])

    return np.array(matches, dtype=int).reshape(-1, 2)
