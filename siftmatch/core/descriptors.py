#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
SIFT descriptor codec: normalization, quantization and bin reordering.

Quantized descriptors are uint8 vectors scaled so that a unit-norm float
descriptor maps to an L2 norm of 512. The matcher relies on this scale to
turn integer dot products back into angles.

Author: Alex Johnson
Date: 2024-01-18
Last modified: 2024-03-12
"""

import logging
import numpy as np

from siftmatch.config.options import NORMALIZATION_L1_ROOT, NORMALIZATION_L2

logger = logging.getLogger(__name__)

DESCRIPTOR_DIM = 128
DESCRIPTOR_NORM = 512
NUM_SPATIAL_CELLS = 16
NUM_ORIENTATION_BINS = 8

# VLFeat stores the orientation bins of each cell in the opposite rotational
# direction than the original UBC SIFT (and SiftGPU).
UBC_BIN_PERMUTATION = np.array([0, 7, 6, 5, 4, 3, 2, 1])


def _as_descriptor_matrix(descriptors: np.ndarray) -> np.ndarray:
    """Return a 2D view of one descriptor (128,) or a batch (N, 128)."""
    descriptors = np.asarray(descriptors)
    matrix = descriptors.reshape(1, -1) if descriptors.ndim == 1 else descriptors
    if matrix.ndim != 2 or matrix.shape[1] != DESCRIPTOR_DIM:
        raise ValueError(
            f"SIFT descriptors must have {DESCRIPTOR_DIM} dimensions, got shape {descriptors.shape}")
    return matrix


def l2_normalize_descriptors(descriptors: np.ndarray) -> np.ndarray:
    """Normalize descriptors to unit L2 norm.

    Descriptors with zero norm are returned as all-zero vectors.

    Args:
        descriptors: Descriptor (128,) or descriptors (N, 128)

    Returns:
        Normalized float32 descriptors with the input shape
    """
    matrix = _as_descriptor_matrix(descriptors).astype(np.float32)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    normalized = np.divide(matrix, norms, out=np.zeros_like(matrix), where=norms > 0)
    return normalized.reshape(np.shape(descriptors))


def l1_root_normalize_descriptors(descriptors: np.ndarray) -> np.ndarray:
    """Normalize descriptors to unit L1 norm and take the element-wise square root.

    This is the RootSIFT scheme from Arandjelovic and Zisserman, "Three things
    everyone should know to improve object retrieval", CVPR 2012. Matching the
    results with the dot product then amounts to the Hellinger kernel on the
    original histograms.

    Args:
        descriptors: Descriptor (128,) or descriptors (N, 128)

    Returns:
        Normalized float32 descriptors with the input shape
    """
    matrix = _as_descriptor_matrix(descriptors).astype(np.float32)
    norms = np.abs(matrix).sum(axis=1, keepdims=True)
    normalized = np.divide(matrix, norms, out=np.zeros_like(matrix), where=norms > 0)
    # Gradient histograms are non-negative; clip so sqrt never yields NaN
    normalized = np.sqrt(np.maximum(normalized, 0.0))
    return normalized.reshape(np.shape(descriptors))


def normalize_descriptors(descriptors: np.ndarray, normalization: str) -> np.ndarray:
    """Normalize descriptors with the given scheme.

    Args:
        descriptors: Descriptor (128,) or descriptors (N, 128)
        normalization: 'L2' or 'L1_ROOT'

    Returns:
        Normalized float32 descriptors
    """
    if normalization == NORMALIZATION_L2:
        return l2_normalize_descriptors(descriptors)
    elif normalization == NORMALIZATION_L1_ROOT:
        return l1_root_normalize_descriptors(descriptors)
    else:
        raise ValueError(f"Normalization type not supported: {normalization}")


def quantize_descriptors(normalized: np.ndarray) -> np.ndarray:
    """Convert normalized float descriptors to unsigned bytes.

    Values are scaled by 512, rounded and clamped to [0, 255].

    Args:
        normalized: Normalized descriptor (128,) or descriptors (N, 128)

    Returns:
        uint8 descriptors with the input shape
    """
    matrix = _as_descriptor_matrix(normalized).astype(np.float32)
    scaled = np.round(DESCRIPTOR_NORM * matrix)
    # NaN would survive np.clip and cast to an undefined integer
    scaled = np.nan_to_num(scaled, nan=0.0)
    quantized = np.clip(scaled, 0, 255).astype(np.uint8)
    return quantized.reshape(np.shape(normalized))


def _permute_bins(descriptors: np.ndarray, permutation: np.ndarray) -> np.ndarray:
    matrix = _as_descriptor_matrix(descriptors)
    cells = matrix.reshape(-1, NUM_SPATIAL_CELLS, NUM_ORIENTATION_BINS)
    permuted = np.empty_like(cells)
    # Source bin k lands on destination bin permutation[k] within the same cell
    permuted[:, :, permutation] = cells
    return permuted.reshape(np.shape(descriptors))


def to_ubc_ordering(descriptors: np.ndarray) -> np.ndarray:
    """Transform VLFeat-ordered descriptors into the UBC SIFT bin ordering.

    For each of the 4x4 spatial cells (cell index 4 * row + col), the 8
    orientation bins are permuted with ``UBC_BIN_PERMUTATION``.

    Args:
        descriptors: Descriptor (128,) or descriptors (N, 128) in VLFeat ordering

    Returns:
        Descriptors in UBC ordering, same shape and dtype
    """
    return _permute_bins(descriptors, UBC_BIN_PERMUTATION)


def to_vlfeat_ordering(descriptors: np.ndarray) -> np.ndarray:
    """Transform UBC-ordered descriptors back into the VLFeat bin ordering."""
    return _permute_bins(descriptors, np.argsort(UBC_BIN_PERMUTATION))


def encode_descriptors(raw_descriptors: np.ndarray,
                       normalization: str,
                       to_ubc: bool = False) -> np.ndarray:
    """Normalize and quantize raw float descriptors.

    Args:
        raw_descriptors: Raw descriptors (N, 128) from a detector
        normalization: 'L2' or 'L1_ROOT'
        to_ubc: Whether the detector uses the VLFeat bin ordering that
            must be converted to the UBC ordering

    Returns:
        uint8 descriptors (N, 128)
    """
    quantized = quantize_descriptors(normalize_descriptors(raw_descriptors, normalization))
    if to_ubc:
        quantized = to_ubc_ordering(quantized)
    return quantized
