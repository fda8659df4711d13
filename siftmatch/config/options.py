#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Option structures for SIFT extraction and matching.

Options are immutable and validated with ``check()`` before any extraction
or matching call uses them. Invalid values raise ``ValueError``.

Author: Michael Chen
Date: 2024-01-10
Last modified: 2024-03-08
"""

import logging
from dataclasses import dataclass, fields
from typing import Any, Dict, Tuple, Type, TypeVar

import yaml

logger = logging.getLogger(__name__)

NORMALIZATION_L2 = "L2"
NORMALIZATION_L1_ROOT = "L1_ROOT"
SUPPORTED_NORMALIZATIONS = (NORMALIZATION_L2, NORMALIZATION_L1_ROOT)

OptionsT = TypeVar("OptionsT")


def _check_gt(name: str, value: float, bound: float) -> None:
    if not value > bound:
        raise ValueError(f"Option {name} must be > {bound}, got {value}")


@dataclass(frozen=True)
class SiftExtractionOptions:
    """SIFT extraction options."""
    normalization: str = NORMALIZATION_L1_ROOT  # Descriptor normalization (L2 or L1_ROOT)
    max_image_size: int = 3200  # Images are downscaled so that max(width, height) fits
    max_num_features: int = 8192  # Maximum number of detected features
    octave_resolution: int = 3  # Number of levels per octave
    peak_threshold: float = 0.02 / 3  # Peak threshold on the DoG response
    edge_threshold: float = 10.0  # Edge (principal curvature ratio) threshold
    upright: bool = False  # Fix orientation to 0 for upright features

    def check(self) -> bool:
        """Validate the option values.

        Returns:
            True if all values are valid

        Raises:
            ValueError: If a value is out of range or unsupported
        """
        if self.normalization not in SUPPORTED_NORMALIZATIONS:
            raise ValueError(f"Normalization type not supported: {self.normalization}")
        _check_gt("max_image_size", self.max_image_size, 0)
        _check_gt("max_num_features", self.max_num_features, 0)
        _check_gt("octave_resolution", self.octave_resolution, 0)
        _check_gt("peak_threshold", self.peak_threshold, 0.0)
        _check_gt("edge_threshold", self.edge_threshold, 0.0)
        return True


@dataclass(frozen=True)
class SiftMatchingOptions:
    """SIFT matching options."""
    max_ratio: float = 0.8  # Maximum distance ratio between first and second best match
    max_distance: float = 0.7  # Maximum angular distance to the best match
    cross_check: bool = True  # Require mutual best matches
    max_error: float = 4.0  # Maximum epipolar/transfer error in pixels for guided matching
    guided_matching: bool = False  # Re-match using the two-view geometry when available

    def check(self) -> bool:
        """Validate the option values.

        Returns:
            True if all values are valid

        Raises:
            ValueError: If a value is out of range
        """
        _check_gt("max_ratio", self.max_ratio, 0.0)
        _check_gt("max_distance", self.max_distance, 0.0)
        _check_gt("max_error", self.max_error, 0.0)
        return True


def options_from_dict(cls: Type[OptionsT], data: Dict[str, Any]) -> OptionsT:
    """Create an options object from a dictionary.

    Args:
        cls: Options class (SiftExtractionOptions or SiftMatchingOptions)
        data: Option values; missing keys keep their defaults

    Returns:
        Checked options instance
    """
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {', '.join(unknown)}")

    options = cls(**data)
    options.check()
    return options


def load_options(config_path: str) -> Tuple[SiftExtractionOptions, SiftMatchingOptions]:
    """Load extraction and matching options from a YAML file.

    The file may contain an ``extraction`` and a ``matching`` section.
    Missing sections fall back to defaults.

    Args:
        config_path: Path to configuration file

    Returns:
        Tuple of (extraction options, matching options)
    """
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping")

    unknown = sorted(set(config) - {"extraction", "matching"})
    if unknown:
        raise ValueError(f"Unknown configuration sections: {', '.join(unknown)}")

    extraction_options = options_from_dict(SiftExtractionOptions, config.get("extraction") or {})
    matching_options = options_from_dict(SiftMatchingOptions, config.get("matching") or {})

    logger.info(f"Loaded options from {config_path}")
    logger.debug(f"Extraction options: {extraction_options}")
    logger.debug(f"Matching options: {matching_options}")

    return extraction_options, matching_options
