#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Feature data structures and the detector interface.

Keypoints and quantized descriptors are produced by a detector behind the
``FeatureExtractor`` interface. ``SIFTExtractor`` wraps OpenCV's SIFT and
re-encodes its descriptors with the configured normalization.

Author: Alex Johnson
Date: 2024-01-18
Last modified: 2024-03-12
"""

import math
import logging
import numpy as np
import cv2
from typing import List, Optional, Tuple
from dataclasses import dataclass, replace
from tqdm import tqdm

from siftmatch.config.options import SiftExtractionOptions
from siftmatch.core.descriptors import DESCRIPTOR_DIM, encode_descriptors

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureKeypoint:
    """Keypoint with location and local affine shape.

    The affine shape [[a11, a12], [a21, a22]] maps the canonical unit frame
    onto the image, so scale and orientation are derived from it.
    """
    x: float
    y: float
    a11: float = 1.0
    a12: float = 0.0
    a21: float = 0.0
    a22: float = 1.0

    @classmethod
    def from_scale_orientation(cls, x: float, y: float,
                               scale: float, orientation: float) -> 'FeatureKeypoint':
        """Create a similarity keypoint from scale and orientation (radians)."""
        scale_cos = scale * math.cos(orientation)
        scale_sin = scale * math.sin(orientation)
        return cls(x=float(x), y=float(y),
                   a11=scale_cos, a12=-scale_sin,
                   a21=scale_sin, a22=scale_cos)

    @classmethod
    def from_shape(cls, x: float, y: float,
                   a11: float, a12: float, a21: float, a22: float) -> 'FeatureKeypoint':
        """Create a keypoint from a covariant affine shape."""
        return cls(x=float(x), y=float(y),
                   a11=float(a11), a12=float(a12), a21=float(a21), a22=float(a22))

    @property
    def scale_x(self) -> float:
        """Get the scale along the first shape axis."""
        return math.sqrt(self.a11 * self.a11 + self.a21 * self.a21)

    @property
    def scale_y(self) -> float:
        """Get the scale along the second shape axis."""
        return math.sqrt(self.a12 * self.a12 + self.a22 * self.a22)

    @property
    def scale(self) -> float:
        """Get the mean scale of both shape axes."""
        return (self.scale_x + self.scale_y) / 2.0

    @property
    def orientation(self) -> float:
        """Get the orientation in radians."""
        return math.atan2(self.a21, self.a11)

    @property
    def shear(self) -> float:
        """Get the shear angle between both shape axes in radians."""
        return math.atan2(-self.a12, self.a22) - self.orientation

    def rescale(self, scale_x: float, scale_y: float) -> 'FeatureKeypoint':
        """Return the keypoint in an image resized by (scale_x, scale_y)."""
        return replace(self,
                       x=self.x * scale_x, y=self.y * scale_y,
                       a11=self.a11 * scale_x, a12=self.a12 * scale_y,
                       a21=self.a21 * scale_x, a22=self.a22 * scale_y)


@dataclass
class FeatureData:
    """Container for the features of one image."""
    keypoints: List[FeatureKeypoint]  # Keypoints aligned with descriptor rows
    descriptors: np.ndarray  # Nx128 uint8 descriptors in UBC ordering
    image_size: Tuple[int, int] = (0, 0)  # (width, height) of the source image
    image_id: int = -1

    def __post_init__(self):
        descriptors = np.asarray(self.descriptors)
        if descriptors.size == 0:
            descriptors = descriptors.reshape(0, DESCRIPTOR_DIM)
        if descriptors.ndim != 2 or descriptors.shape[1] != DESCRIPTOR_DIM:
            raise ValueError(
                f"SIFT features must have {DESCRIPTOR_DIM} dimensions, got shape {descriptors.shape}")
        if len(self.keypoints) != descriptors.shape[0]:
            raise ValueError(
                f"Number of keypoints ({len(self.keypoints)}) must match "
                f"number of descriptors ({descriptors.shape[0]})")
        if descriptors.dtype != np.uint8:
            if descriptors.size and (descriptors.min() < 0 or descriptors.max() > 255):
                raise ValueError("Quantized descriptor values must be in [0, 255]")
            descriptors = descriptors.astype(np.uint8)
        self.descriptors = descriptors

    @classmethod
    def from_arrays(cls, keypoints: np.ndarray, descriptors: np.ndarray, **kwargs) -> 'FeatureData':
        """Create feature data from an Nx4 (x, y, scale, orientation) array.

        Args:
            keypoints: Nx4 keypoint array
            descriptors: Nx128 descriptor array
            **kwargs: image_size / image_id

        Returns:
            Feature data
        """
        keypoints = np.asarray(keypoints, dtype=np.float64).reshape(-1, 4)
        return cls(
            keypoints=[FeatureKeypoint.from_scale_orientation(*row) for row in keypoints],
            descriptors=descriptors,
            **kwargs
        )

    @property
    def num_features(self) -> int:
        """Get number of features."""
        return len(self.keypoints)

    @property
    def points(self) -> np.ndarray:
        """Get Nx2 array of (x, y) keypoint locations."""
        return np.array([(kp.x, kp.y) for kp in self.keypoints], dtype=np.float64).reshape(-1, 2)


class FeatureExtractor:
    """Base class for feature extractors."""

    def __init__(self, name: str):
        """Initialize feature extractor.

        Args:
            name: Name of the feature extractor
        """
        self.name = name

    def extract(self, image: np.ndarray, image_id: int = -1) -> FeatureData:
        """Extract features from image.

        Args:
            image: Input image
            image_id: Identifier stored with the features

        Returns:
            Feature data
        """
        raise NotImplementedError("Subclasses must implement extract")

    def extract_batch(self, images: List[np.ndarray]) -> List[FeatureData]:
        """Extract features from multiple images.

        Args:
            images: List of input images

        Returns:
            List of feature data, image_id set to the list index
        """
        features = []
        for image_id, image in enumerate(tqdm(images, desc=f"Extracting {self.name} features")):
            features.append(self.extract(image, image_id=image_id))

        return features


class SIFTExtractor(FeatureExtractor):
    """SIFT feature extractor backed by OpenCV."""

    def __init__(self, options: Optional[SiftExtractionOptions] = None):
        """Initialize SIFT extractor.

        Args:
            options: Extraction options
        """
        super().__init__("sift")

        self.options = options or SiftExtractionOptions()
        self.options.check()

        # OpenCV divides the contrast threshold by the number of octave
        # layers and compares against half of it; this recovers the peak
        # threshold on the DoG response.
        contrast_threshold = 2.0 * self.options.peak_threshold * self.options.octave_resolution

        self.sift = cv2.SIFT_create(
            nfeatures=self.options.max_num_features,
            nOctaveLayers=self.options.octave_resolution,
            contrastThreshold=contrast_threshold,
            edgeThreshold=self.options.edge_threshold
        )

    def _prepare_image(self, image: np.ndarray) -> np.ndarray:
        # Ensure image is grayscale
        if len(image.shape) > 2 and image.shape[2] > 1:
            image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        elif len(image.shape) > 2:
            image = image[:, :, 0]

        if image.dtype != np.uint8:
            image = np.clip(image, 0, 255).astype(np.uint8)

        height, width = image.shape[:2]
        max_size = max(width, height)
        if max_size > self.options.max_image_size:
            scale = self.options.max_image_size / max_size
            new_width = max(1, int(round(width * scale)))
            new_height = max(1, int(round(height * scale)))
            logger.debug(f"Resizing image from {width}x{height} to {new_width}x{new_height}")
            image = cv2.resize(image, (new_width, new_height), interpolation=cv2.INTER_AREA)

        return image

    @staticmethod
    def _make_upright(keypoints: List[cv2.KeyPoint]) -> List[cv2.KeyPoint]:
        """Fix orientations to zero, collapsing keypoints that only differ in orientation."""
        upright = {}
        for kp in keypoints:
            key = (round(kp.pt[0], 3), round(kp.pt[1], 3), round(kp.size, 3))
            if key in upright:
                continue
            upright[key] = cv2.KeyPoint(
                x=kp.pt[0],
                y=kp.pt[1],
                size=kp.size,
                angle=0.0,
                response=kp.response,
                octave=kp.octave,
                class_id=kp.class_id
            )
        return list(upright.values())

    def extract(self, image: np.ndarray, image_id: int = -1) -> FeatureData:
        """Extract SIFT features.

        Args:
            image: Input image (grayscale or BGR)
            image_id: Identifier stored with the features

        Returns:
            SIFT feature data with quantized descriptors
        """
        height, width = image.shape[:2]
        gray = self._prepare_image(image)

        if self.options.upright:
            keypoints = self._make_upright(self.sift.detect(gray, None))
            keypoints, descriptors = self.sift.compute(gray, keypoints)
        else:
            keypoints, descriptors = self.sift.detectAndCompute(gray, None)

        # Check if features were found
        if keypoints is None or len(keypoints) == 0 or descriptors is None:
            return FeatureData(
                keypoints=[],
                descriptors=np.zeros((0, DESCRIPTOR_DIM), dtype=np.uint8),
                image_size=(width, height),
                image_id=image_id
            )

        scale_x = width / gray.shape[1]
        scale_y = height / gray.shape[0]

        # OpenCV places pixel centers at integer coordinates, we use +0.5.
        # Its keypoint size is the diameter, i.e. twice the detection scale.
        feature_keypoints = [
            FeatureKeypoint.from_scale_orientation(
                kp.pt[0] + 0.5, kp.pt[1] + 0.5, kp.size / 2.0, math.radians(kp.angle)
            ).rescale(scale_x, scale_y)
            for kp in keypoints
        ]

        # OpenCV already uses the UBC bin ordering, only re-normalize here
        descriptors = encode_descriptors(descriptors.astype(np.float32),
                                         self.options.normalization)

        return FeatureData(
            keypoints=feature_keypoints,
            descriptors=descriptors,
            image_size=(width, height),
            image_id=image_id
        )


def extract_features(images: List[np.ndarray],
                     options: Optional[SiftExtractionOptions] = None) -> List[FeatureData]:
    """Extract SIFT features from images.

    Args:
        images: List of input images
        options: Extraction options

    Returns:
        List of feature data
    """
    extractor = SIFTExtractor(options)

    logger.info(f"Extracting sift features from {len(images)} images")
    features = extractor.extract_batch(images)

    # Log statistics
    total_features = sum(f.num_features for f in features)
    avg_features = total_features / len(images) if images else 0
    logger.info(f"Extracted {total_features} features ({avg_features:.1f} per image)")

    return features
