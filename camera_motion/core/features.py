"""
Feature detection and per-frame feature storage.
"""

import logging
import os

import cv2
import numpy as np

from .config import FeatureMethod
from .errors import MaskError

logger = logging.getLogger(__name__)


class FrameFeatures:
    """
    Interest points detected in one frame.

    Points are (x, y) in the frame pixel space, descriptors are opaque rows
    aligned with the points.
    """

    def __init__(self, points, descriptors):
        self.points = points
        self.descriptors = descriptors

    @classmethod
    def empty(cls):
        return cls(np.zeros((0, 2), dtype=np.float32), None)

    def __len__(self):
        return len(self.points)


class FeatureStore:
    """
    Fixed-size storage of FrameFeatures indexed by frame index.
    """

    def __init__(self, frame_count=0):
        self.entries = [None] * frame_count

    def __len__(self):
        return len(self.entries)

    def __getitem__(self, index):
        entry = self.entries[index]
        return entry if entry is not None else FrameFeatures.empty()

    def __setitem__(self, index, features):
        self.entries[index] = features

    def points(self):
        """Per-frame point arrays, in frame order."""
        return [self[i].points for i in range(len(self.entries))]


def load_mask(path):
    """
    Load a detection mask from an image file.

    Non-zero pixels are searched for features, zero pixels are excluded.

    Args:
        path: Path to the mask image

    Returns:
        Binary mask (uint8, 0 or 255)
    """
    if not path or not os.path.isfile(path):
        raise MaskError(f"Mask file not found: {path}")

    mask = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
    if mask is None:
        raise MaskError(f"Could not decode mask file: {path}")

    return np.where(mask > 0, 255, 0).astype(np.uint8)


class FeatureDetector:
    """
    Detects interest points in a frame, honoring an exclusion mask and a
    per-frame feature budget. Optionally distributes features over a grid so
    that textured areas do not take the whole budget.
    """

    def __init__(self, config):
        """
        Initialize the feature detector.

        Args:
            config: CameraMotionParameters with detection parameters
        """
        self.config = config
        self.max_features = config.features_per_frame
        self.grid_size = max(1, config.grid_size)
        self.features_per_grid = max(1, self.max_features // (self.grid_size * self.grid_size))
        self.detector = self._create_backend(config.feature_method)

        self.use_clahe = config.use_clahe
        self.clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))

        self.num_features = 0

    def _create_backend(self, method):
        if method == FeatureMethod.ORB:
            return cv2.ORB_create(nfeatures=self.max_features)
        elif method == FeatureMethod.SIFT:
            return cv2.SIFT_create(nfeatures=self.max_features)
        elif method == FeatureMethod.AKAZE:
            return cv2.AKAZE_create()
        else:
            raise ValueError(f"Unknown feature method: {method}")

    def detect(self, image, mask=None):
        """
        Detect features in the given frame.

        Args:
            image: Input image (grayscale or BGR)
            mask: Optional binary mask, zero pixels are excluded

        Returns:
            FrameFeatures, possibly empty
        """
        if image is None or image.size == 0:
            self.num_features = 0
            return FrameFeatures.empty()

        if len(image.shape) > 2:
            gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        else:
            gray = image

        if self.use_clahe:
            gray = self.clahe.apply(gray)

        if self.grid_size > 1:
            keypoints = self._detect_grid(gray, mask)
        else:
            keypoints = list(self.detector.detect(gray, mask))

        if not keypoints:
            self.num_features = 0
            return FrameFeatures.empty()

        keypoints, descriptors = self.detector.compute(gray, keypoints)
        if keypoints is None or len(keypoints) == 0 or descriptors is None:
            self.num_features = 0
            return FrameFeatures.empty()

        points = np.float32([kp.pt for kp in keypoints]).reshape(-1, 2)
        responses = np.float32([kp.response for kp in keypoints])

        # Descriptor computation can shift keypoints, check the mask again.
        if mask is not None:
            keep = self._inside_mask(points, mask)
            points, descriptors, responses = points[keep], descriptors[keep], responses[keep]

        if len(points) > self.max_features:
            order = np.argsort(-responses, kind='stable')[:self.max_features]
            order.sort()
            points, descriptors = points[order], descriptors[order]

        self.num_features = len(points)
        return FrameFeatures(points, descriptors)

    def _detect_grid(self, gray, mask):
        """Detect features cell by cell and keep the strongest of each cell."""
        height, width = gray.shape
        cell_h = height // self.grid_size
        cell_w = width // self.grid_size

        all_keypoints = []
        for i in range(self.grid_size):
            for j in range(self.grid_size):
                x_start = j * cell_w
                y_start = i * cell_h
                x_end = width if j == self.grid_size - 1 else (j + 1) * cell_w
                y_end = height if i == self.grid_size - 1 else (i + 1) * cell_h

                # Skip cells that are too small
                if x_end - x_start < 10 or y_end - y_start < 10:
                    continue

                cell_mask = np.zeros(gray.shape, dtype=np.uint8)
                cell_mask[y_start:y_end, x_start:x_end] = 255
                if mask is not None:
                    cell_mask = cv2.bitwise_and(cell_mask, mask)

                cell_keypoints = self.detector.detect(gray, cell_mask)
                if cell_keypoints:
                    cell_keypoints = sorted(cell_keypoints,
                                            key=lambda kp: (-kp.response, kp.pt[1], kp.pt[0]))
                    all_keypoints.extend(cell_keypoints[:self.features_per_grid])

        return all_keypoints

    @staticmethod
    def _inside_mask(points, mask):
        height, width = mask.shape[:2]
        cols = np.clip(np.rint(points[:, 0]).astype(int), 0, width - 1)
        rows = np.clip(np.rint(points[:, 1]).astype(int), 0, height - 1)
        return mask[rows, cols] > 0

    def get_stats(self):
        """Get detector statistics"""
        return {
            'num_features': self.num_features,
            'max_features': self.max_features,
            'grid_size': self.grid_size,
        }
