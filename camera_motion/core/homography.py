"""
Frame-to-frame homography estimation and the transform chain.
"""

import logging

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class TransformChain:
    """
    Ordered frame-to-frame homographies.

    Entry i maps frame i coordinates to frame i + 1 coordinates. Pairs whose
    transform could not be estimated hold None (a hole); anything composed
    through a hole is undefined.
    """

    def __init__(self, transforms=None):
        self.transforms = list(transforms) if transforms is not None else []

    @classmethod
    def with_holes(cls, count):
        return cls([None] * count)

    def __len__(self):
        return len(self.transforms)

    def __getitem__(self, index):
        return self.transforms[index]

    def __setitem__(self, index, transform):
        self.transforms[index] = transform

    def __iter__(self):
        return iter(self.transforms)

    def is_hole(self, index):
        return self.transforms[index] is None

    def holes(self):
        return [i for i, H in enumerate(self.transforms) if H is None]

    def copy(self):
        return TransformChain([None if H is None else H.copy() for H in self.transforms])

    def compose(self, start, end):
        """
        Compose the transforms from frame `start` to frame `end`.

        Args:
            start: Source frame index
            end: Target frame index (>= start)

        Returns:
            3x3 homography mapping frame `start` to frame `end`, or None if
            the span contains a hole
        """
        if end < start:
            raise ValueError(f"Cannot compose backwards from {start} to {end}")

        result = np.eye(3)
        for i in range(start, end):
            H = self.transforms[i]
            if H is None:
                return None
            result = H @ result
        return result


def is_stable(H, min_determinant=1e-6):
    """Check that a homography is finite and not degenerate."""
    if H is None or not np.all(np.isfinite(H)):
        return False
    if abs(H[2, 2]) < 1e-12:
        return False
    return abs(np.linalg.det(H[:2, :2] / H[2, 2])) > min_determinant


class TransformEstimator:
    """
    Fits one homography per frame pair from the inlier correspondences.
    """

    def __init__(self, config):
        """
        Initialize the transform estimator.

        Args:
            config: CameraMotionParameters with estimation parameters
        """
        self.config = config
        self.min_inliers = max(4, config.min_inliers)

    def estimate(self, match_set):
        """
        Estimate the transform of one frame pair.

        Args:
            match_set: MatchSet of the pair

        Returns:
            3x3 homography normalized so that H[2, 2] == 1, or None
        """
        if match_set is None or match_set.inlier_count < self.min_inliers:
            return None

        p1, p2 = match_set.inlier_points()
        H, _ = cv2.findHomography(p1, p2, 0)

        if not is_stable(H):
            return None

        return H / H[2, 2]
