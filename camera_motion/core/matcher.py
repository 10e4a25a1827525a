"""
Feature matching components for camera motion estimation.

Candidate correspondences are proposed by nearest descriptor distance, then
classified as inliers or outliers by a robust homography consensus.
"""

import logging
from collections import namedtuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)


Match = namedtuple('Match', ['p1', 'p2', 'inlier'])


class MatchSet:
    """
    Correspondences between the features of frame i and frame i + 1.

    All arrays are aligned: src_idx/dst_idx index the features of each frame,
    p1/p2 are the matched coordinates and inliers is the consensus flag.
    """

    def __init__(self, src_idx, dst_idx, p1, p2, inliers):
        self.src_idx = src_idx
        self.dst_idx = dst_idx
        self.p1 = p1
        self.p2 = p2
        self.inliers = inliers

    @classmethod
    def empty(cls):
        return cls(np.zeros(0, dtype=np.int32), np.zeros(0, dtype=np.int32),
                   np.zeros((0, 2), dtype=np.float32), np.zeros((0, 2), dtype=np.float32),
                   np.zeros(0, dtype=bool))

    def __len__(self):
        return len(self.src_idx)

    @property
    def inlier_count(self):
        return int(np.count_nonzero(self.inliers))

    def inlier_points(self):
        return self.p1[self.inliers], self.p2[self.inliers]

    def with_inliers(self, inliers):
        """Copy of this set with revised inlier flags."""
        return MatchSet(self.src_idx, self.dst_idx, self.p1, self.p2, inliers)

    def to_list(self):
        return [Match((float(a[0]), float(a[1])), (float(b[0]), float(b[1])), bool(f))
                for a, b, f in zip(self.p1, self.p2, self.inliers)]


class CorrespondenceMatcher:
    """
    Brute force descriptor matcher with homography consensus.

    Each source feature is paired with its nearest target descriptor. Equal
    distances resolve to the lowest target index, so results only depend on
    the inputs.
    """

    def __init__(self, config):
        """
        Initialize the matcher.

        Args:
            config: CameraMotionParameters with matching parameters
        """
        self.config = config
        self.max_distance_ratio = config.max_distance_ratio
        self.cross_check = config.cross_check
        self.min_matches = max(4, config.min_matches)
        self.ransac_threshold = config.ransac_threshold
        self.ransac_max_iterations = config.ransac_max_iterations
        self.ransac_confidence = config.ransac_confidence
        self._matchers = {}

        self.num_candidates = 0
        self.num_inliers = 0

    def propose(self, desc1, desc2):
        """
        Propose candidate correspondences by nearest descriptor distance.

        Args:
            desc1: Descriptors of frame i (N1 x D)
            desc2: Descriptors of frame i + 1 (N2 x D)

        Returns:
            src_idx: Indices into desc1
            dst_idx: Indices into desc2
        """
        if desc1 is None or desc2 is None or len(desc1) == 0 or len(desc2) == 0:
            return np.zeros(0, dtype=np.int32), np.zeros(0, dtype=np.int32)

        desc1, desc2 = self._prepare(desc1), self._prepare(desc2)
        matcher = self._bf_matcher(desc1)

        # Match descriptors using kNN
        matches = matcher.knnMatch(desc1, desc2, k=2)

        src_idx = []
        dst_idx = []
        for i, match_pair in enumerate(matches):
            if len(match_pair) == 0:
                continue
            best = _nearest(match_pair)

            # Lowe's ratio test against the second nearest target
            if self.max_distance_ratio < 1.0 and len(match_pair) == 2:
                second = max(match_pair, key=lambda m: (m.distance, m.trainIdx))
                if not best.distance < self.max_distance_ratio * second.distance:
                    continue

            src_idx.append(i)
            dst_idx.append(best.trainIdx)

        src_idx = np.array(src_idx, dtype=np.int32)
        dst_idx = np.array(dst_idx, dtype=np.int32)

        # Keep mutual nearest neighbors only
        if self.cross_check and len(src_idx) > 0:
            reverse = matcher.knnMatch(desc2, desc1, k=2)
            keep = np.array([_nearest(reverse[j]).trainIdx == i for i, j in zip(src_idx, dst_idx)])
            src_idx = src_idx[keep]
            dst_idx = dst_idx[keep]

        return src_idx, dst_idx

    @staticmethod
    def _prepare(desc):
        if desc.dtype == np.uint8:
            return np.ascontiguousarray(desc)
        return np.ascontiguousarray(desc, dtype=np.float32)

    def _bf_matcher(self, desc):
        # Binary descriptors (ORB, AKAZE) are uint8, float ones (SIFT) use L2
        norm = cv2.NORM_HAMMING if desc.dtype == np.uint8 else cv2.NORM_L2
        if norm not in self._matchers:
            self._matchers[norm] = cv2.BFMatcher(norm, crossCheck=False)
        return self._matchers[norm]

    def match(self, features1, features2):
        """
        Match the features of two adjacent frames.

        Args:
            features1: FrameFeatures of frame i
            features2: FrameFeatures of frame i + 1

        Returns:
            MatchSet, empty when there are too few candidates
        """
        src_idx, dst_idx = self.propose(features1.descriptors, features2.descriptors)
        self.num_candidates = len(src_idx)

        if len(src_idx) < self.min_matches:
            self.num_inliers = 0
            return MatchSet.empty()

        p1 = features1.points[src_idx].astype(np.float32)
        p2 = features2.points[dst_idx].astype(np.float32)
        inliers = self.classify(p1, p2)
        self.num_inliers = int(np.count_nonzero(inliers))

        return MatchSet(src_idx, dst_idx, p1, p2, inliers)

    def classify(self, p1, p2):
        """
        Separate geometrically consistent correspondences with RANSAC.

        Args:
            p1: Points in frame i (Nx2)
            p2: Points in frame i + 1 (Nx2)

        Returns:
            Boolean inlier flags
        """
        H, mask = cv2.findHomography(
            p1, p2, cv2.RANSAC,
            ransacReprojThreshold=self.ransac_threshold,
            maxIters=self.ransac_max_iterations,
            confidence=self.ransac_confidence
        )

        if H is None or mask is None:
            return np.zeros(len(p1), dtype=bool)

        return mask.ravel().astype(bool)

    def get_stats(self):
        """Get matcher statistics"""
        return {'num_candidates': self.num_candidates, 'num_inliers': self.num_inliers}


def _nearest(match_pair):
    """Closest of the kNN candidates, the lowest target index on equal distances."""
    return min(match_pair, key=lambda m: (m.distance, m.trainIdx))
