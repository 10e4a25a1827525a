"""
Configuration classes for camera motion estimation.
"""

import copy
import json
from enum import Enum


class FeatureMethod(Enum):
    """Enum for the supported feature detectors"""
    ORB = 1
    SIFT = 2
    AKAZE = 3


class CameraMotionStep(Enum):
    """Pipeline steps, in dependency order. ALL runs the whole chain."""
    FIND_FEATURES = 1
    MATCH_FEATURES = 2
    FIND_HOMOGRAPHIES = 3
    BUNDLE_ADJUSTMENT = 4
    BUILD_TRACKS = 5
    ALL = 6


PIPELINE_ORDER = [
    CameraMotionStep.FIND_FEATURES,
    CameraMotionStep.MATCH_FEATURES,
    CameraMotionStep.FIND_HOMOGRAPHIES,
    CameraMotionStep.BUNDLE_ADJUSTMENT,
    CameraMotionStep.BUILD_TRACKS,
]


def steps_up_to(step):
    """
    Get the prefix of the stage chain needed to produce a step.

    Args:
        step: CameraMotionStep to reach

    Returns:
        List of CameraMotionStep in execution order
    """
    if step == CameraMotionStep.ALL:
        return list(PIPELINE_ORDER)
    return PIPELINE_ORDER[:PIPELINE_ORDER.index(step) + 1]


# First step whose output depends on each parameter.
# None means the parameter never changes results.
PARAMETER_STEPS = {
    'features_per_frame': CameraMotionStep.FIND_FEATURES,
    'feature_method': CameraMotionStep.FIND_FEATURES,
    'grid_size': CameraMotionStep.FIND_FEATURES,
    'use_clahe': CameraMotionStep.FIND_FEATURES,
    'max_distance_ratio': CameraMotionStep.MATCH_FEATURES,
    'cross_check': CameraMotionStep.MATCH_FEATURES,
    'min_matches': CameraMotionStep.MATCH_FEATURES,
    'ransac_threshold': CameraMotionStep.MATCH_FEATURES,
    'ransac_max_iterations': CameraMotionStep.MATCH_FEATURES,
    'ransac_confidence': CameraMotionStep.MATCH_FEATURES,
    'min_inliers': CameraMotionStep.FIND_HOMOGRAPHIES,
    'bundle_adjustment': CameraMotionStep.BUNDLE_ADJUSTMENT,
    'ba_max_span': CameraMotionStep.BUNDLE_ADJUSTMENT,
    'ba_max_iterations': CameraMotionStep.BUNDLE_ADJUSTMENT,
    'ba_loss': CameraMotionStep.BUNDLE_ADJUSTMENT,
    'ba_update_inliers': CameraMotionStep.BUNDLE_ADJUSTMENT,
    'min_track_length': None,
    'step_by_step': None,
    'workers': None,
}


class CameraMotionParameters:
    """
    Configuration parameters for camera motion estimation.
    Centralizes all parameter management in one place.
    """

    def __init__(self):
        # Feature detection parameters
        self.features_per_frame = 2048
        self.feature_method = FeatureMethod.ORB
        self.grid_size = 1  # 1 disables grid distribution
        self.use_clahe = False

        # Matching parameters
        self.max_distance_ratio = 0.8  # >= 1.0 disables the ratio test
        self.cross_check = True
        self.min_matches = 4

        # Homography consensus parameters
        self.ransac_threshold = 3.0
        self.ransac_max_iterations = 2000
        self.ransac_confidence = 0.995
        self.min_inliers = 4

        # Bundle adjustment parameters
        self.bundle_adjustment = True
        self.ba_max_span = 3
        self.ba_max_iterations = 100
        self.ba_loss = 'huber'
        self.ba_update_inliers = True

        # Consumer-side track filter
        self.min_track_length = 2

        # Execution parameters
        self.step_by_step = False
        self.workers = 1

    @classmethod
    def from_dict(cls, config_dict):
        """Create a config from a dictionary"""
        config = cls()
        for key, value in config_dict.items():
            if not hasattr(config, key):
                continue
            if key == 'feature_method' and not isinstance(value, FeatureMethod):
                value = FeatureMethod[value] if isinstance(value, str) else FeatureMethod(value)
            setattr(config, key, value)
        return config

    @classmethod
    def from_json(cls, path):
        """Create a config from a JSON file"""
        with open(path, 'r') as f:
            return cls.from_dict(json.load(f))

    def to_dict(self):
        """Convert config to a dictionary"""
        return {key: value for key, value in vars(self).items()
                if not key.startswith('_')}

    def copy(self):
        return copy.deepcopy(self)

    def first_invalidated_step(self, other):
        """
        Find the earliest step whose output differs between two configs.

        Args:
            other: CameraMotionParameters to compare against

        Returns:
            CameraMotionStep, or None if no cached output is affected
        """
        ours = self.to_dict()
        theirs = other.to_dict()
        earliest = None
        for key in set(ours) | set(theirs):
            if ours.get(key) == theirs.get(key):
                continue
            step = PARAMETER_STEPS.get(key, CameraMotionStep.FIND_FEATURES)
            if step is None:
                continue
            if earliest is None or PIPELINE_ORDER.index(step) < PIPELINE_ORDER.index(earliest):
                earliest = step
        return earliest
