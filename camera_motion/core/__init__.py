"""
Core camera motion components.

This package provides the components of the camera motion pipeline:
- FeatureDetector: Finds interest points in each frame
- CorrespondenceMatcher: Matches features of consecutive frames
- TransformEstimator: Fits one homography per frame pair
- BundleAdjuster: Jointly refines the transform chain
- TrackBuilder: Chains matches into multi-frame tracks
- CameraTracker: Runs the pipeline and owns the results
"""

from .config import CameraMotionParameters, CameraMotionStep, FeatureMethod
from .errors import (CameraMotionError, InputError, MaskError, MaskSizeError,
                     PipelineBusyError, PipelineCancelled)
from .frames import Frame, WorkingZone, load_images, load_video
from .features import FeatureDetector, FrameFeatures
from .matcher import CorrespondenceMatcher, Match, MatchSet
from .homography import TransformChain, TransformEstimator
from .bundle_adjustment import BundleAdjuster, BundleAdjustmentResult
from .tracks import Track, TrackBuilder
from .camera_tracker import CameraTracker, PipelineState, RunHandle

__all__ = [
    'CameraMotionParameters',
    'CameraMotionStep',
    'FeatureMethod',
    'CameraMotionError',
    'InputError',
    'MaskError',
    'MaskSizeError',
    'PipelineBusyError',
    'PipelineCancelled',
    'Frame',
    'WorkingZone',
    'load_images',
    'load_video',
    'FeatureDetector',
    'FrameFeatures',
    'CorrespondenceMatcher',
    'Match',
    'MatchSet',
    'TransformChain',
    'TransformEstimator',
    'BundleAdjuster',
    'BundleAdjustmentResult',
    'Track',
    'TrackBuilder',
    'CameraTracker',
    'PipelineState',
    'RunHandle',
]
