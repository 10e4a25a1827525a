"""
Camera Motion Estimation Package
================================

This package estimates the global camera motion over a sequence of frames
and tracks feature points across frames.
"""

# Import core components to make them available at the root level
from .core.camera_tracker import CameraTracker, PipelineState, RunHandle
from .core.config import CameraMotionParameters, CameraMotionStep, FeatureMethod
from .core.errors import CameraMotionError, InputError, MaskError, MaskSizeError, PipelineBusyError
from .core.frames import Frame, WorkingZone, load_images, load_video

# Import visualization components
from .viz.motion_visualizer import MotionVisualizer

__all__ = [
    # Core components
    'CameraTracker',
    'PipelineState',
    'RunHandle',
    'CameraMotionParameters',
    'CameraMotionStep',
    'FeatureMethod',
    'CameraMotionError',
    'InputError',
    'MaskError',
    'MaskSizeError',
    'PipelineBusyError',
    'Frame',
    'WorkingZone',
    'load_images',
    'load_video',

    # Visualization components
    'MotionVisualizer',
]
