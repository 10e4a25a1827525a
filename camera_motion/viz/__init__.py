"""
Visualization components for camera motion results.

This package provides overlay rendering and export helpers.
"""

from .base_visualizer import BaseVisualizer
from .motion_visualizer import MotionVisualizer, STEP_PRESETS
from . import utils as viz_utils

__all__ = [
    'BaseVisualizer',
    'MotionVisualizer',
    'STEP_PRESETS',
    'viz_utils',
]
