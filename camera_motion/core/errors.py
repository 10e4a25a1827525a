"""
Exceptions raised by the camera motion pipeline.
"""


class CameraMotionError(Exception):
    """Base class for camera motion errors."""


class InputError(CameraMotionError):
    """The working zone or the requested step cannot be processed."""


class MaskError(CameraMotionError):
    """The mask file is missing or cannot be decoded."""


class MaskSizeError(InputError):
    """The mask does not have the size of the working zone frames."""


class PipelineBusyError(CameraMotionError):
    """A run is in progress."""


class PipelineCancelled(CameraMotionError):
    """Raised inside the worker to unwind a cancelled run."""
