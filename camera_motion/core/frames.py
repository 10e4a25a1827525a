"""
Working zone frames and loaders.

The pipeline consumes an ordered collection of frames (image + timestamp).
Loading helpers are provided for video files and image folders; a file that
cannot be decoded still produces a frame, with no image, so that the frame
keeps its slot in the working zone.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

import cv2
import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class Frame:
    image: np.ndarray  # None when the frame could not be read
    timestamp: int
    path: str = None

    @property
    def readable(self):
        return self.image is not None and self.image.size > 0


class WorkingZone:
    """
    Ordered, indexable collection of frames selected for analysis.
    """

    def __init__(self, frames):
        """
        Initialize the working zone.

        Args:
            frames: Iterable of Frame objects, ordered by timestamp
        """
        self.frames = list(frames)

    def __len__(self):
        return len(self.frames)

    def __getitem__(self, index):
        return self.frames[index]

    def __iter__(self):
        return iter(self.frames)

    @property
    def timestamps(self):
        return [frame.timestamp for frame in self.frames]

    @property
    def frame_size(self):
        """Size (width, height) of the first readable frame, or None."""
        for frame in self.frames:
            if frame.readable:
                height, width = frame.image.shape[:2]
                return width, height
        return None


def load_video(filepath, start=0, end=None, step=1):
    """
    Load frames from a video file.

    Args:
        filepath: Path to the video file
        start: Index of the first frame to keep
        end: Index after the last frame to keep (None for the whole video)
        step: Keep one frame every `step` frames

    Returns:
        WorkingZone with timestamps in milliseconds from the start of the video
    """
    cap = cv2.VideoCapture(str(filepath))
    if not cap.isOpened():
        raise IOError(f"Could not open video: {filepath}")

    fps = cap.get(cv2.CAP_PROP_FPS) or 25.0
    frames = []
    idx = 0

    while end is None or idx < end:
        ret, image = cap.read()
        if not ret:
            break
        if idx >= start and (idx - start) % step == 0:
            timestamp = int(round(idx * 1000.0 / fps))
            frames.append(Frame(image=image, timestamp=timestamp, path=str(filepath)))
        idx += 1

    cap.release()
    logger.info("Loaded %d frames from %s", len(frames), filepath)
    return WorkingZone(frames)


def load_images(folder, extensions=('.jpg', '.jpeg', '.png', '.bmp', '.tif', '.tiff')):
    """
    Load frames from an image sequence.

    Files are sorted by name and timestamps are their position in the sequence.

    Args:
        folder: Directory containing the images
        extensions: File extensions to consider

    Returns:
        WorkingZone
    """
    folder = Path(folder)
    image_paths = sorted(p for p in folder.iterdir() if p.suffix.lower() in extensions)

    frames = []
    for i, path in enumerate(image_paths):
        image = cv2.imread(str(path))
        if image is None:
            logger.warning("Could not read %s, keeping an empty frame", path)
        frames.append(Frame(image=image, timestamp=i, path=str(path)))

    logger.info("Loaded %d frames from %s", len(frames), folder)
    return WorkingZone(frames)
