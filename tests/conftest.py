import cv2
import numpy as np
import pytest

from camera_motion.core.camera_tracker import CameraTracker
from camera_motion.core.config import CameraMotionParameters
from camera_motion.core.frames import Frame

FRAME_SIZE = (320, 240)
# Per-frame shift of the crop window over the canvas. The content moves the
# opposite way, so the expected frame-to-frame transform is a translation
# by (-dx, -dy).
SHIFT = (4, 2)
FRAME_INTERVAL = 40


def make_canvas(width, height, seed=7):
    rng = np.random.default_rng(seed)
    noise = rng.integers(0, 256, size=(height, width), dtype=np.uint8)
    canvas = cv2.GaussianBlur(noise, (0, 0), 2.0)
    canvas = cv2.normalize(canvas, None, 0, 255, cv2.NORM_MINMAX)

    for _ in range(80):
        x = int(rng.integers(0, width - 30))
        y = int(rng.integers(0, height - 30))
        w, h = (int(v) for v in rng.integers(8, 30, size=2))
        cv2.rectangle(canvas, (x, y), (x + w, y + h), int(rng.integers(0, 256)), -1)

    return canvas


def shifted_frames(count, shift=SHIFT, size=FRAME_SIZE, seed=7):
    width, height = size
    margin = 10
    canvas = make_canvas(width + abs(shift[0]) * count + 2 * margin,
                         height + abs(shift[1]) * count + 2 * margin, seed)

    frames = []
    for i in range(count):
        x0 = margin + shift[0] * i
        y0 = margin + shift[1] * i
        gray = canvas[y0:y0 + height, x0:x0 + width]
        image = cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)
        frames.append(Frame(image=image, timestamp=i * FRAME_INTERVAL))
    return frames


def blank_frame(timestamp, size=FRAME_SIZE):
    width, height = size
    return Frame(image=np.zeros((height, width, 3), dtype=np.uint8), timestamp=timestamp)


@pytest.fixture
def parameters():
    params = CameraMotionParameters()
    params.features_per_frame = 500
    params.ba_max_iterations = 50
    return params


@pytest.fixture
def frames():
    return shifted_frames(6)


@pytest.fixture
def make_tracker(parameters):
    trackers = []

    def factory(frames=None, params=None):
        tracker = CameraTracker(params if params is not None else parameters, frames)
        trackers.append(tracker)
        return tracker

    yield factory

    for tracker in trackers:
        tracker.close()


@pytest.fixture
def mask_file(tmp_path):
    """Mask excluding the left half of the frame."""

    def factory(size=FRAME_SIZE, name='mask.png'):
        width, height = size
        mask = np.full((height, width), 255, dtype=np.uint8)
        mask[:, :width // 2] = 0
        path = tmp_path / name
        cv2.imwrite(str(path), mask)
        return str(path)

    return factory
