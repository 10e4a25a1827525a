"""
Overlay visualization of camera motion results.

Draws the results of a CameraTracker on top of a working zone frame:
features, inlier and outlier matches, the global motion field, the bounds of
previous frames seen from the current one, point tracks and a text summary.
"""

import os
from datetime import datetime

import cv2
import numpy as np

from ..core.config import CameraMotionStep
from ..core.utils import frame_bounds, motion_field
from . import utils as viz_utils
from .base_visualizer import BaseVisualizer, to_bgr

# Colors of the previous frames bounds, cycled by frame index (RGB hex).
COLOR_CYCLE = [
    "00FF00", "0000FF", "FF0000", "01FFFE", "FFA6FE", "FFDB66", "006401", "010067", "95003A", "007DB5", "FF00F6",
    "FFEEE8", "774D00", "90FB92", "0076FF", "D5FF00", "FF937E", "6A826C", "FF029D", "FE8900", "7A4782", "7E2DD2",
    "85A900", "FF0056", "A42400", "00AE7E", "683D3B", "BDC6FF", "263400", "BDD393", "00B917", "9E008E", "001544",
    "C28C9F", "FF74A3", "01D0FF", "004754", "E56FFE", "788231", "0E4CA1", "91D0CB", "BE9970", "968AE8", "BB8800",
    "43002C", "DEFF74", "00FFC6", "FFE502", "620E00", "008F9C", "98FF52", "7544B1", "B500FF", "00FF78", "FF6E41",
    "005F39", "6B6882", "5FAD4E", "A75740", "A5FFD2", "FFB167", "009BFF", "E85EBE",
]


def hex_to_bgr(value):
    r, g, b = int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)
    return (b, g, r)


def cycle_color(index):
    """Color unique to a frame index (modulo the cycle length)."""
    return hex_to_bgr(COLOR_CYCLE[index % len(COLOR_CYCLE)])


def _pt(p):
    return (int(round(float(p[0]))), int(round(float(p[1]))))


# Overlay toggles forced when a step is run on its own.
STEP_PRESETS = {
    CameraMotionStep.FIND_FEATURES: {'features'},
    CameraMotionStep.MATCH_FEATURES: {'inliers'},
    CameraMotionStep.FIND_HOMOGRAPHIES: {'motion_field', 'transforms'},
    CameraMotionStep.BUNDLE_ADJUSTMENT: {'motion_field', 'transforms'},
    CameraMotionStep.BUILD_TRACKS: {'inliers', 'tracks'},
}

OVERLAYS = ['features', 'inliers', 'outliers', 'motion_field', 'transforms', 'tracks']


class MotionVisualizer(BaseVisualizer):
    """
    Visualizer for camera motion results.

    Rendering works without a window; `update()` renders and displays.
    """

    def __init__(self, window_name="Camera Motion", size=(800, 600), record_dir='output'):
        """
        Initialize the motion visualizer.

        Args:
            window_name: Name of the visualization window
            size: Size of the visualization window (width, height)
            record_dir: Directory receiving the recordings
        """
        super().__init__(window_name, size)

        # Recording output
        self.record_dir = record_dir
        self.record_path = None
        self.recorded_frames = 0
        self.last_recorded = None

        # Colors (BGR)
        self.colors = {
            'feature': (0, 255, 255),          # Yellow
            'inlier': (0, 255, 0),             # Lime
            'inlier_match': (50, 205, 50),     # Lime green
            'outlier': (0, 0, 255),            # Red
            'outlier_match': (0, 0, 160),      # Dark red
            'motion_field': (237, 149, 100),   # Cornflower blue
            'track': (255, 0, 255),            # Fuchsia
            'text': (255, 255, 255),           # White
        }
        self.text_color = self.colors['text']

        # Overlay settings
        self.overlays = dict.fromkeys(OVERLAYS, False)
        self.overlays['inliers'] = True
        self.show_results = True

        self.motion_field_points = 25
        self.max_transform_frames = 25

        self.key_handlers.update({
            ord('p'): 'toggle_features',
            ord('i'): 'toggle_inliers',
            ord('o'): 'toggle_outliers',
            ord('m'): 'toggle_motion_field',
            ord('t'): 'toggle_transforms',
            ord('k'): 'toggle_tracks',
            ord('s'): 'toggle_results',
            ord('n'): 'next',
            32: 'next',             # SPACE
            ord('b'): 'previous',
        })

    def toggle(self, overlay):
        self.overlays[overlay] = not self.overlays[overlay]

    def apply_step_preset(self, step):
        """
        Force the overlays relevant to a step.

        Args:
            step: CameraMotionStep that was just run (ALL keeps the current settings)
        """
        preset = STEP_PRESETS.get(step)
        if preset is None:
            return
        for overlay in OVERLAYS:
            self.overlays[overlay] = overlay in preset

    def draw_features(self, image, points, color=None):
        """
        Draw a dot on each feature.

        Args:
            image: Image to draw on (modified in place)
            points: Feature points (Nx2)
            color: Optional BGR color
        """
        if color is None:
            color = self.colors['feature']
        for p in points:
            cv2.circle(image, _pt(p), 2, color, 2)
        return image

    def draw_matches(self, image, matches, show_inliers=True, show_outliers=True):
        """
        Draw matches as a segment from the feature to its position in the next frame.

        Args:
            image: Image to draw on (modified in place)
            matches: List of Match(p1, p2, inlier)
            show_inliers: Draw inlier matches
            show_outliers: Draw outlier matches
        """
        for m in matches:
            p1, p2 = _pt(m.p1), _pt(m.p2)
            if m.inlier and show_inliers:
                cv2.circle(image, p1, 2, self.colors['inlier'], 2)
                cv2.line(image, p1, p2, self.colors['inlier_match'], 2)
            elif not m.inlier and show_outliers:
                cv2.circle(image, p1, 2, self.colors['outlier'], 2)
                cv2.line(image, p1, p2, self.colors['outlier_match'], 2)
        return image

    def draw_motion_field(self, image, H, frame_size):
        """
        Draw arrows pointing to where grid points move in the next frame.

        Vectors shorter than 2 pixels are drawn as a dot.

        Args:
            image: Image to draw on (modified in place)
            H: Homography from this frame to the next
            frame_size: (width, height) of the frames
        """
        sources, targets = motion_field(H, frame_size, self.motion_field_points)
        color = self.colors['motion_field']
        for p1, p2 in zip(sources, targets):
            if np.linalg.norm(p2 - p1) < 2.0:
                cv2.circle(image, _pt(p1), 4, color, 2)
            else:
                cv2.arrowedLine(image, _pt(p1), _pt(p2), color, 2, tipLength=0.3)
        return image

    def draw_transforms(self, image, chain, index, frame_size):
        """
        Draw the inner rectangle of previous frames mapped into this frame.

        Args:
            image: Image to draw on (modified in place)
            chain: TransformChain
            index: Index of the frame being drawn
            frame_size: (width, height) of the frames
        """
        for i, polygon in frame_bounds(chain, index, frame_size, self.max_transform_frames):
            pts = np.int32(np.round(polygon)).reshape(-1, 1, 2)
            cv2.polylines(image, [pts], True, cycle_color(i), 2)
        return image

    def draw_tracks(self, image, tracks, timestamp):
        """
        Draw the tracks alive at a timestamp, with a square on the current point.

        Args:
            image: Image to draw on (modified in place)
            tracks: List of Track
            timestamp: Timestamp of the frame being drawn
        """
        color = self.colors['track']
        for track in tracks:
            if not track.covers(timestamp):
                continue

            pts = [_pt(p) for p in track.points]
            for t, p in zip(track.timestamps, pts):
                if t == timestamp:
                    cv2.rectangle(image, (p[0] - 4, p[1] - 4), (p[0] + 4, p[1] + 4), color, 2)
                else:
                    cv2.circle(image, p, 2, color, 2)

            cv2.polylines(image, [np.int32(pts).reshape(-1, 1, 2)], False, color, 2)
        return image

    @staticmethod
    def format_results(summary):
        """
        Text lines describing the results at one frame.

        Args:
            summary: Dictionary from CameraTracker.get_summary()

        Returns:
            List of strings
        """
        lines = ["Camera motion"]
        if 'frame' in summary:
            lines.append(f"Frame: {summary['frame']}/{summary['frame_count']}")
        if 'features' in summary:
            lines.append(f"Features: {summary['features']}/{summary['features_budget']}")
        if 'matches' in summary:
            lines.append(f"Matches: {summary['matches']}/{summary.get('features', 0)}")
            lines.append(f"Inliers: {summary['inliers']}/{summary['matches']}")
        if 'tracks' in summary:
            lines.append(f"Tracks: {summary['tracks']}")
        return lines

    def draw_results(self, image, summary):
        """
        Draw the text summary on a translucent background.

        Args:
            image: Image to draw on (modified in place)
            summary: Dictionary from CameraTracker.get_summary()
        """
        lines = self.format_results(summary)
        line_height = 20
        width = max(cv2.getTextSize(line, self.font, self.font_scale, self.text_thickness)[0][0]
                    for line in lines)

        overlay = image.copy()
        cv2.rectangle(overlay, (20, 20), (30 + width, 25 + len(lines) * line_height), (0, 0, 0), -1)
        cv2.addWeighted(overlay, 0.75, image, 0.25, 0, image)

        y_pos = 20 + line_height
        for line in lines:
            self.add_text(image, line, (25, y_pos))
            y_pos += line_height
        return image

    def render(self, image, tracker, timestamp):
        """
        Draw the enabled overlays for one frame.

        Args:
            image: Frame image (not modified)
            tracker: CameraTracker holding the results
            timestamp: Timestamp of the frame

        Returns:
            New BGR image with the overlays
        """
        result = to_bgr(image)
        height, width = result.shape[:2]
        frame_size = (width, height)

        if self.overlays['features']:
            self.draw_features(result, tracker.get_features(timestamp))

        if self.overlays['inliers'] or self.overlays['outliers']:
            self.draw_matches(result, tracker.get_matches(timestamp),
                              self.overlays['inliers'], self.overlays['outliers'])

        index = tracker.frame_index_of(timestamp)
        chain = tracker.transform_chain
        if index is not None:
            if self.overlays['transforms']:
                self.draw_transforms(result, chain, index, frame_size)
            # The last frame has no outgoing transform
            if self.overlays['motion_field'] and index < len(chain) and not chain.is_hole(index):
                self.draw_motion_field(result, chain[index], frame_size)

        if self.overlays['tracks']:
            self.draw_tracks(result, tracker.get_tracks_at(timestamp), timestamp)

        if self.show_results:
            self.draw_results(result, tracker.get_summary(timestamp))

        return result

    def update(self, image, tracker, timestamp):
        """
        Render and display one frame.

        Returns:
            Key command if a key was pressed
        """
        view_image = self.render(image, tracker, timestamp)

        # Each frame is saved once, without the recording indicator
        if self.recording and timestamp != self.last_recorded:
            self.record_frame(view_image)
            self.last_recorded = timestamp

        if self.recording:
            view_image = view_image.copy()
            self.add_recording_indicator(view_image)

        key_command = self.show(view_image)

        if key_command and key_command.startswith('toggle_'):
            overlay = key_command[len('toggle_'):]
            if overlay == 'results':
                self.show_results = not self.show_results
            else:
                self.toggle(overlay)
        elif key_command:
            self.handle_key(key_command)

        return key_command

    def start_recording(self, dirpath=None):
        """
        Start saving the rendered frames as PNG images.

        Args:
            dirpath: Directory for the images, or None for a timestamped
                folder under record_dir
        """
        super().start_recording()

        if dirpath is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            dirpath = os.path.join(self.record_dir, f"recording_{timestamp}")

        self.record_path = viz_utils.create_output_dir(dirpath)
        self.recorded_frames = 0
        self.last_recorded = None

        print(f"Recording started: {self.record_path}")

    def stop_recording(self):
        """Stop recording."""
        super().stop_recording()

        if self.record_path is not None:
            print(f"Recording stopped: {self.recorded_frames} frames in {self.record_path}")
            self.record_path = None

    def record_frame(self, image):
        """
        Save a rendered frame if recording is active.

        Returns:
            Path of the saved image, or None when not recording
        """
        if not self.recording or self.record_path is None:
            return None

        filepath = viz_utils.save_visualization_image(image, f"frame_{self.recorded_frames:05d}.png",
                                                      self.record_path)
        self.recorded_frames += 1
        return filepath

    def close(self):
        if self.recording:
            self.stop_recording()
        super().close()

    def print_help(self):
        """Print help information to console."""
        print("\nCamera Motion Visualizer Controls:")
        print("  'p' - Toggle features")
        print("  'i' - Toggle inliers")
        print("  'o' - Toggle outliers")
        print("  'm' - Toggle motion field")
        print("  't' - Toggle frame transforms")
        print("  'k' - Toggle tracks")
        print("  's' - Toggle results text")
        print("  'r' - Start/stop recording")
        print("  'n' or SPACE - Next frame, 'b' - Previous frame")
        print("  'q' or ESC - Quit visualization")
