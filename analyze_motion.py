#!/usr/bin/env python3
"""
Estimate the camera motion of a video or image sequence.

Runs the camera motion pipeline, optionally exports the results and lets
the user browse the frames with the motion overlays.
"""

import argparse
import logging
import os
import threading
import time

from camera_motion.core.camera_tracker import CameraTracker, PipelineState
from camera_motion.core.config import CameraMotionParameters, CameraMotionStep, FeatureMethod
from camera_motion.core.frames import load_images, load_video
from camera_motion.viz.motion_visualizer import MotionVisualizer
from camera_motion.viz import viz_utils

logger = logging.getLogger('analyze_motion')


def parse_args():
    parser = argparse.ArgumentParser(description='Estimate camera motion over a sequence of frames')
    parser.add_argument('input', help='Video file or folder of images')
    parser.add_argument('--start', type=int, default=0,
                        help='First video frame to analyze')
    parser.add_argument('--end', type=int, default=None,
                        help='Video frame after the last one to analyze')
    parser.add_argument('--config', type=str, default=None,
                        help='JSON file with camera motion parameters')
    parser.add_argument('--method', choices=['orb', 'sift', 'akaze'], default=None,
                        help='Feature detector')
    parser.add_argument('--features', type=int, default=None,
                        help='Maximum number of features per frame')
    parser.add_argument('--mask', type=str, default=None,
                        help='Mask image, black pixels are excluded from detection')
    parser.add_argument('--step', choices=[s.name.lower() for s in CameraMotionStep], default='all',
                        help='Pipeline step to run up to')
    parser.add_argument('--workers', type=int, default=None,
                        help='Worker threads for detection and matching')
    parser.add_argument('--no-bundle-adjustment', action='store_true',
                        help='Skip the joint refinement of the transforms')
    parser.add_argument('--no-display', action='store_true',
                        help='Do not open the visualization window')
    parser.add_argument('--save-output', action='store_true',
                        help='Save tracks and transforms')
    parser.add_argument('--save-images', action='store_true',
                        help='Save every frame with the motion overlays')
    parser.add_argument('--output-dir', type=str, default='output',
                        help='Output directory')
    parser.add_argument('--verbose', action='store_true',
                        help='Debug logging')
    return parser.parse_args()


def create_parameters(args):
    """Create camera motion parameters from command line arguments"""
    if args.config:
        parameters = CameraMotionParameters.from_json(args.config)
    else:
        parameters = CameraMotionParameters()

    if args.method:
        parameters.feature_method = FeatureMethod[args.method.upper()]
    if args.features:
        parameters.features_per_frame = args.features
    if args.workers:
        parameters.workers = args.workers
    if args.no_bundle_adjustment:
        parameters.bundle_adjustment = False

    return parameters


def print_progress(step, done, total):
    if done == total or done % 25 == 0:
        logger.info("%s: %d/%d", step.name, done, total)


def browse(tracker, frames, visualizer):
    """Show the frames with overlays until the user quits."""
    visualizer.print_help()
    index = 0
    while True:
        frame = frames[index]
        if frame.readable:
            command = visualizer.update(frame.image, tracker, frame.timestamp)
        else:
            command = visualizer.show()

        if command == 'quit':
            break
        elif command == 'next':
            index = min(index + 1, len(frames) - 1)
        elif command == 'previous':
            index = max(index - 1, 0)
        else:
            time.sleep(0.01)

    visualizer.close()


def main():
    args = parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(threadName)s] %(levelname)s %(name)s: %(message)s'
    )

    if os.path.isdir(args.input):
        frames = load_images(args.input)
    else:
        frames = load_video(args.input, start=args.start, end=args.end)

    tracker = CameraTracker(create_parameters(args), frames)
    if args.mask:
        tracker.set_mask(args.mask)

    step = CameraMotionStep[args.step.upper()]
    cancel_event = threading.Event()
    handle = tracker.start(step, progress=print_progress, cancel_event=cancel_event)

    try:
        state = handle.join()
    except KeyboardInterrupt:
        logger.info("Cancelling...")
        handle.cancel()
        state = handle.join()

    if state == PipelineState.FAILED:
        logger.error("Camera motion estimation failed: %s", handle.error)
        tracker.close()
        return 1
    if state == PipelineState.CANCELLED:
        tracker.close()
        return 1

    stats = tracker.get_stats()
    logger.info("Done: %d transforms (%d holes), %d tracks", stats['transforms'], stats['holes'], stats['tracks'])
    if tracker.bundle_adjustment_result is not None:
        logger.info("Bundle adjustment: %s", tracker.bundle_adjustment_result.get_stats())

    if args.save_output:
        timestamps = frames.timestamps
        if tracker.tracked:
            viz_utils.save_transforms_to_json(tracker.transform_chain, timestamps,
                                              output_dir=args.output_dir,
                                              metadata=tracker.parameters.to_dict() | {
                                                  'feature_method': tracker.parameters.feature_method.name})
        tracks = tracker.get_tracks(tracker.parameters.min_track_length)
        if tracks:
            viz_utils.save_tracks_to_csv(tracker.collect_time_vector(), tracker.collect_data(),
                                         output_dir=args.output_dir)
            viz_utils.save_tracks_to_json(tracks, output_dir=args.output_dir)

    visualizer = MotionVisualizer()
    visualizer.apply_step_preset(step)

    if args.save_images:
        image_dir = os.path.join(args.output_dir, 'frames')
        for i, frame in enumerate(frames):
            if frame.readable:
                viz_utils.save_visualization_image(visualizer.render(frame.image, tracker, frame.timestamp),
                                                   f"frame_{i:05d}.png", image_dir)

    if not args.no_display:
        browse(tracker, frames, visualizer)

    tracker.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
