"""
Camera motion pipeline orchestrator.

The tracker owns every intermediate result (features, matches, transforms,
bundle adjustment output and tracks) and runs the stages on a dedicated
worker thread. Stages run in dependency order up to the requested step and
are skipped when their cached output is still valid. A stage commits its
output only once it has processed every frame or pair, so a cancelled run
leaves earlier stages intact and never exposes partial results.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from enum import Enum

import cv2
import numpy as np

from .bundle_adjustment import DISABLED, BundleAdjuster, BundleAdjustmentResult
from .config import PIPELINE_ORDER, CameraMotionParameters, CameraMotionStep, steps_up_to
from .errors import InputError, MaskSizeError, PipelineBusyError, PipelineCancelled
from .features import FeatureDetector, FeatureStore, FrameFeatures, load_mask
from .frames import WorkingZone
from .homography import TransformChain, TransformEstimator
from .matcher import CorrespondenceMatcher, MatchSet
from .tracks import TrackBuilder

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    IDLE = 1
    RUNNING = 2
    COMPLETED = 3
    CANCELLED = 4
    FAILED = 5


class RunHandle:
    """
    Handle on a pipeline run executing in the background.

    The caller decides how to wait: poll `status`/`done()` or block on `join()`.
    """

    def __init__(self, step, cancel_event):
        self.step = step
        self.cancel_event = cancel_event
        self.error = None
        self._future = None

    @property
    def status(self):
        if not self._future.done():
            return PipelineState.RUNNING
        return self._future.result()

    def done(self):
        return self._future.done()

    def join(self, timeout=None):
        """
        Wait for the run to finish.

        Args:
            timeout: Seconds to wait (None waits forever)

        Returns:
            Final PipelineState (COMPLETED, CANCELLED or FAILED)
        """
        return self._future.result(timeout)

    def cancel(self):
        """Ask the worker to stop at its next checkpoint."""
        self.cancel_event.set()


def _report(progress, step, done, total):
    if progress is not None:
        progress(step, done, total)


class CameraTracker:
    """
    Estimates the global camera motion over a working zone.

    Produces, in order: features per frame, matches per consecutive frame
    pair, one homography per pair (the transform chain), an optional joint
    refinement of the chain and finally multi-frame point tracks.
    """

    def __init__(self, parameters=None, frames=None):
        """
        Initialize the tracker.

        Args:
            parameters: Optional CameraMotionParameters (copied)
            frames: Optional WorkingZone or list of Frame
        """
        self.parameters = parameters.copy() if parameters is not None else CameraMotionParameters()
        self.frames = None
        self.mask = None
        self.mask_path = None

        self.state = PipelineState.IDLE
        self.last_error = None
        self.timing = {}

        self._lock = threading.Lock()
        self._executor = None
        self._clear_results()

        if frames is not None:
            self.set_frames(frames)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_frames(self, frames):
        """
        Set the working zone. Invalidates every cached result.

        Args:
            frames: WorkingZone or iterable of Frame
        """
        self._ensure_not_running()
        if not isinstance(frames, WorkingZone):
            frames = WorkingZone(frames)
        self.frames = frames
        self._invalidate_from(CameraMotionStep.FIND_FEATURES)
        self._frame_indices = {}

    def set_parameters(self, parameters):
        """
        Replace the parameters, invalidating the stages that depend on the changes.

        Args:
            parameters: CameraMotionParameters (copied)
        """
        self._ensure_not_running()
        step = self.parameters.first_invalidated_step(parameters)
        self.parameters = parameters.copy()
        if step is not None:
            logger.info("Parameters changed, invalidating results from %s", step.name)
            self._invalidate_from(step)

    def set_mask(self, path):
        """
        Load the detection mask from an image file.

        Raises MaskError if the file cannot be read and MaskSizeError if the
        frames are known and have a different size.
        """
        self._ensure_not_running()
        mask = load_mask(path)
        self._check_mask_size(mask)
        self.mask = mask
        self.mask_path = path
        self._invalidate_from(CameraMotionStep.FIND_FEATURES)
        logger.info("Loaded mask %s (%dx%d)", path, mask.shape[1], mask.shape[0])

    def clear_mask(self):
        self._ensure_not_running()
        if self.mask is not None:
            self.mask = None
            self.mask_path = None
            self._invalidate_from(CameraMotionStep.FIND_FEATURES)

    def available_steps(self):
        """Steps a front end should offer: individual steps only in step-by-step mode."""
        if self.parameters.step_by_step:
            return list(PIPELINE_ORDER) + [CameraMotionStep.ALL]
        return [CameraMotionStep.ALL]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def start(self, step=CameraMotionStep.ALL, progress=None, cancel_event=None):
        """
        Start a run in the background.

        Input errors are raised here, before any stage starts.

        Args:
            step: CameraMotionStep to reach
            progress: Optional callable(step, done, total) called from the worker
            cancel_event: Optional threading.Event used to cancel the run

        Returns:
            RunHandle
        """
        with self._lock:
            if self.state == PipelineState.RUNNING:
                raise PipelineBusyError("A camera motion run is already in progress")

            try:
                self._validate(step)
            except InputError as e:
                logger.error("Cannot start camera motion estimation: %s", e)
                self.state = PipelineState.FAILED
                self.last_error = e
                raise

            parameters = self.parameters.copy()
            self._frame_indices = {ts: i for i, ts in enumerate(self.frames.timestamps)}
            self.last_error = None
            self.state = PipelineState.RUNNING

            handle = RunHandle(step, cancel_event if cancel_event is not None else threading.Event())
            handle._future = self._get_executor().submit(self._execute, handle, step, parameters, progress)
            return handle

    def run(self, step=CameraMotionStep.ALL, progress=None, cancel_event=None):
        """
        Run the pipeline up to a step and wait for it to finish.

        Returns:
            Final PipelineState; errors of a failed run are re-raised
        """
        handle = self.start(step, progress, cancel_event)
        state = handle.join()
        if state == PipelineState.FAILED and handle.error is not None:
            raise handle.error
        return state

    def reset(self):
        """Delete all tracking data and go back to IDLE."""
        self._ensure_not_running()
        self._clear_results()
        self.state = PipelineState.IDLE
        self.last_error = None
        logger.info("Camera motion data deleted")

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _get_executor(self):
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='CameraMotionEstimation')
        return self._executor

    def _validate(self, step):
        if not isinstance(step, CameraMotionStep):
            raise InputError(f"Unknown step: {step}")

        if self.frames is None or len(self.frames) == 0:
            raise InputError("No frames to process")

        timestamps = self.frames.timestamps
        if any(b <= a for a, b in zip(timestamps, timestamps[1:])):
            raise InputError("Frame timestamps must be strictly increasing")

        if step != CameraMotionStep.FIND_FEATURES and len(self.frames) < 2:
            raise InputError(f"{step.name} needs at least two frames")

        if self.mask is not None:
            self._check_mask_size(self.mask)

    def _check_mask_size(self, mask):
        if self.frames is None:
            return
        frame_size = self.frames.frame_size
        if frame_size is None:
            return
        width, height = frame_size
        if mask.shape[:2] != (height, width):
            raise MaskSizeError(
                f"Mask size {mask.shape[1]}x{mask.shape[0]} does not match frame size {width}x{height}")

    def _execute(self, handle, step, parameters, progress):
        """Worker body. Returns the final state of the run."""

        def checkpoint():
            if handle.cancel_event.is_set():
                raise PipelineCancelled()

        total_start = time.time()
        try:
            for stage in steps_up_to(step):
                if stage in self.completed_steps:
                    logger.debug("%s: cached result still valid", stage.name)
                    continue

                stage_start = time.time()
                logger.info("%s: started", stage.name)
                self._run_stage(stage, parameters, checkpoint, progress)
                self.completed_steps.add(stage)
                self.timing[stage.name] = time.time() - stage_start
                logger.info("%s: done in %.2fs", stage.name, self.timing[stage.name])

        except PipelineCancelled:
            logger.info("Camera motion estimation cancelled")
            self.state = PipelineState.CANCELLED
            return self.state
        except Exception as e:
            logger.exception("Camera motion estimation failed")
            handle.error = e
            self.last_error = e
            self.state = PipelineState.FAILED
            return self.state

        self.timing['total'] = time.time() - total_start
        self.state = PipelineState.COMPLETED
        return self.state

    def _run_stage(self, stage, parameters, checkpoint, progress):
        # Invalidate downstream results before producing new ones.
        self._invalidate_from(stage)

        if stage == CameraMotionStep.FIND_FEATURES:
            self._find_features(parameters, checkpoint, progress)
        elif stage == CameraMotionStep.MATCH_FEATURES:
            self._match_features(parameters, checkpoint, progress)
        elif stage == CameraMotionStep.FIND_HOMOGRAPHIES:
            self._find_homographies(parameters, checkpoint, progress)
        elif stage == CameraMotionStep.BUNDLE_ADJUSTMENT:
            self._bundle_adjustment(parameters, checkpoint, progress)
        elif stage == CameraMotionStep.BUILD_TRACKS:
            self._build_tracks(parameters, checkpoint, progress)

    def _map_units(self, step, count, factory, unit, workers, checkpoint, progress):
        """
        Run independent per-frame or per-pair units, in order or on a thread pool.

        Args:
            step: Step reported to the progress callback
            count: Number of units
            factory: Creates the per-thread worker object
            unit: callable(worker, index) producing the result of one unit
            workers: Degree of parallelism
            checkpoint: Cancellation check

        Returns:
            List of results indexed like the units
        """
        results = [None] * count

        if workers <= 1:
            worker = factory()
            for i in range(count):
                checkpoint()
                results[i] = unit(worker, i)
                _report(progress, step, i + 1, count)
            return results

        local = threading.local()

        def run_unit(i):
            if not hasattr(local, 'worker'):
                local.worker = factory()
            return unit(local.worker, i)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            for chunk_start in range(0, count, workers):
                checkpoint()
                indices = list(range(chunk_start, min(chunk_start + workers, count)))
                for i, result in zip(indices, pool.map(run_unit, indices)):
                    results[i] = result
                _report(progress, step, indices[-1] + 1, count)

        return results

    def _find_features(self, parameters, checkpoint, progress):
        mask = self.mask

        def detect(detector, i):
            frame = self.frames[i]
            if not frame.readable:
                logger.warning("Frame %d is unreadable, skipping feature detection", i)
                return FrameFeatures.empty()
            try:
                return detector.detect(frame.image, mask)
            except cv2.error as e:
                logger.warning("Feature detection failed on frame %d: %s", i, e)
                return FrameFeatures.empty()

        results = self._map_units(CameraMotionStep.FIND_FEATURES, len(self.frames),
                                  lambda: FeatureDetector(parameters), detect,
                                  parameters.workers, checkpoint, progress)

        store = FeatureStore(len(results))
        for i, features in enumerate(results):
            store[i] = features
        self._features = store

        counts = [len(f) for f in results]
        logger.info("Features per frame: min %d, max %d (budget %d)",
                    min(counts), max(counts), parameters.features_per_frame)

    def _match_features(self, parameters, checkpoint, progress):
        features = self._features

        def match(matcher, i):
            try:
                match_set = matcher.match(features[i], features[i + 1])
            except cv2.error as e:
                logger.warning("Matching failed on pair %d-%d: %s", i, i + 1, e)
                return MatchSet.empty()
            if len(match_set) == 0:
                logger.warning("Pair %d-%d: too few correspondences", i, i + 1)
            else:
                logger.debug("Pair %d-%d: %d matches, %d inliers",
                             i, i + 1, len(match_set), match_set.inlier_count)
            return match_set

        self._match_sets = self._map_units(CameraMotionStep.MATCH_FEATURES, len(self.frames) - 1,
                                           lambda: CorrespondenceMatcher(parameters), match,
                                           parameters.workers, checkpoint, progress)

    def _find_homographies(self, parameters, checkpoint, progress):
        estimator = TransformEstimator(parameters)
        count = len(self._match_sets)
        chain = TransformChain.with_holes(count)

        for i, match_set in enumerate(self._match_sets):
            checkpoint()
            chain[i] = estimator.estimate(match_set)
            _report(progress, CameraMotionStep.FIND_HOMOGRAPHIES, i + 1, count)

        holes = chain.holes()
        if holes:
            logger.warning("No transform for %d of %d frame pairs: %s", len(holes), count, holes)
        self._estimated_chain = chain

    def _bundle_adjustment(self, parameters, checkpoint, progress):
        checkpoint()
        if not parameters.bundle_adjustment:
            result = BundleAdjustmentResult(DISABLED, self._estimated_chain, self._match_sets)
        else:
            adjuster = BundleAdjuster(parameters)
            result = adjuster.refine(self._estimated_chain, self._match_sets, self._features.points(),
                                     cancel_check=checkpoint)
        checkpoint()
        self._bundle_result = result
        _report(progress, CameraMotionStep.BUNDLE_ADJUSTMENT, 1, 1)

    def _build_tracks(self, parameters, checkpoint, progress):
        builder = TrackBuilder(parameters)
        tracks = builder.build(self._current_match_sets(), self.frames.timestamps, checkpoint)
        self._tracks = tracks
        _report(progress, CameraMotionStep.BUILD_TRACKS, 1, 1)
        logger.info("Built %d tracks", len(tracks))

    # ------------------------------------------------------------------
    # Cached results
    # ------------------------------------------------------------------

    def _clear_results(self):
        self._frame_indices = {}
        self._features = FeatureStore()
        self._match_sets = []
        self._estimated_chain = TransformChain()
        self._bundle_result = None
        self._tracks = []
        self.completed_steps = set()
        self.timing = {}

    def _invalidate_from(self, step):
        index = PIPELINE_ORDER.index(step)
        for stage in PIPELINE_ORDER[index:]:
            self.completed_steps.discard(stage)

        if index <= 0:
            self._features = FeatureStore()
        if index <= 1:
            self._match_sets = []
        if index <= 2:
            self._estimated_chain = TransformChain()
        if index <= 3:
            self._bundle_result = None
        self._tracks = []

    def _current_match_sets(self):
        if CameraMotionStep.BUNDLE_ADJUSTMENT in self.completed_steps and self._bundle_result is not None:
            return self._bundle_result.match_sets
        if CameraMotionStep.MATCH_FEATURES in self.completed_steps:
            return self._match_sets
        return []

    def _current_chain(self):
        if CameraMotionStep.BUNDLE_ADJUSTMENT in self.completed_steps and self._bundle_result is not None:
            return self._bundle_result.chain
        if CameraMotionStep.FIND_HOMOGRAPHIES in self.completed_steps:
            return self._estimated_chain
        return TransformChain()

    def _ensure_not_running(self):
        if self.state == PipelineState.RUNNING:
            raise PipelineBusyError("A camera motion run is in progress")

    # ------------------------------------------------------------------
    # Read-only accessors
    # ------------------------------------------------------------------

    @property
    def tracked(self):
        """Whether camera motion results are available."""
        return CameraMotionStep.FIND_HOMOGRAPHIES in self.completed_steps

    def frame_index_of(self, timestamp):
        """Frame index of a timestamp, or None if it is not in the working zone."""
        self._ensure_not_running()
        return self._frame_indices.get(timestamp)

    def get_features(self, timestamp):
        """
        All the features found in the frame at a timestamp.

        Returns:
            Points (Nx2), empty if there are none
        """
        self._ensure_not_running()
        index = self._frame_indices.get(timestamp)
        if index is None or CameraMotionStep.FIND_FEATURES not in self.completed_steps:
            return np.zeros((0, 2), dtype=np.float32)
        return self._features[index].points.copy()

    def get_match_set(self, timestamp):
        """MatchSet of the pair starting at a timestamp, empty if none."""
        self._ensure_not_running()
        index = self._frame_indices.get(timestamp)
        match_sets = self._current_match_sets()
        if index is None or index >= len(match_sets) or match_sets[index] is None:
            return MatchSet.empty()
        return match_sets[index]

    def get_matches(self, timestamp):
        """
        Matches between the frame at a timestamp and the next one.

        Returns:
            List of Match(p1, p2, inlier)
        """
        return self.get_match_set(timestamp).to_list()

    @property
    def transform_chain(self):
        """Frame-to-frame homographies; may contain holes (None)."""
        self._ensure_not_running()
        return self._current_chain()

    @property
    def bundle_adjustment_result(self):
        self._ensure_not_running()
        if CameraMotionStep.BUNDLE_ADJUSTMENT not in self.completed_steps:
            return None
        return self._bundle_result

    def get_tracks(self, min_length=None):
        """
        Tracks built by the last run.

        Args:
            min_length: Only return tracks with at least this many points

        Returns:
            List of Track
        """
        self._ensure_not_running()
        if CameraMotionStep.BUILD_TRACKS not in self.completed_steps:
            return []
        if min_length is None:
            return list(self._tracks)
        return [track for track in self._tracks if len(track) >= min_length]

    def get_tracks_at(self, timestamp, min_length=None):
        """Tracks whose lifetime contains a timestamp."""
        return [track for track in self.get_tracks(min_length) if track.covers(timestamp)]

    def collect_time_vector(self):
        """
        Timestamps of the tabular export, one per working zone frame.

        Returns:
            List of timestamps, empty when no tracks were built
        """
        self._ensure_not_running()
        if CameraMotionStep.BUILD_TRACKS not in self.completed_steps or self.frames is None:
            return []
        return list(self.frames.timestamps)

    def collect_data(self):
        """
        Per-track point series aligned with `collect_time_vector()`.

        Tracks shorter than `min_track_length` are left out. Entries outside a
        track's lifetime are (nan, nan).

        Returns:
            Dictionary of track name -> list of (x, y)
        """
        timestamps = self.collect_time_vector()
        data = {}
        for track in self.get_tracks(self.parameters.min_track_length):
            series = [(np.nan, np.nan)] * len(timestamps)
            for offset, point in enumerate(track.points):
                series[track.start_index + offset] = point
            data[f"track_{track.id:05d}"] = series
        return data

    def get_summary(self, timestamp):
        """
        Statistics of the results at a timestamp.

        Returns:
            Dictionary with frame position, feature, match, inlier and track counts
        """
        self._ensure_not_running()
        summary = {}
        index = self._frame_indices.get(timestamp)
        if index is not None:
            summary['frame'] = index + 1
            summary['frame_count'] = len(self.frames)

        features = self.get_features(timestamp)
        if len(features) > 0:
            summary['features'] = len(features)
            summary['features_budget'] = self.parameters.features_per_frame

        match_set = self.get_match_set(timestamp)
        if len(match_set) > 0:
            summary['matches'] = len(match_set)
            summary['inliers'] = match_set.inlier_count

        tracks = self.get_tracks()
        if tracks:
            summary['tracks'] = len(tracks)

        return summary

    def get_stats(self):
        """Get pipeline statistics"""
        chain = self._current_chain() if self.state != PipelineState.RUNNING else TransformChain()
        return {
            'state': self.state.name,
            'frames': len(self.frames) if self.frames is not None else 0,
            'completed_steps': [s.name for s in PIPELINE_ORDER if s in self.completed_steps],
            'transforms': len(chain),
            'holes': len(chain.holes()),
            'tracks': len(self._tracks),
            'timing': dict(self.timing),
        }
