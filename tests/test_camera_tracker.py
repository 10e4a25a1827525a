import math
import threading

import cv2
import numpy as np
import pytest

from camera_motion.core.bundle_adjustment import DISABLED
from camera_motion.core.camera_tracker import PipelineState
from camera_motion.core.config import PIPELINE_ORDER, CameraMotionStep
from camera_motion.core.errors import InputError, MaskSizeError, PipelineBusyError
from camera_motion.core.frames import Frame
from camera_motion.core.matcher import CorrespondenceMatcher
from camera_motion.core.tracks import TrackBuilder

from conftest import FRAME_INTERVAL, SHIFT, blank_frame, shifted_frames


def reported_steps(calls):
    return {step for step, _, _ in calls}


def test_run_all(make_tracker, frames):
    tracker = make_tracker(frames)
    assert tracker.run() == PipelineState.COMPLETED

    assert tracker.state == PipelineState.COMPLETED
    assert tracker.tracked
    assert tracker.completed_steps == set(PIPELINE_ORDER)
    assert [tracker.frame_index_of(f.timestamp) for f in frames] == list(range(len(frames)))

    chain = tracker.transform_chain
    assert len(chain) == len(frames) - 1
    assert chain.holes() == []
    for H in chain:
        assert np.allclose(H[:2, 2], [-SHIFT[0], -SHIFT[1]], atol=1.0)
        assert np.allclose(H[:2, :2], np.eye(2), atol=0.02)

    assert tracker.bundle_adjustment_result is not None
    assert len(tracker.get_tracks()) > 0


def test_matches_are_one_to_one(make_tracker, frames):
    tracker = make_tracker(frames)
    tracker.run(CameraMotionStep.MATCH_FEATURES)

    for frame in frames[:-1]:
        match_set = tracker.get_match_set(frame.timestamp)
        assert len(match_set) > 0
        assert len(np.unique(match_set.src_idx)) == len(match_set)
        assert len(np.unique(match_set.dst_idx)) == len(match_set)

    # The last frame has no following pair
    assert tracker.get_matches(frames[-1].timestamp) == []


def test_results_are_deterministic(make_tracker, parameters, frames):
    first = make_tracker(frames)
    first.run()

    parallel = parameters.copy()
    parallel.workers = 3
    second = make_tracker(frames, parallel)
    second.run()

    for frame in frames:
        assert np.array_equal(first.get_features(frame.timestamp), second.get_features(frame.timestamp))
        assert first.get_matches(frame.timestamp) == second.get_matches(frame.timestamp)

    for H1, H2 in zip(first.transform_chain, second.transform_chain):
        assert np.allclose(H1, H2, atol=1e-9)

    assert [t.items() for t in first.get_tracks()] == [t.items() for t in second.get_tracks()]


def test_tracks_are_contiguous(make_tracker, frames):
    tracker = make_tracker(frames)
    tracker.run()
    timestamps = [f.timestamp for f in frames]

    for track in tracker.get_tracks():
        assert len(track) >= 2
        assert track.timestamps == timestamps[track.start_index:track.start_index + len(track)]

    assert all(len(t) >= 3 for t in tracker.get_tracks(min_length=3))
    for track in tracker.get_tracks_at(timestamps[2]):
        assert track.covers(timestamps[2])


def test_reset_clears_results(make_tracker, frames):
    tracker = make_tracker(frames)
    tracker.run()
    tracker.reset()

    assert tracker.state == PipelineState.IDLE
    assert not tracker.tracked
    assert len(tracker.transform_chain) == 0
    assert tracker.get_tracks() == []
    assert len(tracker.get_features(frames[0].timestamp)) == 0
    assert tracker.frame_index_of(frames[0].timestamp) is None

    # Same results after running again
    assert tracker.run() == PipelineState.COMPLETED
    assert len(tracker.transform_chain) == len(frames) - 1


def test_featureless_frame_leaves_a_hole(make_tracker):
    frames = [shifted_frames(1)[0], blank_frame(FRAME_INTERVAL)]
    tracker = make_tracker(frames)

    assert tracker.run() == PipelineState.COMPLETED
    assert len(tracker.transform_chain) == 1
    assert tracker.transform_chain.holes() == [0]
    assert tracker.get_tracks() == []
    assert tracker.bundle_adjustment_result.status == 'nothing to refine'


def test_unreadable_frame_breaks_the_chain(make_tracker):
    frames = shifted_frames(6)
    frames[2] = Frame(image=None, timestamp=frames[2].timestamp)
    tracker = make_tracker(frames)

    assert tracker.run() == PipelineState.COMPLETED
    assert tracker.transform_chain.holes() == [1, 2]
    for track in tracker.get_tracks():
        assert not track.covers(frames[2].timestamp)


def test_input_errors(make_tracker, frames):
    tracker = make_tracker()
    with pytest.raises(InputError):
        tracker.run()
    assert tracker.state == PipelineState.FAILED

    tracker = make_tracker(frames[:1])
    with pytest.raises(InputError):
        tracker.run(CameraMotionStep.MATCH_FEATURES)
    assert tracker.completed_steps == set()

    # Detection alone works on a single frame
    assert tracker.run(CameraMotionStep.FIND_FEATURES) == PipelineState.COMPLETED

    unordered = [frames[1], frames[0]]
    with pytest.raises(InputError):
        make_tracker(unordered).run()


def test_mask_size_mismatch(make_tracker, frames, mask_file):
    tracker = make_tracker(frames)
    with pytest.raises(MaskSizeError):
        tracker.set_mask(mask_file(size=(100, 100)))

    # A mask set before the frames is checked when the run starts
    tracker = make_tracker()
    tracker.set_mask(mask_file(size=(100, 100)))
    tracker.set_frames(frames)
    with pytest.raises(MaskSizeError):
        tracker.run()
    assert tracker.state == PipelineState.FAILED
    assert not tracker.tracked


def test_mask_is_applied(make_tracker, frames, mask_file):
    tracker = make_tracker(frames)
    tracker.set_mask(mask_file())
    tracker.run(CameraMotionStep.FIND_FEATURES)

    for frame in frames:
        points = tracker.get_features(frame.timestamp)
        assert len(points) > 0
        assert np.all(np.rint(points[:, 0]) >= 160)

    tracker.clear_mask()
    assert tracker.completed_steps == set()


def test_cancel_during_detection(make_tracker, frames):
    tracker = make_tracker(frames)
    cancel_event = threading.Event()

    def progress(step, done, total):
        cancel_event.set()

    assert tracker.run(progress=progress, cancel_event=cancel_event) == PipelineState.CANCELLED
    assert tracker.completed_steps == set()
    assert len(tracker.get_features(frames[0].timestamp)) == 0
    assert not tracker.tracked

    assert tracker.run() == PipelineState.COMPLETED


def test_cancel_keeps_completed_stages(make_tracker, frames):
    tracker = make_tracker(frames)
    cancel_event = threading.Event()

    def progress(step, done, total):
        if step == CameraMotionStep.MATCH_FEATURES:
            cancel_event.set()

    handle = tracker.start(progress=progress, cancel_event=cancel_event)
    assert handle.join(30) == PipelineState.CANCELLED
    assert handle.status == PipelineState.CANCELLED
    assert tracker.completed_steps == {CameraMotionStep.FIND_FEATURES}
    assert tracker.get_matches(frames[0].timestamp) == []


def test_busy_rejects_concurrent_use(make_tracker, frames):
    tracker = make_tracker(frames)
    started = threading.Event()
    release = threading.Event()

    def progress(step, done, total):
        started.set()
        release.wait(10)

    handle = tracker.start(CameraMotionStep.FIND_FEATURES, progress=progress)
    try:
        assert started.wait(10)
        assert not handle.done()
        assert handle.status == PipelineState.RUNNING

        with pytest.raises(PipelineBusyError):
            tracker.start()
        with pytest.raises(PipelineBusyError):
            tracker.get_tracks()
        with pytest.raises(PipelineBusyError):
            tracker.reset()
        with pytest.raises(PipelineBusyError):
            tracker.set_parameters(tracker.parameters)
    finally:
        release.set()

    assert handle.join(30) == PipelineState.COMPLETED
    assert handle.error is None


def test_cached_stages_are_skipped(make_tracker, frames):
    tracker = make_tracker(frames)
    tracker.run(CameraMotionStep.FIND_FEATURES)

    calls = []
    tracker.run(progress=lambda *args: calls.append(args))
    assert CameraMotionStep.FIND_FEATURES not in reported_steps(calls)
    assert CameraMotionStep.BUILD_TRACKS in reported_steps(calls)

    calls.clear()
    assert tracker.run() == PipelineState.COMPLETED
    assert calls == []


def test_parameter_changes_invalidate_downstream(make_tracker, frames):
    tracker = make_tracker(frames)
    tracker.run()

    params = tracker.parameters.copy()
    params.min_track_length = 4
    tracker.set_parameters(params)
    assert tracker.completed_steps == set(PIPELINE_ORDER)

    params = tracker.parameters.copy()
    params.ransac_threshold = 2.0
    tracker.set_parameters(params)
    assert tracker.completed_steps == {CameraMotionStep.FIND_FEATURES}
    assert tracker.get_tracks() == []

    calls = []
    tracker.run(progress=lambda *args: calls.append(args))
    assert CameraMotionStep.FIND_FEATURES not in reported_steps(calls)
    assert CameraMotionStep.MATCH_FEATURES in reported_steps(calls)


def test_bundle_adjustment_disabled(make_tracker, parameters, frames):
    parameters.bundle_adjustment = False
    tracker = make_tracker(frames, parameters)
    tracker.run()

    result = tracker.bundle_adjustment_result
    assert result.status == DISABLED
    assert result.chain is tracker.transform_chain


def test_partial_run_exposes_partial_results(make_tracker, frames):
    tracker = make_tracker(frames)
    tracker.run(CameraMotionStep.FIND_HOMOGRAPHIES)

    assert tracker.tracked
    assert len(tracker.transform_chain) == len(frames) - 1
    assert tracker.bundle_adjustment_result is None
    assert tracker.get_tracks() == []
    assert tracker.collect_time_vector() == []


def test_collect_data_is_aligned(make_tracker, frames):
    tracker = make_tracker(frames)
    tracker.run()

    time_vector = tracker.collect_time_vector()
    data = tracker.collect_data()
    assert time_vector == [f.timestamp for f in frames]
    assert len(data) == len(tracker.get_tracks(tracker.parameters.min_track_length))

    track = tracker.get_tracks()[0]
    series = data[f"track_{track.id:05d}"]
    assert len(series) == len(time_vector)
    for timestamp, point in zip(time_vector, series):
        if track.covers(timestamp):
            assert point == track.get(timestamp)
        else:
            assert math.isnan(point[0]) and math.isnan(point[1])


def test_summary(make_tracker, frames):
    tracker = make_tracker(frames)
    tracker.run()

    summary = tracker.get_summary(frames[0].timestamp)
    assert summary['frame'] == 1
    assert summary['frame_count'] == len(frames)
    assert 0 < summary['features'] <= summary['features_budget']
    assert summary['inliers'] <= summary['matches']
    assert summary['tracks'] == len(tracker.get_tracks())

    assert tracker.frame_index_of(frames[3].timestamp) == 3
    assert tracker.frame_index_of(-1) is None


def test_available_steps(make_tracker, parameters):
    assert make_tracker().available_steps() == [CameraMotionStep.ALL]

    parameters.step_by_step = True
    assert len(make_tracker(params=parameters).available_steps()) == 6


def test_failure_is_reported(make_tracker, frames, monkeypatch):
    def boom(self, match_sets, timestamps, cancel_check=None):
        raise RuntimeError("boom")

    monkeypatch.setattr(TrackBuilder, 'build', boom)
    tracker = make_tracker(frames)

    handle = tracker.start()
    assert handle.join(30) == PipelineState.FAILED
    assert isinstance(handle.error, RuntimeError)
    assert tracker.last_error is handle.error
    assert CameraMotionStep.BUILD_TRACKS not in tracker.completed_steps

    with pytest.raises(RuntimeError):
        tracker.run()


def test_matching_error_on_one_pair_is_absorbed(make_tracker, frames, monkeypatch):
    original = CorrespondenceMatcher.match

    def failing_match(self, features1, features2):
        if features1 is failing_match.features:
            raise cv2.error("matching failed")
        return original(self, features1, features2)

    tracker = make_tracker(frames)
    tracker.run(CameraMotionStep.FIND_FEATURES)
    failing_match.features = tracker._features[1]
    monkeypatch.setattr(CorrespondenceMatcher, 'match', failing_match)

    assert tracker.run() == PipelineState.COMPLETED
    assert tracker.get_matches(frames[1].timestamp) == []
    assert tracker.transform_chain.holes() == [1]
    assert len(tracker.get_matches(frames[0].timestamp)) > 0
