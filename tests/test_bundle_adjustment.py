import numpy as np
import pytest

from camera_motion.core.bundle_adjustment import (NOTHING_TO_REFINE, REFINED, BundleAdjuster,
                                                  apply_homographies)
from camera_motion.core.config import CameraMotionParameters
from camera_motion.core.errors import PipelineCancelled
from camera_motion.core.homography import TransformChain
from camera_motion.core.matcher import MatchSet

STEP = np.array([-4.0, -2.0])


def translation(t):
    return np.array([[1.0, 0.0, t[0]], [0.0, 1.0, t[1]], [0.0, 0.0, 1.0]])


def moving_points(frame_count, count=50):
    """Same points in every frame, translated by STEP per frame."""
    rng = np.random.default_rng(11)
    base = rng.uniform(20, 280, size=(count, 2))
    return [(base + STEP * i).astype(np.float32) for i in range(frame_count)]


def identity_match_sets(points):
    idx = np.arange(len(points[0]), dtype=np.int32)
    return [MatchSet(idx, idx, points[i], points[i + 1], np.ones(len(idx), dtype=bool))
            for i in range(len(points) - 1)]


def test_nothing_to_refine():
    chain = TransformChain.with_holes(2)
    points = moving_points(3)
    result = BundleAdjuster(CameraMotionParameters()).refine(chain, identity_match_sets(points), points)

    assert result.status == NOTHING_TO_REFINE
    assert result.chain is chain


def test_perturbed_chain_is_corrected():
    points = moving_points(5)
    match_sets = identity_match_sets(points)
    chain = TransformChain([translation(STEP) for _ in range(4)])
    chain[1] = translation(STEP + [1.5, -1.0])

    result = BundleAdjuster(CameraMotionParameters()).refine(chain, match_sets, points)

    assert result.status == REFINED
    assert result.final_error < result.initial_error
    assert result.observations > 0
    for H in result.chain:
        assert np.allclose(H, translation(STEP), atol=0.05)
    # The input chain is left untouched
    assert chain[1][0, 2] == pytest.approx(STEP[0] + 1.5)


def test_refinement_skips_holes():
    points = moving_points(4)
    match_sets = identity_match_sets(points)
    chain = TransformChain([translation(STEP + [0.5, 0.5]), None, translation(STEP)])

    result = BundleAdjuster(CameraMotionParameters()).refine(chain, match_sets, points)

    assert result.status == REFINED
    assert result.chain.holes() == [1]
    assert np.allclose(result.chain[0], translation(STEP), atol=0.05)


def test_inliers_are_reclassified():
    points = moving_points(2)
    # An extra correspondence far from the global motion, flagged as inlier.
    points[0] = np.vstack([points[0], [[100.0, 100.0]]]).astype(np.float32)
    points[1] = np.vstack([points[1], [[160.0, 40.0]]]).astype(np.float32)
    match_sets = identity_match_sets(points)
    chain = TransformChain([translation(STEP + [0.3, 0.0])])

    result = BundleAdjuster(CameraMotionParameters()).refine(chain, match_sets, points)

    assert result.status == REFINED
    assert result.inliers_changed >= 1
    assert not result.match_sets[0].inliers[-1]
    assert result.match_sets[0].inliers[:-1].all()


def test_apply_homographies():
    Hs = np.stack([translation([1, 2]), translation([-1, 0])])
    projected = apply_homographies(Hs, np.array([[0.0, 0.0], [5.0, 5.0]]))
    assert np.allclose(projected, [[1, 2], [4, 5]])


def test_cancel_stops_the_optimisation():
    points = moving_points(5)
    match_sets = identity_match_sets(points)
    chain = TransformChain([translation(STEP + [1.0, 1.0]) for _ in range(4)])
    calls = []

    def cancel_check():
        calls.append(1)
        if len(calls) > 3:
            raise PipelineCancelled()

    with pytest.raises(PipelineCancelled):
        BundleAdjuster(CameraMotionParameters()).refine(chain, match_sets, points, cancel_check=cancel_check)
    assert len(calls) == 4
