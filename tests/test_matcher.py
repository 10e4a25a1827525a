import numpy as np

from camera_motion.core.config import CameraMotionParameters
from camera_motion.core.features import FeatureDetector, FrameFeatures
from camera_motion.core.matcher import CorrespondenceMatcher, Match, MatchSet

from conftest import SHIFT, shifted_frames


def descriptors(*rows):
    return np.array(rows, dtype=np.uint8)


def plain_matcher():
    params = CameraMotionParameters()
    params.max_distance_ratio = 1.0
    params.cross_check = False
    return CorrespondenceMatcher(params)


def test_ties_resolve_to_lowest_target_index():
    row = [7] * 32
    src, dst = plain_matcher().propose(descriptors(row), descriptors(row, row, row))
    assert list(src) == [0]
    assert list(dst) == [0]


def test_ratio_test_rejects_ambiguous_matches():
    params = CameraMotionParameters()
    params.cross_check = False
    row = [7] * 32
    src, dst = CorrespondenceMatcher(params).propose(descriptors(row), descriptors(row, row))
    assert len(src) == 0


def test_cross_check_keeps_mutual_nearest():
    a = [0] * 32
    b = [1] + [0] * 31
    params = CameraMotionParameters()
    params.max_distance_ratio = 1.0
    src, dst = CorrespondenceMatcher(params).propose(descriptors(a, b), descriptors(a))
    assert list(src) == [0]
    assert list(dst) == [0]


def test_propose_without_descriptors():
    src, dst = plain_matcher().propose(None, descriptors([0] * 32))
    assert len(src) == 0 and len(dst) == 0


def test_match_shifted_frames(parameters):
    frames = shifted_frames(2)
    detector = FeatureDetector(parameters)
    f1 = detector.detect(frames[0].image)
    f2 = detector.detect(frames[1].image)

    matcher = CorrespondenceMatcher(parameters)
    match_set = matcher.match(f1, f2)

    assert len(match_set) > 50
    assert matcher.get_stats() == {'num_candidates': len(match_set), 'num_inliers': match_set.inlier_count}
    assert match_set.inlier_count > 0.8 * len(match_set)
    # Each feature is used at most once on each side
    assert len(set(match_set.src_idx)) == len(match_set)
    assert len(set(match_set.dst_idx)) == len(match_set)

    p1, p2 = match_set.inlier_points()
    motion = np.median(p2 - p1, axis=0)
    assert np.allclose(motion, [-SHIFT[0], -SHIFT[1]], atol=0.5)


def test_too_few_candidates_gives_empty_set(parameters):
    points = np.float32([[10, 10], [20, 20], [30, 30]])
    desc = np.arange(3 * 32, dtype=np.uint8).reshape(3, 32)
    features = FrameFeatures(points, desc)

    match_set = CorrespondenceMatcher(parameters).match(features, features)
    assert len(match_set) == 0
    assert match_set.to_list() == []


def test_match_set_to_list():
    match_set = MatchSet(np.int32([0, 1]), np.int32([1, 0]),
                         np.float32([[1, 2], [3, 4]]), np.float32([[5, 6], [7, 8]]),
                         np.array([True, False]))
    assert match_set.to_list() == [Match((1.0, 2.0), (5.0, 6.0), True),
                                   Match((3.0, 4.0), (7.0, 8.0), False)]
    assert match_set.inlier_count == 1
    assert match_set.with_inliers(np.array([True, True])).inlier_count == 2


def test_binary_descriptors_match_themselves():
    desc = np.random.default_rng(3).integers(0, 256, size=(5, 32), dtype=np.uint8)
    src, dst = CorrespondenceMatcher(CameraMotionParameters()).propose(desc, desc)
    assert list(src) == list(range(5))
    assert list(dst) == list(range(5))


def test_float_descriptors_use_l2():
    desc1 = np.float32([[0, 0, 0, 0], [10, 0, 0, 0], [0, 10, 0, 0]])
    desc2 = np.float32([[0, 10.5, 0, 0], [0.5, 0, 0, 0], [10, 0.5, 0, 0]])
    src, dst = CorrespondenceMatcher(CameraMotionParameters()).propose(desc1, desc2)
    assert list(src) == [0, 1, 2]
    assert list(dst) == [1, 2, 0]


def test_cross_check_with_tied_targets():
    row = [7] * 32
    params = CameraMotionParameters()
    params.max_distance_ratio = 1.0
    # Both sources tie on the single target, which keeps the first one.
    src, dst = CorrespondenceMatcher(params).propose(descriptors(row, row), descriptors(row))
    assert list(src) == [0]
    assert list(dst) == [0]
