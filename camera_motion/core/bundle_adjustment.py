"""
Joint refinement of the transform chain.

Each frame-to-frame homography is first fit independently, so errors add up
along the chain. Bundle adjustment refines all homographies together: every
inlier correspondence is followed over up to `ba_max_span` consecutive pairs
and the composed homographies must map its first position onto each later
position. The problem is solved with scipy's trust region least squares
using the sparse Jacobian structure (each observation only depends on the
homographies of the pairs it spans).
"""

import logging

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from .homography import is_stable
from .utils import reprojection_errors

logger = logging.getLogger(__name__)

REFINED = 'refined'
NOTHING_TO_REFINE = 'nothing to refine'
NOT_IMPROVED = 'not improved'
DISABLED = 'disabled'


class BundleAdjustmentResult:
    """
    Outcome of a bundle adjustment pass.
    """

    def __init__(self, status, chain, match_sets, initial_error=None, final_error=None,
                 observations=0, inliers_changed=0):
        self.status = status
        self.chain = chain
        self.match_sets = match_sets
        self.initial_error = initial_error
        self.final_error = final_error
        self.observations = observations
        self.inliers_changed = inliers_changed

    def get_stats(self):
        return {
            'status': self.status,
            'initial_error': self.initial_error,
            'final_error': self.final_error,
            'observations': self.observations,
            'inliers_changed': self.inliers_changed,
        }


class Observations:
    """Multi-frame correspondences: a point in frame `start` seen in frame `start + span`."""

    def __init__(self, starts, spans, src, dst):
        self.starts = starts
        self.spans = spans
        self.src = src
        self.dst = dst

    def __len__(self):
        return len(self.starts)


def median_error(residuals):
    """Median reprojection error of the observations, in pixels."""
    return float(np.median(np.linalg.norm(residuals.reshape(-1, 2), axis=1)))


def apply_homographies(Hs, points):
    """
    Apply one homography per point.

    Args:
        Hs: Homographies (Nx3x3)
        points: Points (Nx2)

    Returns:
        Transformed points (Nx2)
    """
    ones = np.ones((len(points), 1))
    projected = np.einsum('nij,nj->ni', Hs, np.hstack([points, ones]))
    return projected[:, :2] / projected[:, 2:3]


class BundleAdjuster:
    """
    Refines the transform chain by minimizing the reprojection error of
    correspondences chained across several frames.
    """

    def __init__(self, config):
        """
        Initialize the bundle adjuster.

        Args:
            config: CameraMotionParameters with bundle adjustment parameters
        """
        self.config = config
        self.max_span = max(1, config.ba_max_span)
        self.max_iterations = config.ba_max_iterations
        self.loss = config.ba_loss
        self.f_scale = config.ransac_threshold
        self.update_inliers = config.ba_update_inliers
        self.inlier_threshold = config.ransac_threshold

    def refine(self, chain, match_sets, points, cancel_check=None):
        """
        Jointly refine the transform chain.

        Args:
            chain: TransformChain to refine
            match_sets: MatchSet per frame pair
            points: Feature points per frame
            cancel_check: Called on every residual evaluation, may raise to abort

        Returns:
            BundleAdjustmentResult with the refined chain and match sets
        """
        slots = [i for i in range(len(chain)) if not chain.is_hole(i)]
        if not slots:
            logger.info("Bundle adjustment: nothing to refine")
            return BundleAdjustmentResult(NOTHING_TO_REFINE, chain, match_sets)

        slot_of = np.full(len(chain), -1, dtype=np.int64)
        slot_of[slots] = np.arange(len(slots))

        observations = self._collect_observations(chain, match_sets, points)
        if len(observations) == 0:
            logger.info("Bundle adjustment: no observations, nothing to refine")
            return BundleAdjustmentResult(NOTHING_TO_REFINE, chain, match_sets)

        x0 = np.concatenate([(chain[i] / chain[i][2, 2]).ravel()[:8] for i in slots])
        sparsity = self._jacobian_sparsity(observations, slot_of, len(slots))

        def residuals(x):
            if cancel_check is not None:
                cancel_check()
            return self._residuals(x, observations, slot_of)

        initial_error = median_error(residuals(x0))

        result = least_squares(
            residuals,
            x0,
            jac_sparsity=sparsity,
            method='trf',
            loss=self.loss,
            f_scale=self.f_scale,
            x_scale='jac',
            max_nfev=self.max_iterations,
            ftol=1e-8,
            xtol=1e-10,
        )

        final_error = median_error(residuals(result.x))
        refined = self._unpack(result.x, len(slots))

        if not np.isfinite(final_error) or final_error > initial_error + 1e-6 or \
                not all(is_stable(H) for H in refined):
            logger.warning("Bundle adjustment did not improve the chain (median error %.3f -> %.3f px)",
                           initial_error, final_error)
            return BundleAdjustmentResult(NOT_IMPROVED, chain, match_sets,
                                          initial_error, initial_error, len(observations))

        refined_chain = chain.copy()
        for slot, i in enumerate(slots):
            refined_chain[i] = refined[slot]

        refined_sets = list(match_sets)
        changed = 0
        if self.update_inliers:
            refined_sets, changed = self._reclassify(refined_chain, match_sets)

        logger.info("Bundle adjustment: %d observations, median error %.3f -> %.3f px, %d inlier flags changed",
                    len(observations), initial_error, final_error, changed)

        return BundleAdjustmentResult(REFINED, refined_chain, refined_sets,
                                      initial_error, final_error, len(observations), changed)

    def _collect_observations(self, chain, match_sets, points):
        """Follow inlier correspondences through consecutive non-hole pairs."""
        links = []
        for i in range(len(chain)):
            match_set = match_sets[i] if i < len(match_sets) else None
            if chain.is_hole(i) or match_set is None or match_set.inlier_count == 0:
                links.append(None)
                continue
            lookup = np.full(len(points[i]), -1, dtype=np.int64)
            lookup[match_set.src_idx[match_set.inliers]] = match_set.dst_idx[match_set.inliers]
            links.append(lookup)

        starts, spans, src, dst = [], [], [], []
        for i, lookup in enumerate(links):
            if lookup is None:
                continue

            origin = np.flatnonzero(lookup >= 0)
            tip = lookup[origin]
            for span in range(1, self.max_span + 1):
                starts.append(np.full(len(origin), i, dtype=np.int64))
                spans.append(np.full(len(origin), span, dtype=np.int64))
                src.append(points[i][origin])
                dst.append(points[i + span][tip])

                following_pair = i + span
                if following_pair >= len(links) or links[following_pair] is None:
                    break
                following = links[following_pair][tip]
                ok = following >= 0
                origin, tip = origin[ok], following[ok]
                if len(origin) == 0:
                    break

        if not starts:
            return Observations(np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64),
                                np.zeros((0, 2)), np.zeros((0, 2)))

        return Observations(
            np.concatenate(starts),
            np.concatenate(spans),
            np.concatenate(src).astype(np.float64),
            np.concatenate(dst).astype(np.float64),
        )

    def _jacobian_sparsity(self, observations, slot_of, n_slots):
        m = 2 * len(observations)
        n = 8 * n_slots
        A = lil_matrix((m, n), dtype=int)

        obs = np.arange(len(observations))
        for k in range(self.max_span):
            selected = observations.spans > k
            if not np.any(selected):
                break
            o = obs[selected]
            slot = slot_of[observations.starts[selected] + k]
            for s in range(8):
                A[2 * o, slot * 8 + s] = 1
                A[2 * o + 1, slot * 8 + s] = 1

        return A

    @staticmethod
    def _unpack(x, n_slots):
        params = np.hstack([x.reshape(n_slots, 8), np.ones((n_slots, 1))])
        return params.reshape(n_slots, 3, 3)

    def _residuals(self, x, observations, slot_of):
        Hs = self._unpack(x, len(x) // 8)
        projected = np.empty_like(observations.src)

        for span in np.unique(observations.spans):
            group = np.flatnonzero(observations.spans == span)
            starts = observations.starts[group]
            composed = Hs[slot_of[starts]]
            for k in range(1, span):
                composed = np.matmul(Hs[slot_of[starts + k]], composed)
            projected[group] = apply_homographies(composed, observations.src[group])

        return (projected - observations.dst).ravel()

    def _reclassify(self, chain, match_sets):
        """Revise inlier flags against the refined transforms."""
        revised = list(match_sets)
        changed = 0
        for i, match_set in enumerate(match_sets):
            if match_set is None or len(match_set) == 0 or chain.is_hole(i):
                continue
            errors = reprojection_errors(chain[i], match_set.p1, match_set.p2)
            inliers = errors < self.inlier_threshold
            changed += int(np.count_nonzero(inliers != match_set.inliers))
            revised[i] = match_set.with_inliers(inliers)
        return revised, changed

