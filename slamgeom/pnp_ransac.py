"""RANSAC camera pose estimation over EPnP minimal sets."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field

import numpy as np

from slamgeom.epnp import CameraIntrinsics, compute_pose

_MIN_EPNP_POINTS = 4


@dataclass(frozen=True)
class Correspondence:
    """A world point matched to an undistorted keypoint of the frame.

    ``index`` is the keypoint's position in the frame's match list and
    ``sigma2`` the squared scale uncertainty of its pyramid level.
    """

    point: tuple[float, float, float]
    pixel: tuple[float, float]
    sigma2: float
    index: int


@dataclass
class RansacResult:
    """Outcome of a batch of RANSAC iterations.

    ``pose`` is the 4x4 world-to-camera transform, or None when no pose
    was accepted; ``inliers`` is indexed like the frame's match list and
    is empty when no pose was accepted.
    """

    pose: np.ndarray | None
    inliers: list[bool] = field(default_factory=list)
    n_inliers: int = 0
    no_more: bool = False

    @property
    def found(self):
        return self.pose is not None


def _pose_matrix(rotation, translation):
    pose = np.eye(4, dtype=np.float32)
    pose[:3, :3] = np.asarray(rotation, dtype=np.float32)
    pose[:3, 3] = np.asarray(translation, dtype=np.float32).reshape(3)
    return pose


def _ransac_iterations(probability, epsilon):
    """Iterations needed to draw a clean minimal set; None when unbounded."""
    denom = 1.0 - epsilon**3
    if denom <= 0.0:
        return 0
    if probability >= 1.0 or denom >= 1.0:
        return None
    return math.ceil(math.log(1.0 - probability) / math.log(denom))


class PnPRansac:
    """Robust camera pose from 3D-2D correspondences.

    Minimal sets are drawn at random, a pose is computed with EPnP and
    the best-supported pose is refined on all of its inliers.
    """

    def __init__(self, correspondences, intrinsics, n_matches=None, rng=None):
        self._correspondences = list(correspondences)
        if not isinstance(intrinsics, CameraIntrinsics):
            raise TypeError("intrinsics must be a CameraIntrinsics")
        self.intrinsics = intrinsics
        indices = [c.index for c in self._correspondences]
        if n_matches is None:
            n_matches = max(indices, default=-1) + 1
        if any(i < 0 or i >= n_matches for i in indices):
            raise ValueError("correspondence index outside the match list")
        self.n_matches = n_matches
        self._rng = rng if rng is not None else random.Random()

        self._points = np.array([c.point for c in self._correspondences], dtype=float).reshape(-1, 3)
        self._pixels = np.array([c.pixel for c in self._correspondences], dtype=float).reshape(-1, 2)
        self._sigma2 = np.array([c.sigma2 for c in self._correspondences], dtype=float)
        self._indices = indices

        self._iterations_done = 0
        self._best_inliers = np.zeros(len(self._correspondences), dtype=bool)
        self._best_count = 0
        self._best_pose = None

        self.set_ransac_parameters()

    def __len__(self):
        return len(self._correspondences)

    @property
    def iterations_done(self):
        return self._iterations_done

    def set_ransac_parameters(
        self,
        probability=0.99,
        min_inliers=8,
        max_iterations=300,
        min_set=4,
        epsilon=0.4,
        th2=5.991,
    ):
        """Set the RANSAC parameters, adjusting them to the number of matches."""
        if min_set < _MIN_EPNP_POINTS:
            raise ValueError("EPnP needs a minimal set of at least four points")
        n = len(self._correspondences)
        self.probability = probability
        self.min_set = min_set

        n_min_inliers = int(n * epsilon)
        n_min_inliers = max(n_min_inliers, min_inliers, min_set)
        self.min_inliers = n_min_inliers

        if n > 0 and epsilon < self.min_inliers / n:
            epsilon = self.min_inliers / n
        self.epsilon = epsilon

        if self.min_inliers == n:
            n_iterations = 1
        elif n == 0:
            n_iterations = max_iterations
        else:
            n_iterations = _ransac_iterations(probability, epsilon)
            if n_iterations is None:
                n_iterations = max_iterations
        self.max_iterations = max(1, min(n_iterations, max_iterations))

        self._max_error = self._sigma2 * th2

    def _check_inliers(self, rotation, translation):
        with np.errstate(all="ignore"):
            projected = self.intrinsics.project(self._points, rotation, translation)
            error2 = np.sum((self._pixels - projected) ** 2, axis=1)
            return error2 < self._max_error

    def _frame_inliers(self, mask):
        flags = [False] * self.n_matches
        for i in np.flatnonzero(mask):
            flags[self._indices[i]] = True
        return flags

    def _refine(self):
        chosen = np.flatnonzero(self._best_inliers)
        if len(chosen) < _MIN_EPNP_POINTS:
            return None
        estimate = compute_pose(self._points[chosen], self._pixels[chosen], self.intrinsics)
        mask = self._check_inliers(estimate.rotation, estimate.translation)
        count = int(mask.sum())
        if count > self.min_inliers:
            pose = _pose_matrix(estimate.rotation, estimate.translation)
            return RansacResult(pose, self._frame_inliers(mask), count, False)
        return None

    def iterate(self, n_iterations):
        """Run at least ``n_iterations`` RANSAC iterations and report the result."""
        n = len(self._correspondences)
        if n < self.min_inliers:
            return RansacResult(None, [], 0, True)

        current = 0
        while self._iterations_done < self.max_iterations or current < n_iterations:
            current += 1
            self._iterations_done += 1

            available = list(range(n))
            sample = []
            for _ in range(self.min_set):
                pick = self._rng.randint(0, len(available) - 1)
                sample.append(available[pick])
                available[pick] = available[-1]
                available.pop()

            estimate = compute_pose(self._points[sample], self._pixels[sample], self.intrinsics)
            mask = self._check_inliers(estimate.rotation, estimate.translation)
            count = int(mask.sum())

            if count >= self.min_inliers:
                if count > self._best_count:
                    self._best_inliers = mask
                    self._best_count = count
                    self._best_pose = _pose_matrix(estimate.rotation, estimate.translation)
                refined = self._refine()
                if refined is not None:
                    return refined

        if self._iterations_done >= self.max_iterations:
            if self._best_count >= self.min_inliers and self._best_pose is not None:
                return RansacResult(
                    self._best_pose.copy(),
                    self._frame_inliers(self._best_inliers),
                    self._best_count,
                    True,
                )
            return RansacResult(None, [], 0, True)
        return RansacResult(None, [], 0, False)

    def find(self):
        """Run RANSAC up to the configured maximum number of iterations."""
        return self.iterate(self.max_iterations)