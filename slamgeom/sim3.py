"""Similarity transform (Sim3) estimation between two sets of 3D points.

A closed-form absolute-orientation solution (unit quaternions) computes the
transform from three matched points. A RANSAC loop scores each transform
by reprojecting the points into both cameras.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field

import numpy as np

_MIN_SET = 3
_CHI2_THRESHOLD = 9.210


@dataclass(frozen=True)
class Sim3Transform:
    """Maps a point p of frame 2 to frame 1 as ``scale * rotation @ p + translation``."""

    rotation: np.ndarray
    translation: np.ndarray
    scale: float = 1.0

    @property
    def matrix(self):
        """The 4x4 homogeneous matrix [sR | t]."""
        out = np.eye(4)
        out[:3, :3] = self.scale * np.asarray(self.rotation, dtype=float)
        out[:3, 3] = np.asarray(self.translation, dtype=float).reshape(3)
        return out

    def inverse(self):
        """The transform that maps frame 1 back to frame 2."""
        rot_t = np.asarray(self.rotation, dtype=float).T
        inv_scale = 1.0 / self.scale
        trans = -inv_scale * (rot_t @ np.asarray(self.translation, dtype=float).reshape(3))
        return Sim3Transform(rot_t, trans, inv_scale)

    def apply(self, points):
        """Transform points (N x 3 or a single 3-vector)."""
        pts = np.asarray(points, dtype=float)
        single = pts.ndim == 1
        pts = pts.reshape(-1, 3)
        rot = np.asarray(self.rotation, dtype=float)
        out = self.scale * pts @ rot.T + np.asarray(self.translation, dtype=float).reshape(3)
        return out[0] if single else out


@dataclass(frozen=True)
class Sim3Match:
    """A map point seen in both keyframes, in each camera's coordinates.

    ``index`` is the position of the match in the keyframe's match list;
    ``sigma2_1`` and ``sigma2_2`` are the squared scale uncertainties of the
    keypoint levels in keyframe 1 and keyframe 2.
    """

    point1: tuple[float, float, float]
    point2: tuple[float, float, float]
    sigma2_1: float
    sigma2_2: float
    index: int


@dataclass
class Sim3Result:
    """Outcome of a batch of RANSAC iterations.

    ``inliers`` is indexed like the match list; ``transform`` is None when
    no transform was accepted.
    """

    transform: Sim3Transform | None
    inliers: list[bool] = field(default_factory=list)
    n_inliers: int = 0
    no_more: bool = False

    @property
    def found(self):
        return self.transform is not None

    @property
    def pose(self):
        """The 4x4 matrix T12, or None."""
        return None if self.transform is None else self.transform.matrix


def _rodrigues(vec):
    theta = float(np.linalg.norm(vec))
    if theta == 0.0:
        return np.eye(3)
    k = vec / theta
    skew = np.array([[0.0, -k[2], k[1]], [k[2], 0.0, -k[0]], [-k[1], k[0], 0.0]])
    return math.cos(theta) * np.eye(3) + (1 - math.cos(theta)) * np.outer(k, k) + math.sin(theta) * skew


def compute_sim3(points1, points2, fix_scale=True):
    """Transform taking ``points2`` onto ``points1`` (both N x 3, N >= 3).

    With ``fix_scale`` the scale is held at 1.
    """
    p1 = np.asarray(points1, dtype=float).reshape(-1, 3)
    p2 = np.asarray(points2, dtype=float).reshape(-1, 3)
    if len(p1) != len(p2):
        raise ValueError("point sets must have the same length")
    if len(p1) < _MIN_SET:
        raise ValueError("at least three points are required")

    o1 = p1.mean(axis=0)
    o2 = p2.mean(axis=0)
    pr1 = p1 - o1
    pr2 = p2 - o2

    m = pr2.T @ pr1
    n11 = m[0, 0] + m[1, 1] + m[2, 2]
    n12 = m[1, 2] - m[2, 1]
    n13 = m[2, 0] - m[0, 2]
    n14 = m[0, 1] - m[1, 0]
    n22 = m[0, 0] - m[1, 1] - m[2, 2]
    n23 = m[0, 1] + m[1, 0]
    n24 = m[2, 0] + m[0, 2]
    n33 = -m[0, 0] + m[1, 1] - m[2, 2]
    n34 = m[1, 2] + m[2, 1]
    n44 = -m[0, 0] - m[1, 1] + m[2, 2]
    n = np.array([
        [n11, n12, n13, n14],
        [n12, n22, n23, n24],
        [n13, n23, n33, n34],
        [n14, n24, n34, n44],
    ])

    _, vectors = np.linalg.eigh(n)
    quat = vectors[:, -1]
    imaginary = quat[1:]
    sin_half = float(np.linalg.norm(imaginary))
    if sin_half == 0.0:
        rotation = np.eye(3)
    else:
        angle = math.atan2(sin_half, quat[0])
        rotation = _rodrigues(2 * angle * imaginary / sin_half)

    rotated = pr2 @ rotation.T
    if fix_scale:
        scale = 1.0
    else:
        scale = float(np.sum(pr1 * rotated)) / float(np.sum(rotated**2))

    translation = o1 - scale * rotation @ o2
    return Sim3Transform(rotation, translation, scale)


def camera_to_image(points, calibration):
    """Project camera-frame points (N x 3) to pixels (N x 2) with K."""
    k = np.asarray(calibration, dtype=float).reshape(3, 3)
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    inv_z = 1.0 / pts[:, 2]
    u = k[0, 0] * pts[:, 0] * inv_z + k[0, 2]
    v = k[1, 1] * pts[:, 1] * inv_z + k[1, 2]
    return np.column_stack((u, v))


def _ransac_iterations(probability, epsilon, max_iterations):
    denom = 1.0 - epsilon**3
    if denom <= 0.0:
        return 0
    if probability >= 1.0 or denom >= 1.0:
        return max_iterations
    return math.ceil(math.log(1.0 - probability) / math.log(denom))


class Sim3Solver:
    """RANSAC estimation of the Sim3 between two keyframes from matched points."""

    def __init__(self, matches, n_matches=None, calibration1=None, calibration2=None,
                 fix_scale=True, rng=None):
        self._matches = list(matches)
        indices = [m.index for m in self._matches]
        if n_matches is None:
            n_matches = max(indices, default=-1) + 1
        if any(i < 0 or i >= n_matches for i in indices):
            raise ValueError("match index outside the match list")
        if calibration1 is None or calibration2 is None:
            raise ValueError("both calibration matrices are required")
        self.n_matches = n_matches
        self.fix_scale = fix_scale
        self._rng = rng if rng is not None else random.Random()
        self._indices = indices

        self._k1 = np.asarray(calibration1, dtype=float).reshape(3, 3)
        self._k2 = np.asarray(calibration2, dtype=float).reshape(3, 3)
        self._x1 = np.array([m.point1 for m in self._matches], dtype=float).reshape(-1, 3)
        self._x2 = np.array([m.point2 for m in self._matches], dtype=float).reshape(-1, 3)
        # The error bounds are held as whole numbers (truncated).
        self._max_error1 = np.floor(
            _CHI2_THRESHOLD * np.array([m.sigma2_1 for m in self._matches], dtype=float)
        )
        self._max_error2 = np.floor(
            _CHI2_THRESHOLD * np.array([m.sigma2_2 for m in self._matches], dtype=float)
        )
        self._p1_im1 = camera_to_image(self._x1, self._k1)
        self._p2_im2 = camera_to_image(self._x2, self._k2)

        self._best = None
        self._best_count = 0
        self._best_inliers = np.zeros(len(self._matches), dtype=bool)
        self.set_ransac_parameters()

    def __len__(self):
        return len(self._matches)

    @property
    def iterations_done(self):
        return self._iterations_done

    @property
    def best(self):
        """The best transform found so far, or None."""
        return self._best

    def set_ransac_parameters(self, probability=0.99, min_inliers=6, max_iterations=300):
        """Set the RANSAC parameters and restart the iteration count."""
        n = len(self._matches)
        self.probability = probability
        self.min_inliers = min_inliers
        if min_inliers == n:
            n_iterations = 1
        elif n == 0:
            n_iterations = max_iterations
        else:
            n_iterations = _ransac_iterations(probability, min_inliers / n, max_iterations)
        self.max_iterations = max(1, min(n_iterations, max_iterations))
        self._iterations_done = 0

    def _check_inliers(self, transform):
        inverse = transform.inverse()
        with np.errstate(all="ignore"):
            p2_im1 = camera_to_image(transform.apply(self._x2), self._k1)
            p1_im2 = camera_to_image(inverse.apply(self._x1), self._k2)
            err1 = np.sum((self._p1_im1 - p2_im1) ** 2, axis=1)
            err2 = np.sum((p1_im2 - self._p2_im2) ** 2, axis=1)
            return (err1 < self._max_error1) & (err2 < self._max_error2)

    def _frame_inliers(self, mask):
        flags = [False] * self.n_matches
        for i in np.flatnonzero(mask):
            flags[self._indices[i]] = True
        return flags

    def iterate(self, n_iterations):
        """Run up to ``n_iterations`` more iterations within the overall budget."""
        n = len(self._matches)
        no_inliers = [False] * self.n_matches
        if n < self.min_inliers or n < _MIN_SET:
            return Sim3Result(None, no_inliers, 0, True)

        current = 0
        while self._iterations_done < self.max_iterations and current < n_iterations:
            current += 1
            self._iterations_done += 1

            available = list(range(n))
            sample = []
            for _ in range(_MIN_SET):
                pick = self._rng.randint(0, len(available) - 1)
                sample.append(available[pick])
                available[pick] = available[-1]
                available.pop()

            with np.errstate(all="ignore"):
                transform = compute_sim3(self._x1[sample], self._x2[sample], self.fix_scale)
            mask = self._check_inliers(transform)
            count = int(mask.sum())

            if count >= self._best_count:
                self._best = transform
                self._best_count = count
                self._best_inliers = mask
                if count > self.min_inliers:
                    return Sim3Result(transform, self._frame_inliers(mask), count, False)

        no_more = self._iterations_done >= self.max_iterations
        return Sim3Result(None, no_inliers, 0, no_more)

    def find(self):
        """Run RANSAC up to the configured maximum number of iterations."""
        return self.iterate(self.max_iterations)