"""Efficient Perspective-n-Point (EPnP) pose estimation.

The camera pose is recovered from 3D world points and their pixel
projections by expressing every point as a weighted sum of four control
points and solving for the control points in camera coordinates.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

_CONTROL_PAIRS = ((0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3))
_GAUSS_NEWTON_ITERATIONS = 5


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole camera: focal lengths and principal point in pixels."""

    fu: float
    fv: float
    uc: float
    vc: float

    def project(self, points, rotation, translation):
        """Project world points (N x 3) to pixels (N x 2) with the pose R, t."""
        pts = np.asarray(points, dtype=float).reshape(-1, 3)
        rot = np.asarray(rotation, dtype=float).reshape(3, 3)
        trans = np.asarray(translation, dtype=float).reshape(3)
        cam = pts @ rot.T + trans
        inv_z = 1.0 / cam[:, 2]
        u = self.uc + self.fu * cam[:, 0] * inv_z
        v = self.vc + self.fv * cam[:, 1] * inv_z
        return np.column_stack((u, v))


@dataclass(frozen=True)
class PoseEstimate:
    """Camera pose (world to camera) and its mean reprojection error."""

    rotation: np.ndarray
    translation: np.ndarray
    error: float


def choose_control_points(points):
    """Centroid plus three points along the principal axes of the cloud."""
    pws = np.asarray(points, dtype=float).reshape(-1, 3)
    n = len(pws)
    centroid = pws.mean(axis=0)
    centred = pws - centroid
    u, singular, _ = np.linalg.svd(centred.T @ centred)
    controls = np.empty((4, 3))
    controls[0] = centroid
    for i in range(3):
        k = math.sqrt(singular[i] / n)
        controls[i + 1] = centroid + k * u[:, i]
    return controls


def barycentric_coordinates(points, control_points):
    """Weights (N x 4) expressing each point in terms of the control points."""
    pws = np.asarray(points, dtype=float).reshape(-1, 3)
    cws = np.asarray(control_points, dtype=float).reshape(4, 3)
    cc = (cws[1:] - cws[0]).T
    cc_inv = np.linalg.pinv(cc)
    alphas = np.empty((len(pws), 4))
    alphas[:, 1:] = (pws - cws[0]) @ cc_inv.T
    alphas[:, 0] = 1.0 - alphas[:, 1:].sum(axis=1)
    return alphas


def qr_solve(a, b):
    """Least-squares solution of a x = b by Householder QR.

    Raises numpy.linalg.LinAlgError when a column is entirely zero.
    """
    a = np.array(a, dtype=float)
    b = np.array(b, dtype=float).reshape(-1)
    nr, nc = a.shape
    if b.shape[0] != nr:
        raise ValueError("right-hand side does not match the matrix rows")
    a1 = np.zeros(nc)
    a2 = np.zeros(nc)

    for k in range(nc):
        eta = float(np.max(np.abs(a[k:max(k + 1, nr - 1), k])))
        if eta == 0:
            raise np.linalg.LinAlgError("matrix is singular")
        a[k:, k] /= eta
        sigma = math.sqrt(float(a[k:, k] @ a[k:, k]))
        if a[k, k] < 0:
            sigma = -sigma
        a[k, k] += sigma
        a1[k] = sigma * a[k, k]
        a2[k] = -eta * sigma
        for j in range(k + 1, nc):
            tau = float(a[k:, k] @ a[k:, j]) / a1[k]
            a[k:, j] -= tau * a[k:, k]

    for j in range(nc):
        tau = float(a[j:, j] @ b[j:]) / a1[j]
        b[j:] -= tau * a[j:, j]

    x = np.zeros(nc)
    x[nc - 1] = b[nc - 1] / a2[nc - 1]
    for i in range(nc - 2, -1, -1):
        total = float(a[i, i + 1:] @ x[i + 1:])
        x[i] = (b[i] - total) / a2[i]
    return x


def estimate_rotation_translation(camera_points, world_points):
    """Rigid transform (R, t) mapping world points onto camera points."""
    pcs = np.asarray(camera_points, dtype=float).reshape(-1, 3)
    pws = np.asarray(world_points, dtype=float).reshape(-1, 3)
    pc0 = pcs.mean(axis=0)
    pw0 = pws.mean(axis=0)
    abt = (pcs - pc0).T @ (pws - pw0)
    u, _, vt = np.linalg.svd(abt)
    rotation = u @ vt
    if np.linalg.det(rotation) < 0:
        rotation[2] = -rotation[2]
    translation = pc0 - rotation @ pw0
    return rotation, translation


def reprojection_error(points, pixels, rotation, translation, intrinsics):
    """Mean pixel distance between observed and projected points."""
    observed = np.asarray(pixels, dtype=float).reshape(-1, 2)
    projected = intrinsics.project(points, rotation, translation)
    return float(np.mean(np.linalg.norm(observed - projected, axis=1)))


def _build_m(alphas, pixels, intrinsics):
    n = len(alphas)
    m = np.zeros((2 * n, 12))
    u = pixels[:, 0][:, None]
    v = pixels[:, 1][:, None]
    m[0::2, 0::3] = alphas * intrinsics.fu
    m[0::2, 2::3] = alphas * (intrinsics.uc - u)
    m[1::2, 1::3] = alphas * intrinsics.fv
    m[1::2, 2::3] = alphas * (intrinsics.vc - v)
    return m


def _compute_l_6x10(ut):
    vs = [ut[11 - i].reshape(4, 3) for i in range(4)]
    dv = np.array([[v[a] - v[b] for a, b in _CONTROL_PAIRS] for v in vs])
    l = np.empty((6, 10))
    for i in range(6):
        d = dv[:, i, :]
        l[i] = (
            d[0] @ d[0],
            2.0 * (d[0] @ d[1]),
            d[1] @ d[1],
            2.0 * (d[0] @ d[2]),
            2.0 * (d[1] @ d[2]),
            d[2] @ d[2],
            2.0 * (d[0] @ d[3]),
            2.0 * (d[1] @ d[3]),
            2.0 * (d[2] @ d[3]),
            d[3] @ d[3],
        )
    return l


def _compute_rho(control_points):
    return np.array(
        [np.sum((control_points[a] - control_points[b]) ** 2) for a, b in _CONTROL_PAIRS]
    )


def _least_squares(a, b):
    return np.linalg.lstsq(a, b, rcond=None)[0]


def _betas_approx_1(l, rho):
    b4 = _least_squares(l[:, [0, 1, 3, 6]], rho)
    if b4[0] < 0:
        b0 = np.sqrt(-b4[0])
        return np.array([b0, -b4[1] / b0, -b4[2] / b0, -b4[3] / b0])
    b0 = np.sqrt(b4[0])
    return np.array([b0, b4[1] / b0, b4[2] / b0, b4[3] / b0])


def _leading_betas(b):
    if b[0] < 0:
        b0 = np.sqrt(-b[0])
        b1 = np.sqrt(-b[2]) if b[2] < 0 else 0.0
    else:
        b0 = np.sqrt(b[0])
        b1 = np.sqrt(b[2]) if b[2] > 0 else 0.0
    if b[1] < 0:
        b0 = -b0
    return b0, b1


def _betas_approx_2(l, rho):
    b3 = _least_squares(l[:, [0, 1, 2]], rho)
    b0, b1 = _leading_betas(b3)
    return np.array([b0, b1, 0.0, 0.0])


def _betas_approx_3(l, rho):
    b5 = _least_squares(l[:, [0, 1, 2, 3, 4]], rho)
    b0, b1 = _leading_betas(b5)
    return np.array([b0, b1, b5[3] / b0, 0.0])


def _gauss_newton_system(l, rho, betas):
    b0, b1, b2, b3 = betas
    a = np.column_stack(
        (
            2 * l[:, 0] * b0 + l[:, 1] * b1 + l[:, 3] * b2 + l[:, 6] * b3,
            l[:, 1] * b0 + 2 * l[:, 2] * b1 + l[:, 4] * b2 + l[:, 7] * b3,
            l[:, 3] * b0 + l[:, 4] * b1 + 2 * l[:, 5] * b2 + l[:, 8] * b3,
            l[:, 6] * b0 + l[:, 7] * b1 + l[:, 8] * b2 + 2 * l[:, 9] * b3,
        )
    )
    products = np.array(
        [b0 * b0, b0 * b1, b1 * b1, b0 * b2, b1 * b2, b2 * b2, b0 * b3, b1 * b3, b2 * b3, b3 * b3]
    )
    return a, rho - l @ products


def _gauss_newton(l, rho, betas):
    betas = np.array(betas, dtype=float)
    for _ in range(_GAUSS_NEWTON_ITERATIONS):
        a, b = _gauss_newton_system(l, rho, betas)
        try:
            step = qr_solve(a, b)
        except np.linalg.LinAlgError:
            break
        betas += step
    return betas


def _pose_from_betas(ut, betas, alphas, pws, pixels, intrinsics):
    ccs = sum(betas[i] * ut[11 - i].reshape(4, 3) for i in range(4))
    pcs = alphas @ ccs
    if pcs[0, 2] < 0.0:
        pcs = -pcs
    rotation, translation = estimate_rotation_translation(pcs, pws)
    error = reprojection_error(pws, pixels, rotation, translation, intrinsics)
    return PoseEstimate(rotation, translation, error)


def compute_pose(points, pixels, intrinsics):
    """Estimate the camera pose from at least four 3D-2D correspondences."""
    pws = np.asarray(points, dtype=float).reshape(-1, 3)
    us = np.asarray(pixels, dtype=float).reshape(-1, 2)
    if len(pws) != len(us):
        raise ValueError("points and pixels must have the same length")
    if len(pws) < 4:
        raise ValueError("at least four correspondences are required")

    with np.errstate(divide="ignore", invalid="ignore"):
        cws = choose_control_points(pws)
        alphas = barycentric_coordinates(pws, cws)
        m = _build_m(alphas, us, intrinsics)
        u, _, _ = np.linalg.svd(m.T @ m)
        ut = u.T
        l = _compute_l_6x10(ut)
        rho = _compute_rho(cws)

        candidates = [
            _pose_from_betas(ut, _gauss_newton(l, rho, finder(l, rho)), alphas, pws, us, intrinsics)
            for finder in (_betas_approx_1, _betas_approx_2, _betas_approx_3)
        ]

    best = candidates[0]
    if candidates[1].error < best.error:
        best = candidates[1]
    if candidates[2].error < best.error:
        best = candidates[2]
    return best


def mat_to_quat(rotation):
    """Quaternion (x, y, z, w) of a rotation matrix."""
    r = np.asarray(rotation, dtype=float).reshape(3, 3)
    tr = r[0, 0] + r[1, 1] + r[2, 2]
    if tr > 0.0:
        q = np.array([r[1, 2] - r[2, 1], r[2, 0] - r[0, 2], r[0, 1] - r[1, 0], tr + 1.0])
        n4 = q[3]
    elif r[0, 0] > r[1, 1] and r[0, 0] > r[2, 2]:
        q = np.array([
            1.0 + r[0, 0] - r[1, 1] - r[2, 2],
            r[1, 0] + r[0, 1],
            r[2, 0] + r[0, 2],
            r[1, 2] - r[2, 1],
        ])
        n4 = q[0]
    elif r[1, 1] > r[2, 2]:
        q = np.array([
            r[1, 0] + r[0, 1],
            1.0 + r[1, 1] - r[0, 0] - r[2, 2],
            r[2, 1] + r[1, 2],
            r[2, 0] - r[0, 2],
        ])
        n4 = q[1]
    else:
        q = np.array([
            r[2, 0] + r[0, 2],
            r[2, 1] + r[1, 2],
            1.0 + r[2, 2] - r[0, 0] - r[1, 1],
            r[0, 1] - r[1, 0],
        ])
        n4 = q[2]
    return q * (0.5 / math.sqrt(n4))


def relative_error(rotation_true, translation_true, rotation_est, translation_est):
    """Relative rotation (quaternion) and translation errors of an estimate."""
    q_true = mat_to_quat(rotation_true)
    q_est = mat_to_quat(rotation_est)
    q_norm = np.linalg.norm(q_true)
    rot_err = min(
        np.linalg.norm(q_true - q_est) / q_norm,
        np.linalg.norm(q_true + q_est) / q_norm,
    )
    t_true = np.asarray(translation_true, dtype=float).reshape(3)
    t_est = np.asarray(translation_est, dtype=float).reshape(3)
    transl_err = np.linalg.norm(t_true - t_est) / np.linalg.norm(t_true)
    return float(rot_err), float(transl_err)