import math

import numpy as np
import pytest

from slamgeom.epnp import (
    CameraIntrinsics,
    PoseEstimate,
    barycentric_coordinates,
    choose_control_points,
    compute_pose,
    estimate_rotation_translation,
    mat_to_quat,
    qr_solve,
    relative_error,
    reprojection_error,
)

INTRINSICS = CameraIntrinsics(fu=520.0, fv=515.0, uc=320.0, vc=240.0)


def _rotation(axis, angle):
    axis = np.asarray(axis, dtype=float)
    axis = axis / np.linalg.norm(axis)
    k = np.array([[0, -axis[2], axis[1]], [axis[2], 0, -axis[0]], [-axis[1], axis[0], 0]])
    return np.eye(3) + math.sin(angle) * k + (1 - math.cos(angle)) * (k @ k)


@pytest.fixture
def scene():
    rng = np.random.default_rng(7)
    rotation = _rotation([0.3, -0.5, 0.8], 0.4)
    translation = np.array([0.2, -0.1, 0.5])
    camera_points = np.column_stack(
        (rng.uniform(-1, 1, 12), rng.uniform(-1, 1, 12), rng.uniform(3, 6, 12))
    )
    world = (camera_points - translation) @ rotation
    pixels = INTRINSICS.project(world, rotation, translation)
    return world, pixels, rotation, translation


def test_project_matches_pinhole_formula_for_identity():
    pixels = INTRINSICS.project([[0.0, 0.0, 2.0]], np.eye(3), np.zeros(3))
    assert np.allclose(pixels, [[INTRINSICS.uc, INTRINSICS.vc]])


def test_compute_pose_recovers_ground_truth(scene):
    world, pixels, rotation, translation = scene
    pose = compute_pose(world, pixels, INTRINSICS)
    assert isinstance(pose, PoseEstimate)
    assert np.allclose(pose.rotation, rotation, atol=1e-6)
    assert np.allclose(pose.translation, translation, atol=1e-6)
    assert pose.error < 1e-6


def test_compute_pose_rotation_is_orthonormal(scene):
    world, pixels, _, _ = scene
    pose = compute_pose(world, pixels, INTRINSICS)
    assert np.allclose(pose.rotation @ pose.rotation.T, np.eye(3), atol=1e-9)
    assert np.linalg.det(pose.rotation) == pytest.approx(1.0)


def test_compute_pose_rejects_too_few_points(scene):
    world, pixels, _, _ = scene
    with pytest.raises(ValueError):
        compute_pose(world[:3], pixels[:3], INTRINSICS)


def test_compute_pose_rejects_mismatched_lengths(scene):
    world, pixels, _, _ = scene
    with pytest.raises(ValueError):
        compute_pose(world, pixels[:-1], INTRINSICS)


def test_reprojection_error_zero_for_true_pose(scene):
    world, pixels, rotation, translation = scene
    assert reprojection_error(world, pixels, rotation, translation, INTRINSICS) == pytest.approx(0.0, abs=1e-9)


def test_reprojection_error_grows_with_pixel_offset(scene):
    world, pixels, rotation, translation = scene
    shifted = pixels + np.array([3.0, 4.0])
    assert reprojection_error(world, shifted, rotation, translation, INTRINSICS) == pytest.approx(5.0)


def test_control_points_first_is_centroid(scene):
    world, _, _, _ = scene
    controls = choose_control_points(world)
    assert controls.shape == (4, 3)
    assert np.allclose(controls[0], world.mean(axis=0))


def test_barycentric_coordinates_reconstruct_points(scene):
    world, _, _, _ = scene
    controls = choose_control_points(world)
    alphas = barycentric_coordinates(world, controls)
    assert np.allclose(alphas.sum(axis=1), 1.0)
    assert np.allclose(alphas @ controls, world)


def test_qr_solve_matches_least_squares():
    rng = np.random.default_rng(3)
    a = rng.normal(size=(6, 4))
    b = rng.normal(size=6)
    expected = np.linalg.lstsq(a, b, rcond=None)[0]
    assert np.allclose(qr_solve(a, b), expected)


def test_qr_solve_does_not_modify_inputs():
    a = np.arange(24, dtype=float).reshape(6, 4) + np.eye(6, 4)
    b = np.ones(6)
    a_copy, b_copy = a.copy(), b.copy()
    qr_solve(a, b)
    assert np.array_equal(a, a_copy)
    assert np.array_equal(b, b_copy)


def test_qr_solve_singular_raises():
    a = np.zeros((6, 4))
    with pytest.raises(np.linalg.LinAlgError):
        qr_solve(a, np.ones(6))


def test_estimate_rotation_translation_recovers_transform(scene):
    world, _, rotation, translation = scene
    camera = world @ rotation.T + translation
    r, t = estimate_rotation_translation(camera, world)
    assert np.allclose(r, rotation)
    assert np.allclose(t, translation)


def test_mat_to_quat_identity():
    assert np.allclose(mat_to_quat(np.eye(3)), [0.0, 0.0, 0.0, 1.0])


@pytest.mark.parametrize("angle", [0.3, 2.0, 3.0])
def test_mat_to_quat_has_unit_norm(angle):
    q = mat_to_quat(_rotation([1.0, 2.0, -0.5], angle))
    assert np.linalg.norm(q) == pytest.approx(1.0)


def test_relative_error_zero_for_identical_pose():
    rotation = _rotation([0.0, 1.0, 0.0], 0.7)
    translation = np.array([1.0, 2.0, 3.0])
    rot_err, transl_err = relative_error(rotation, translation, rotation, translation)
    assert rot_err == pytest.approx(0.0, abs=1e-12)
    assert transl_err == pytest.approx(0.0, abs=1e-12)


def test_relative_error_translation_scale():
    rotation = np.eye(3)
    _, transl_err = relative_error(rotation, [0.0, 0.0, 2.0], rotation, [0.0, 0.0, 3.0])
    assert transl_err == pytest.approx(0.5)