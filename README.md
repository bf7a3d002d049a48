# slamgeom

Geometric building blocks for a feature-based visual SLAM pipeline, written
on top of NumPy.

## Modules

- `slamgeom.epnp`: the EPnP camera pose solver.
  - `CameraIntrinsics(fu, fv, uc, vc)` is a pinhole camera. Its `project` method maps world points to pixels.
  - `compute_pose(points, pixels, intrinsics)` needs at least four correspondences. It returns a `PoseEstimate` with `rotation`, `translation` and the mean reprojection `error`.
  - The solver's steps are public too: `choose_control_points`, `barycentric_coordinates`, the Householder least-squares solve `qr_solve`, `estimate_rotation_translation` and `reprojection_error`.
  - `mat_to_quat` gives the quaternion of a rotation matrix as (x, y, z, w).
  - `relative_error` gives the relative rotation and translation errors of an estimate.
- `slamgeom.pnp_ransac`: `PnPRansac` is a RANSAC loop around EPnP.
  - It takes `Correspondence` objects, each with `point`, `pixel`, `sigma2` and `index`.
  - `iterate(n)` and `find()` return a `RansacResult` with `pose` (a 4x4 world-to-camera matrix or `None`), `inliers`, `n_inliers`, `no_more` and `found`.
  - `set_ransac_parameters` adjusts probability, minimum inliers, maximum iterations, minimal set size, epsilon and the chi-square threshold.
- `slamgeom.sim3`: similarity transforms between two point sets.
  - `compute_sim3(points1, points2, fix_scale)` is a closed-form unit-quaternion solution. It returns a `Sim3Transform` with `apply`, `inverse` and `matrix`.
  - `camera_to_image` projects camera-frame points with a calibration matrix.
  - `Sim3Solver` runs RANSAC over `Sim3Match` objects and scores each candidate by reprojecting into both cameras. It returns a `Sim3Result`.
- `slamgeom.detection`: post-processing for object detections.
  - `non_max_suppression` turns raw predictions of shape B x N x (5 + classes) into per-image rows of (left, top, right, bottom, score, class id).
  - `preprocess_image` resizes a BGR image to a 1 x 3 x 380 x 640 RGB array in [0, 1].
  - `load_class_names` reads one class name per line.
  - `YoloDetection` runs a model you supply as a callable. It fills `detect_map` (boxes by class name) and `dynamic_areas` (boxes of dynamic classes) with `Detection` boxes.
- `slamgeom.viewer`: viewer support.
  - `ViewerSettings.from_mapping` reads the frame period, image size and viewpoint from a settings mapping and applies defaults.
  - `ViewerControl` is the thread-safe stop/finish handshake between a viewer loop and other threads.
  - `box_color` picks the drawing colour of a detection box.

## Installation

```
pip install .
```

Install the test extra to run the test suite:

```
pip install .[test]
pytest
```

## Example

```python
import numpy as np
from slamgeom.epnp import CameraIntrinsics, compute_pose

intrinsics = CameraIntrinsics(fu=500.0, fv=500.0, uc=320.0, vc=240.0)
points = np.random.default_rng(0).uniform(-1, 1, size=(20, 3)) + [0, 0, 5]
pixels = intrinsics.project(points, np.eye(3), np.zeros(3))

estimate = compute_pose(points, pixels, intrinsics)
print(estimate.rotation, estimate.translation, estimate.error)
```

## What this package does not do

This is a library of solvers and helpers, not a complete SLAM system.

- It has no feature extraction, no frame tracking loop, no mapping or loop closing, and no keyframe database.
- It does not read camera settings files and has no command-line program.
- `slamgeom.viewer` only holds settings and the thread handshake. It opens no window and draws nothing.
- `slamgeom.detection` ships no neural network. You must pass in a model that produces raw predictions.