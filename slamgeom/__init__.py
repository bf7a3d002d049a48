"""EPnP and Sim3 RANSAC solvers, detection post-processing and viewer control for visual SLAM."""

__version__ = "0.1.0"

__all__ = [
    "detection",
    "epnp",
    "pnp_ransac",
    "sim3",
    "viewer",
]