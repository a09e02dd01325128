"""
Shared helpers: array validation, k-NN queries, open3d conversion, stage timing.
"""

import time
from contextlib import contextmanager

import numpy as np
import open3d as o3d
from scipy.spatial import cKDTree

from pointcloud_errors import ConfigurationError, DegenerateInputError


def as_points(points, name="points"):
    """Copy `points` into a float64 (n, 3) array. Accepts open3d clouds."""
    if isinstance(points, o3d.geometry.PointCloud):
        points = np.asarray(points.points)
    pts = np.array(points, dtype=np.float64)
    if pts.size == 0:
        return pts.reshape(0, 3)
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise ConfigurationError(f"{name} must have shape (n, 3), got {pts.shape}")
    if not np.isfinite(pts).all():
        raise ConfigurationError(f"{name} contains NaN/Inf")
    return pts


def as_oriented_points(points, normals):
    pts = as_points(points)
    nrm = as_points(normals, name="normals")
    if nrm.shape != pts.shape:
        raise ConfigurationError(
            f"normals shape {nrm.shape} does not match points shape {pts.shape}")
    return pts, nrm


def check_neighbors(nb_neighbors, n_points):
    if isinstance(nb_neighbors, bool) or int(nb_neighbors) != nb_neighbors or nb_neighbors < 1:
        raise ConfigurationError(f"nb_neighbors must be a positive integer, got {nb_neighbors!r}")
    if n_points == 0:
        raise DegenerateInputError("point cloud is empty")
    if nb_neighbors >= n_points:
        raise DegenerateInputError(
            f"nb_neighbors={nb_neighbors} must be smaller than the number of points ({n_points})")
    return int(nb_neighbors)


def knn(points, nb_neighbors):
    """
    k-NN of every point against the cloud itself.
    Returns (dists, idx) of shape (n, k+1); column 0 is the point itself
    (or an exact duplicate of it).
    """
    tree = cKDTree(points)
    dists, idx = tree.query(points, k=nb_neighbors + 1, workers=-1)
    return dists, idx


def normalize_rows(v):
    norms = np.linalg.norm(v, axis=1, keepdims=True)
    return np.divide(v, norms, out=np.zeros_like(v), where=norms > 0)


def to_open3d(points, normals=None):
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(np.ascontiguousarray(points, dtype=np.float64))
    if normals is not None:
        pcd.normals = o3d.utility.Vector3dVector(np.ascontiguousarray(normals, dtype=np.float64))
    return pcd


def from_open3d(pcd):
    points = np.asarray(pcd.points, dtype=np.float64).copy()
    normals = np.asarray(pcd.normals, dtype=np.float64).copy() if pcd.has_normals() else None
    return points, normals


@contextmanager
def stage_timer(stage, observer=None):
    """Report the elapsed wall time of a completed stage to `observer(stage, ms)`."""
    t0 = time.time()
    yield
    if observer is not None:
        observer(stage, (time.time() - t0) * 1000.0)


def print_observer(stage, elapsed_ms):
    print(f"[I] {stage}: {elapsed_ms:.1f} ms")
