"""
Point-only stages of the pipeline:
  1. statistical outlier removal (fixed percentage)
  2. grid simplification (one representative per occupied cell)
  3. iterative jet smoothing
and the average spacing estimator used to scale the meshing criteria.

Every stage returns a new (n, 3) float64 array; inputs are never modified.
"""

import numpy as np

from pointcloud_errors import ConfigurationError
from pointcloud_utils import as_points, check_neighbors, knn, stage_timer


def remove_outliers(points, removed_percentage=5.0, nb_neighbors=24, observer=None):
    """
    Drop the `removed_percentage` % of points whose mean distance to their
    `nb_neighbors` nearest neighbours is largest. Survivors keep their order.
    """
    pts = as_points(points)
    p = float(removed_percentage)
    if not 0.0 <= p <= 100.0:
        raise ConfigurationError(f"removed_percentage must be in [0, 100], got {removed_percentage}")
    k = check_neighbors(nb_neighbors, len(pts))

    with stage_timer("remove_outliers", observer):
        n = len(pts)
        n_remove = int(np.floor(n * p / 100.0 + 0.5))
        if n_remove == 0:
            return pts
        dists, _ = knn(pts, k)
        score = dists[:, 1:].mean(axis=1)
        # highest score first; stable so equal scores go by index
        order = np.argsort(-score, kind="stable")
        keep = np.ones(n, dtype=bool)
        keep[order[:n_remove]] = False
        return pts[keep]


def grid_simplify(points, cell_size, representative="centroid", observer=None):
    """
    Keep one point per occupied cube of side `cell_size`.

    The grid is anchored at the origin, so the centroid of a cell never leaves
    it and a second pass with the same cell size is a no-op.
    """
    pts = as_points(points)
    s = float(cell_size)
    if not np.isfinite(s) or s <= 0.0:
        raise ConfigurationError(f"cell_size must be a positive number, got {cell_size}")
    if representative not in ("centroid", "first"):
        raise ConfigurationError(f"unknown representative {representative!r}")

    with stage_timer("grid_simplify", observer):
        if len(pts) == 0:
            return pts
        # float keys: an int cast would wrap for tiny cells
        with np.errstate(over="ignore"):
            keys = np.floor(pts / s) + 0.0    # -0.0 -> 0.0
        if not np.isfinite(keys).all():
            raise ConfigurationError(f"cell_size={cell_size} is too small for the cloud extent")
        _, first, inverse = np.unique(keys, axis=0, return_index=True, return_inverse=True)
        inverse = inverse.reshape(-1)
        cell_order = np.argsort(first)
        if representative == "first":
            return pts[first[cell_order]]

        n_cells = len(first)
        counts = np.bincount(inverse, minlength=n_cells).astype(np.float64)
        sums = np.zeros((n_cells, 3))
        np.add.at(sums, inverse, pts)
        lo = np.full((n_cells, 3), np.inf)
        hi = np.full((n_cells, 3), -np.inf)
        np.minimum.at(lo, inverse, pts)
        np.maximum.at(hi, inverse, pts)
        # clamp against round-off so the centroid stays inside its cell
        centroids = np.clip(sums / counts[:, None], lo, hi)
        return centroids[cell_order]


def _jet_terms(degree):
    return [(i, d - i) for d in range(degree + 1) for i in range(d, -1, -1)]


def _jet_project(pts, nb_neighbors, degree):
    """One smoothing pass: project every point onto its local jet."""
    _, idx = knn(pts, nb_neighbors)
    nbh = pts[idx]                                    # (n, k+1, 3)
    centered = nbh - nbh.mean(axis=1, keepdims=True)
    cov = np.einsum("nki,nkj->nij", centered, centered)
    _, vecs = np.linalg.eigh(cov)                     # ascending eigenvalues
    normal = vecs[:, :, 0]
    e2 = vecs[:, :, 1]
    e1 = vecs[:, :, 2]

    rel = nbh - pts[:, None, :]
    u = np.einsum("nki,ni->nk", rel, e1)
    v = np.einsum("nki,ni->nk", rel, e2)
    h = np.einsum("nki,ni->nk", rel, normal)

    # precondition: bring the neighbourhood to unit size
    scale = np.sqrt((u * u + v * v).mean(axis=1))
    scale[scale <= 0.0] = 1.0
    u /= scale[:, None]
    v /= scale[:, None]
    h /= scale[:, None]

    A = np.stack([u ** i * v ** j for i, j in _jet_terms(degree)], axis=-1)
    coeffs = np.linalg.pinv(A) @ h[..., None]
    # jet value at the point's own (u, v) = (0, 0) is the constant term
    offset = coeffs[:, 0, 0] * scale
    return pts + offset[:, None] * normal


def jet_smooth(points, nb_neighbors=24, iterations=1, degree_fitting=2, observer=None):
    """
    Move every point onto a polynomial surface fitted through its neighbours,
    `iterations` times. The k-NN index is rebuilt on each pass.
    """
    pts = as_points(points)
    if isinstance(iterations, bool) or int(iterations) != iterations or iterations < 0:
        raise ConfigurationError(f"iterations must be a non-negative integer, got {iterations!r}")
    if degree_fitting not in (1, 2, 3, 4):
        raise ConfigurationError(f"degree_fitting must be 1..4, got {degree_fitting!r}")
    k = check_neighbors(nb_neighbors, len(pts))
    n_terms = len(_jet_terms(degree_fitting))
    if k + 1 < n_terms:
        raise ConfigurationError(
            f"a degree {degree_fitting} jet needs at least {n_terms - 1} neighbours, got {k}")

    with stage_timer("jet_smooth", observer):
        for _ in range(int(iterations)):
            pts = _jet_project(pts, k, degree_fitting)
        return pts


def compute_average_spacing(points, nb_neighbors=6, observer=None):
    """Mean distance from each point to its `nb_neighbors` nearest neighbours."""
    pts = as_points(points)
    k = check_neighbors(nb_neighbors, len(pts))
    with stage_timer("compute_average_spacing", observer):
        dists, _ = knn(pts, k)
        return float(dists[:, 1:].mean())
