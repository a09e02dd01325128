"""
Poisson indicator function over an adaptively refined Delaunay tetrahedralisation.

The oriented points define a vector field V (their normals, spread over the
incident tetrahedra). The function f minimising |grad f - V|^2 with f = 0 on the
convex hull is solved with P1 finite elements and conjugate gradients, then
shifted so that the median over the input points is 0:

    f < 0  inside the sampled surface
    f > 0  outside
"""

import numpy as np
from scipy.sparse import coo_matrix, diags
from scipy.sparse.linalg import cg
from scipy.spatial import Delaunay, QhullError, cKDTree

from pointcloud_errors import ConvergenceError, DegenerateInputError
from pointcloud_utils import as_oriented_points, normalize_rows

RADIUS_EDGE_RATIO_BOUND = 2.5
ENLARGE_RATIO = 1.5
CELL_RADIUS_DIVISOR = 5.0

_TET_EDGES = ((0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3))


def tetrahedron_circumspheres(tets):
    """
    Circumcentres and circumradii of a stack of tetrahedra (m, 4, 3).
    Flat tetrahedra get NaN.
    """
    a = tets[:, 0]
    B = tets[:, 1:] - a[:, None, :]
    rhs = 0.5 * np.einsum("mij,mij->mi", B, B)
    det = np.linalg.det(B)
    longest = np.sqrt(rhs.max(axis=1) * 2.0)
    valid = np.abs(det) > 1e-10 * longest ** 3
    centers = np.full(a.shape, np.nan)
    if valid.any():
        centers[valid] = a[valid] + np.linalg.solve(B[valid], rhs[valid][..., None])[..., 0]
    radii = np.linalg.norm(centers - a, axis=1)
    return centers, radii


def _shortest_edges(tets):
    lengths = [np.linalg.norm(tets[:, i] - tets[:, j], axis=1) for i, j in _TET_EDGES]
    return np.min(np.stack(lengths, axis=1), axis=1)


def spread_out_centers(centers, radii, budget):
    """Greedy pick of candidate centres, largest sphere first, mutually >= radius apart."""
    order = np.argsort(-radii, kind="stable")
    tree = cKDTree(centers)
    suppressed = np.zeros(len(centers), dtype=bool)
    chosen = []
    for i in order:
        if suppressed[i]:
            continue
        chosen.append(i)
        if len(chosen) >= budget:
            break
        suppressed[tree.query_ball_point(centers[i], radii[i])] = True
    return centers[chosen]


def _delaunay(vertices):
    try:
        return Delaunay(vertices)
    except QhullError as e:
        raise DegenerateInputError(f"cannot tetrahedralise the point set: {e}") from e


class PoissonImplicitFunction:
    """
    Implicit function fitted to oriented points.

    Call `compute_implicit_function()` once, then evaluate with `f(x)` for a
    single point (3,) or a batch (m, 3).
    """

    def __init__(self, points, normals, solver_tolerance=1e-6, max_iterations=None,
                 max_steiner_points=None, refinement_rounds=12):
        pts, nrm = as_oriented_points(points, normals)
        if len(pts) < 4:
            raise DegenerateInputError(f"need at least 4 points, got {len(pts)}")

        # duplicated positions share one vertex with the mean normal
        self.points, inverse = np.unique(pts, axis=0, return_inverse=True)
        inverse = inverse.reshape(-1)
        summed = np.zeros_like(self.points)
        np.add.at(summed, inverse, normalize_rows(nrm))
        self.normals = normalize_rows(summed)

        self.solver_tolerance = solver_tolerance
        self.max_iterations = max_iterations
        if max_steiner_points is None:
            max_steiner_points = max(5000, 2 * len(self.points))
        self.max_steiner_points = max_steiner_points
        self.refinement_rounds = refinement_rounds

        bmin, bmax = self.points.min(axis=0), self.points.max(axis=0)
        self._center = 0.5 * (bmin + bmax)
        self._radius = float(np.linalg.norm(self.points - self._center, axis=1).max())
        if self._radius <= 0.0:
            raise DegenerateInputError("all points coincide")

        self._tri = None
        self._values = None
        self._used = None
        self._outside_value = 0.0

    # -- construction -------------------------------------------------------

    def _refined_triangulation(self):
        """Input points + enclosing cube corners, refined with Steiner points."""
        half = ENLARGE_RATIO * self._radius
        corners = self._center + half * np.array(
            [[sx, sy, sz] for sx in (-1, 1) for sy in (-1, 1) for sz in (-1, 1)], dtype=np.float64)
        vertices = np.vstack([self.points, corners])
        cell_radius_bound = self._radius / CELL_RADIUS_DIVISOR
        budget = self.max_steiner_points

        tri = _delaunay(vertices)
        for _ in range(self.refinement_rounds):
            if budget <= 0:
                break
            tets = vertices[tri.simplices]
            centers, radii = tetrahedron_circumspheres(tets)
            with np.errstate(invalid="ignore", divide="ignore"):
                ratio = radii / _shortest_edges(tets)
                bad = (radii > cell_radius_bound) | (ratio > RADIUS_EDGE_RATIO_BOUND)
                bad &= np.isfinite(radii)
                bad &= (np.abs(centers - self._center) < half).all(axis=1)
            if not bad.any():
                break
            steiner = spread_out_centers(centers[bad], radii[bad], budget)
            budget -= len(steiner)
            vertices = np.vstack([vertices, steiner])
            tri = _delaunay(vertices)
        return tri

    def compute_implicit_function(self):
        """Solve for f at every vertex. Raises ConvergenceError."""
        tri = self._refined_triangulation()
        vertices = tri.points
        n_vertices = len(vertices)
        n_input = len(self.points)

        simplices = tri.simplices
        tets = vertices[simplices]
        D = tets[:, 1:] - tets[:, :1]
        det = np.linalg.det(D)
        vol = np.abs(det) / 6.0
        keep = vol > 1e-12 * (2.0 * ENLARGE_RATIO * self._radius) ** 3
        simplices, D, vol = simplices[keep], D[keep], vol[keep]

        # gradients of the barycentric coordinates: columns of D^-1, then phi_0
        Dinv = np.linalg.inv(D)
        grads = np.empty((len(simplices), 4, 3))
        grads[:, 1:] = np.transpose(Dinv, (0, 2, 1))
        grads[:, 0] = -grads[:, 1:].sum(axis=1)

        vertex_normals = np.zeros((n_vertices, 3))
        vertex_normals[:n_input] = self.normals
        field = vertex_normals[simplices].mean(axis=1)

        local_K = vol[:, None, None] * np.einsum("mid,mjd->mij", grads, grads)
        rows = np.broadcast_to(simplices[:, :, None], local_K.shape)
        cols = np.broadcast_to(simplices[:, None, :], local_K.shape)
        K = coo_matrix((local_K.ravel(), (rows.ravel(), cols.ravel())),
                       shape=(n_vertices, n_vertices)).tocsr()
        local_b = vol[:, None] * np.einsum("mid,md->mi", grads, field)
        b = np.bincount(simplices.ravel(), weights=local_b.ravel(), minlength=n_vertices)

        fixed = np.zeros(n_vertices, dtype=bool)
        fixed[np.unique(tri.convex_hull)] = True
        fixed |= ~(K.diagonal() > 0.0)
        free = np.flatnonzero(~fixed)

        values = np.zeros(n_vertices)
        if len(free):
            K_ff = K[free][:, free]
            precond = diags(1.0 / K_ff.diagonal())
            x, info = cg(K_ff, b[free], rtol=self.solver_tolerance,
                         maxiter=self.max_iterations, M=precond)
            if info != 0:
                raise ConvergenceError(
                    f"conjugate gradient did not converge (info={info}, unknowns={len(free)})")
            values[free] = x

        used = np.zeros(n_vertices, dtype=bool)
        used[tri.simplices.ravel()] = True
        shift = float(np.median(values[:n_input][used[:n_input]]))

        self._tri = tri
        self._values = values - shift
        self._outside_value = -shift
        self._used = used
        return self

    # -- queries ------------------------------------------------------------

    def _require_solved(self):
        if self._values is None:
            raise RuntimeError("call compute_implicit_function() first")

    def __call__(self, x):
        self._require_solved()
        x = np.asarray(x, dtype=np.float64)
        single = x.ndim == 1
        x = np.atleast_2d(x)
        out = np.full(len(x), self._outside_value)
        simplex = self._tri.find_simplex(x)
        inside = simplex >= 0
        if inside.any():
            s = simplex[inside]
            T = self._tri.transform[s]
            c = np.einsum("mij,mj->mi", T[:, :3], x[inside] - T[:, 3])
            bary = np.concatenate([c, 1.0 - c.sum(axis=1, keepdims=True)], axis=1)
            corner_values = self._values[self._tri.simplices[s]]
            vals = np.sum(bary * corner_values, axis=1)
            # flat cells have no barycentric transform
            flat = ~np.isfinite(vals)
            vals[flat] = corner_values[flat].mean(axis=1)
            out[inside] = vals
        return float(out[0]) if single else out

    def bounding_sphere(self):
        """(center, radius) of a sphere containing every input point."""
        return self._center.copy(), self._radius

    def get_inner_point(self):
        """Triangulation vertex where f is smallest."""
        self._require_solved()
        candidates = np.flatnonzero(self._used)
        best = candidates[np.argmin(self._values[candidates])]
        return self._tri.points[best].copy()
