"""
Surface mesh of an implicit function's zero level set by Delaunay refinement.

The sample lives on the surface. A facet of its 3D Delaunay triangulation
belongs to the restricted complex when its dual Voronoi edge crosses the
surface; the crossing point is the centre of the facet's surface Delaunay ball.
Facets that are too thin, too large, too far from the surface or that make an
edge non-manifold get their ball centre inserted, until no bad facet is left.
"""

import numpy as np
from scipy.spatial import Delaunay, QhullError

from poisson_implicit_function import spread_out_centers, tetrahedron_circumspheres

# facet opposite to vertex j of a tetrahedron
_FACET_OF = np.array([[1, 2, 3], [0, 2, 3], [0, 1, 3], [0, 1, 2]])


def fibonacci_directions(n):
    """`n` roughly evenly spread unit vectors."""
    i = np.arange(n) + 0.5
    z = 1.0 - 2.0 * i / n
    r = np.sqrt(1.0 - z * z)
    phi = np.pi * (1.0 + np.sqrt(5.0)) * i
    return np.stack([r * np.cos(phi), r * np.sin(phi), z], axis=1)


def bisect_surface(function, a, b, error):
    """
    Points where `function` changes sign on the segments [a, b], to within
    `error`. Each segment must have one end inside (f < 0) and one outside.
    """
    a = a.copy()
    b = b.copy()
    inside_a = function(a) < 0.0
    longest = float(np.linalg.norm(b - a, axis=1).max()) if len(a) else 0.0
    n_steps = int(np.ceil(np.log2(max(longest / error, 1.0))))
    for _ in range(min(n_steps, 64)):
        mid = 0.5 * (a + b)
        same = (function(mid) < 0.0) == inside_a
        a = np.where(same[:, None], mid, a)
        b = np.where(same[:, None], b, mid)
    return 0.5 * (a + b)


def clip_segments_to_sphere(a, b, center, radius):
    """Clip segments [a, b] to a ball. Returns (a', b', hits)."""
    d = b - a
    ac = a - center
    qa = np.einsum("ij,ij->i", d, d)
    qb = 2.0 * np.einsum("ij,ij->i", d, ac)
    qc = np.einsum("ij,ij->i", ac, ac) - radius * radius
    with np.errstate(invalid="ignore", divide="ignore"):
        disc = qb * qb - 4.0 * qa * qc
        hits = np.isfinite(disc) & (disc > 0.0) & (qa > 0.0)
        root = np.sqrt(np.where(hits, disc, 0.0))
        denom = np.where(hits, 2.0 * qa, 1.0)
        t_lo = np.maximum((-qb - root) / denom, 0.0)
        t_hi = np.minimum((-qb + root) / denom, 1.0)
    hits &= t_lo < t_hi
    t_lo = np.where(hits, t_lo, 0.0)
    t_hi = np.where(hits, t_hi, 0.0)
    d = np.where(hits[:, None], d, 0.0)
    a = np.where(hits[:, None], a, 0.0)
    return a + t_lo[:, None] * d, a + t_hi[:, None] * d, hits


def _triangle_normals(tri_pts):
    return np.cross(tri_pts[:, 1] - tri_pts[:, 0], tri_pts[:, 2] - tri_pts[:, 0])


def restricted_facets(tri, function, center, radius, error):
    """
    Facets of `tri` whose dual Voronoi edge crosses the surface inside the
    ball (center, radius).

    Returns (faces, ball_centers): faces (F, 3) oriented so their normal points
    to the positive side of `function`, ball_centers (F, 3).
    """
    pts = tri.points
    simplices = tri.simplices
    neighbors = tri.neighbors
    n_cells = len(simplices)
    with np.errstate(invalid="ignore", divide="ignore"):
        cc, _ = tetrahedron_circumspheres(pts[simplices])

    # every interior facet once (from its lower-indexed cell), every hull facet
    owner, j = np.nonzero((neighbors > np.arange(n_cells)[:, None]) | (neighbors == -1))
    other = neighbors[owner, j]
    faces = simplices[owner[:, None], _FACET_OF[j]]
    face_pts = pts[faces]

    a = cc[owner]
    b = np.empty_like(a)
    interior = other >= 0
    b[interior] = cc[other[interior]]

    # Voronoi ray of a hull facet: from the cell's circumcentre, away from the cell
    hull = ~interior
    if hull.any():
        normal = _triangle_normals(face_pts[hull])
        apex = pts[simplices[owner[hull], j[hull]]]
        toward_apex = np.einsum("ij,ij->i", normal, apex - face_pts[hull, 0]) > 0.0
        normal[toward_apex] = -normal[toward_apex]
        length = np.linalg.norm(normal, axis=1, keepdims=True)
        direction = np.divide(normal, length, out=np.zeros_like(normal), where=length > 0)
        reach = 2.0 * radius + np.linalg.norm(a[hull] - center, axis=1, keepdims=True)
        b[hull] = a[hull] + direction * reach

    finite = np.isfinite(a).all(axis=1) & np.isfinite(b).all(axis=1)
    a0, b0, hits = clip_segments_to_sphere(a, b, center, radius)
    hits &= finite

    empty = np.zeros((0, 3))
    if not hits.any():
        return np.zeros((0, 3), dtype=np.int64), empty
    a0, b0 = a0[hits], b0[hits]
    faces, face_pts = faces[hits], face_pts[hits]
    inside_a = function(a0) < 0.0
    crossing = inside_a != (function(b0) < 0.0)
    if not crossing.any():
        return np.zeros((0, 3), dtype=np.int64), empty

    a0, b0, inside_a = a0[crossing], b0[crossing], inside_a[crossing]
    faces, face_pts = faces[crossing], face_pts[crossing]
    centers = bisect_surface(function, a0, b0, error)

    # the dual edge is orthogonal to its facet: orient along inside -> outside
    outward = np.where(inside_a[:, None], b0 - a0, a0 - b0)
    flip = np.einsum("ij,ij->i", _triangle_normals(face_pts), outward) < 0.0
    faces[flip] = faces[flip][:, [0, 2, 1]]
    return faces, centers


def _min_angles(tri_pts):
    """Smallest interior angle of each triangle, in degrees."""
    angles = []
    for i in range(3):
        u = tri_pts[:, (i + 1) % 3] - tri_pts[:, i]
        v = tri_pts[:, (i + 2) % 3] - tri_pts[:, i]
        nu = np.linalg.norm(u, axis=1)
        nv = np.linalg.norm(v, axis=1)
        with np.errstate(invalid="ignore", divide="ignore"):
            cos = np.einsum("ij,ij->i", u, v) / (nu * nv)
        angles.append(np.degrees(np.arccos(np.clip(np.nan_to_num(cos, nan=1.0), -1.0, 1.0))))
    return np.min(np.stack(angles, axis=1), axis=1)


def _triangle_circumcenters(tri_pts):
    a = tri_pts[:, 1] - tri_pts[:, 0]
    b = tri_pts[:, 2] - tri_pts[:, 0]
    axb = np.cross(a, b)
    denom = 2.0 * np.einsum("ij,ij->i", axb, axb)
    num = (np.einsum("ij,ij->i", a, a)[:, None] * np.cross(b, axb)
           + np.einsum("ij,ij->i", b, b)[:, None] * np.cross(axb, a))
    with np.errstate(invalid="ignore", divide="ignore"):
        return tri_pts[:, 0] + num / denom[:, None]


def non_manifold_facets(faces):
    """Mask of faces incident to an edge shared by more than two faces."""
    if len(faces) == 0:
        return np.zeros(0, dtype=bool)
    edges = np.sort(np.stack([faces[:, [0, 1]], faces[:, [1, 2]], faces[:, [2, 0]]], axis=1), axis=2)
    _, inverse, counts = np.unique(edges.reshape(-1, 2), axis=0,
                                   return_inverse=True, return_counts=True)
    return (counts[inverse.reshape(-1)] > 2).reshape(-1, 3).any(axis=1)


def bad_facets(samples, faces, centers, angle_bound, radius_bound, distance_bound, manifold=True):
    tri_pts = samples[faces]
    ball_radius = np.linalg.norm(centers - tri_pts[:, 0], axis=1)
    bad = _min_angles(tri_pts) < angle_bound
    bad |= ball_radius > radius_bound
    with np.errstate(invalid="ignore"):
        distance = np.linalg.norm(centers - _triangle_circumcenters(tri_pts), axis=1)
        bad |= ~(distance <= distance_bound)
    if manifold:
        bad |= non_manifold_facets(faces)
    return bad, ball_radius


def initial_surface_points(function, center, radius, error, n_rays=64):
    """Surface points hit by rays shot from `center`. Empty unless `center` is inside."""
    if function(center[None, :])[0] >= 0.0:
        return np.zeros((0, 3))
    ends = center + radius * fibonacci_directions(n_rays)
    ends = ends[function(ends) >= 0.0]
    if len(ends) == 0:
        return np.zeros((0, 3))
    starts = np.repeat(center[None, :], len(ends), axis=0)
    return bisect_surface(function, starts, ends, error)


def make_surface_mesh(function, center, radius, dichotomy_error, angle_bound,
                      radius_bound, distance_bound, manifold=True,
                      n_initial_points=64, max_rounds=100, max_vertices=200000):
    """
    Refine a Delaunay sample of the surface {function = 0} inside the ball
    (center, radius).

    Returns (vertices, faces). Both are empty when no sample could be built.
    """
    center = np.asarray(center, dtype=np.float64)
    no_mesh = (np.zeros((0, 3)), np.zeros((0, 3), dtype=np.int64))
    samples = initial_surface_points(function, center, radius, dichotomy_error, n_initial_points)
    if len(samples) < 4:
        return no_mesh

    faces = np.zeros((0, 3), dtype=np.int64)
    for round_ in range(max_rounds + 1):
        try:
            tri = Delaunay(samples)
        except QhullError:
            return no_mesh
        faces, centers = restricted_facets(tri, function, center, radius, dichotomy_error)
        if len(faces) == 0 or round_ == max_rounds:
            break
        bad, ball_radius = bad_facets(samples, faces, centers, angle_bound,
                                      radius_bound, distance_bound, manifold)
        budget = max_vertices - len(samples)
        if not bad.any() or budget <= 0:
            break
        new = spread_out_centers(centers[bad], ball_radius[bad], budget)
        samples = np.vstack([samples, new])
    return samples, faces
