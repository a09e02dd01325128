"""
Oriented point cloud -> manifold triangle mesh (Poisson implicit function +
restricted Delaunay surface meshing).
"""

import numpy as np
import open3d as o3d

from implicit_surface_mesher import make_surface_mesh
from pointcloud_errors import ConfigurationError, DegenerateInputError, EmptyReconstructionError
from pointcloud_filters import compute_average_spacing
from pointcloud_utils import as_oriented_points, stage_timer
from poisson_implicit_function import PoissonImplicitFunction

SPHERE_RADIUS_FACTOR = 5.0
# dichotomy error must be << sm_distance
DICHOTOMY_ERROR_DIVISOR = 1000.0


def clean_mesh(mesh):
    mesh.remove_degenerate_triangles()
    mesh.remove_duplicated_triangles()
    mesh.remove_duplicated_vertices()
    mesh.remove_non_manifold_edges()
    mesh.remove_unreferenced_vertices()
    mesh.compute_vertex_normals()
    return mesh


def _check_positive(name, value):
    if not np.isfinite(value) or value <= 0.0:
        raise ConfigurationError(f"{name} must be a positive number, got {value}")


def reconstruct_poisson_surface(points, normals,
                                sm_angle=20.0,
                                sm_radius=30.0,
                                sm_distance=0.375,
                                spacing_neighbors=6,
                                solver_tolerance=1e-6,
                                max_solver_iterations=None,
                                manifold=True,
                                max_refinement_rounds=100,
                                max_vertices=200000,
                                observer=None):
    """
    Build a triangle mesh from points with consistently oriented normals.

    sm_angle:    min triangle angle (degrees)
    sm_radius:   max triangle size w.r.t. the average spacing
    sm_distance: surface approximation error w.r.t. the average spacing

    Raises ConvergenceError when the Poisson solve fails and
    EmptyReconstructionError when no surface could be meshed.
    """
    pts, nrm = as_oriented_points(points, normals)
    sm_angle = float(sm_angle)
    if not 0.0 <= sm_angle <= 180.0:
        raise ConfigurationError(f"sm_angle must be in [0, 180] degrees, got {sm_angle}")
    sm_radius = float(sm_radius)
    sm_distance = float(sm_distance)
    _check_positive("sm_radius", sm_radius)
    _check_positive("sm_distance", sm_distance)

    with stage_timer("reconstruct_poisson_surface", observer):
        average_spacing = compute_average_spacing(pts, spacing_neighbors, observer=observer)
        if average_spacing <= 0.0:
            raise DegenerateInputError("average spacing is zero (duplicated points only)")

        with stage_timer("compute_implicit_function", observer):
            function = PoissonImplicitFunction(pts, nrm,
                                               solver_tolerance=solver_tolerance,
                                               max_iterations=max_solver_iterations)
            function.compute_implicit_function()

        # one point inside the implicit surface and a conservative sphere around it
        inner_point = function.get_inner_point()
        if function(inner_point) >= 0.0:
            raise EmptyReconstructionError("implicit function has no inside region")
        _, radius = function.bounding_sphere()
        sm_sphere_radius = SPHERE_RADIUS_FACTOR * radius
        sm_dichotomy_error = sm_distance * average_spacing / DICHOTOMY_ERROR_DIVISOR

        with stage_timer("make_surface_mesh", observer):
            vertices, faces = make_surface_mesh(function, inner_point, sm_sphere_radius,
                                                sm_dichotomy_error,
                                                angle_bound=sm_angle,
                                                radius_bound=sm_radius * average_spacing,
                                                distance_bound=sm_distance * average_spacing,
                                                manifold=manifold,
                                                max_rounds=max_refinement_rounds,
                                                max_vertices=max_vertices)
        if len(vertices) == 0:
            raise EmptyReconstructionError("surface meshing produced no vertices")

        mesh = o3d.geometry.TriangleMesh()
        mesh.vertices = o3d.utility.Vector3dVector(np.ascontiguousarray(vertices, dtype=np.float64))
        mesh.triangles = o3d.utility.Vector3iVector(np.ascontiguousarray(faces, dtype=np.int32))
        clean_mesh(mesh)
        if len(mesh.vertices) == 0:
            raise EmptyReconstructionError("no restricted facet survived mesh cleanup")
        return mesh
