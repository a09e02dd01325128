"""Synthetic point clouds shared by the test modules."""

import numpy as np
import pytest


def fibonacci_sphere(n, radius=1.0):
    i = np.arange(n) + 0.5
    z = 1.0 - 2.0 * i / n
    r = np.sqrt(1.0 - z * z)
    phi = np.pi * (1.0 + np.sqrt(5.0)) * i
    unit = np.stack([r * np.cos(phi), r * np.sin(phi), z], axis=1)
    return radius * unit, unit.copy()


def grid_plane(nx, ny, step, z=0.0, origin=(0.0, 0.0)):
    xs, ys = np.meshgrid(origin[0] + step * np.arange(nx), origin[1] + step * np.arange(ny),
                         indexing="ij")
    return np.stack([xs.ravel(), ys.ravel(), np.full(nx * ny, z)], axis=1)


@pytest.fixture(scope="session")
def sphere():
    """500 points on the unit sphere with exact outward normals."""
    return fibonacci_sphere(500)


@pytest.fixture(scope="session")
def cube_surface():
    """1000 points uniformly spread over the faces of the unit cube [-0.5, 0.5]^3."""
    rng = np.random.default_rng(12345)
    n = 1000
    pts = rng.uniform(-0.5, 0.5, size=(n, 3))
    axis = rng.integers(0, 3, size=n)
    side = rng.choice([-0.5, 0.5], size=n)
    pts[np.arange(n), axis] = side
    return pts


@pytest.fixture(scope="session")
def flat_plane():
    """20 x 20 grid in z = 0, step 0.05."""
    return grid_plane(20, 20, 0.05)


@pytest.fixture(scope="session")
def noisy_plane(flat_plane):
    rng = np.random.default_rng(7)
    pts = flat_plane.copy()
    pts[:, 2] += rng.normal(0.0, 0.01, size=len(pts))
    return pts
