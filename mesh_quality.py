"""
Quality checks for reconstructed meshes (no GUI).

    python mesh_quality.py --mesh out_mesh/06_poisson_mesh.ply --pcd cloud.ply
"""

import argparse
import sys

import numpy as np
import open3d as o3d
from scipy.spatial import cKDTree


def _mesh_arrays(mesh):
    if isinstance(mesh, o3d.geometry.TriangleMesh):
        return np.asarray(mesh.vertices), np.asarray(mesh.triangles)
    vertices, faces = mesh
    return np.asarray(vertices, dtype=np.float64), np.asarray(faces)


# --------------------------
# Check 0: face indices and coordinates
# --------------------------
def basic_health_checks(mesh):
    V, F = _mesh_arrays(mesh)
    issues = []
    if len(V) == 0:
        issues.append("mesh has no vertices.")
    if len(F) == 0:
        issues.append("mesh has no faces.")
    if not np.isfinite(V).all():
        issues.append("vertices contain NaN/Inf.")
    if len(F):
        if F.ndim != 2 or F.shape[1] != 3:
            issues.append(f"faces must have shape (f, 3), got {F.shape}.")
            return issues
        if F.min() < 0 or F.max() >= len(V):
            issues.append("faces reference missing vertices.")
        repeated = (F[:, 0] == F[:, 1]) | (F[:, 1] == F[:, 2]) | (F[:, 0] == F[:, 2])
        if repeated.any():
            issues.append(f"{int(repeated.sum())} faces repeat a vertex index.")
    return issues


# --------------------------
# Check 1: edge manifoldness / boundary
# --------------------------
def edge_manifold_stats(mesh):
    _, F = _mesh_arrays(mesh)
    if len(F) == 0:
        return {"edges": 0, "boundary_edges": 0, "non_manifold_edges": 0, "closed": False}
    edges = np.sort(np.concatenate([F[:, [0, 1]], F[:, [1, 2]], F[:, [2, 0]]]), axis=1)
    _, counts = np.unique(edges, axis=0, return_counts=True)
    boundary = int(np.sum(counts == 1))
    non_manifold = int(np.sum(counts > 2))
    return {
        "edges": int(len(counts)),
        "boundary_edges": boundary,
        "non_manifold_edges": non_manifold,
        "closed": boundary == 0 and non_manifold == 0,
    }


# --------------------------
# Check 2: fit of the mesh vertices to the input cloud
# --------------------------
def eval_fit_to_pointcloud(mesh, points, spacing=None):
    V, _ = _mesh_arrays(mesh)
    points = np.asarray(points, dtype=np.float64)
    if len(V) == 0 or len(points) == 0:
        return None
    tree = cKDTree(points)
    dists, _ = tree.query(V, k=1, workers=-1)
    fit = {
        "median": float(np.median(dists)),
        "p95": float(np.percentile(dists, 95)),
        "max": float(np.max(dists)),
    }
    if spacing is not None:
        # vertices within 2.5x the point spacing count as covered
        fit["coverage"] = float(np.mean(dists < 2.5 * spacing)) * 100.0
    return fit


def summarize_mesh(mesh, points=None, spacing=None):
    V, F = _mesh_arrays(mesh)
    summary = {"vertices": int(len(V)), "faces": int(len(F)),
               "issues": basic_health_checks(mesh)}
    summary.update(edge_manifold_stats(mesh))
    if points is not None:
        summary["fit"] = eval_fit_to_pointcloud(mesh, points, spacing)
    return summary


def print_quality_report(summary):
    print(f"(0) health: vertices={summary['vertices']}, faces={summary['faces']}")
    if not summary["issues"]:
        print("  -> OK: no index/coordinate problems.")
    for it in summary["issues"]:
        print("  -", it)

    print(f"(1) edges={summary['edges']}, boundary={summary['boundary_edges']}, "
          f"non-manifold={summary['non_manifold_edges']}")
    if summary["closed"]:
        print("  -> closed 2-manifold.")
    elif summary["non_manifold_edges"] == 0:
        print("  -> manifold with boundary.")
    else:
        print("  [WARN] non-manifold edges present.")

    fit = summary.get("fit")
    if fit:
        line = f"(2) vertex -> cloud distance: median={fit['median']:.4g}, p95={fit['p95']:.4g}, max={fit['max']:.4g}"
        if "coverage" in fit:
            line += f", coverage={fit['coverage']:.1f}%"
        print(line)


def main():
    ap = argparse.ArgumentParser(description="Mesh quality check")
    ap.add_argument("--mesh", required=True, help="triangle mesh (.ply/.obj/.stl/...)")
    ap.add_argument("--pcd", default=None, help="source point cloud, optional, for the fit check")
    args = ap.parse_args()

    mesh = o3d.io.read_triangle_mesh(args.mesh)
    points = None
    spacing = None
    if args.pcd is not None:
        pcd = o3d.io.read_point_cloud(args.pcd)
        points = np.asarray(pcd.points)
        if len(points) > 1:
            spacing = float(np.mean(pcd.compute_nearest_neighbor_distance()))
    print_quality_report(summarize_mesh(mesh, points, spacing))


if __name__ == "__main__":
    if len(sys.argv) == 1:
        print("usage: python mesh_quality.py --mesh mesh.ply [--pcd cloud.ply]")
    else:
        main()
