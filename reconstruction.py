"""
Point Cloud -> Poisson Surface Mesh
Usage:
  python reconstruction.py --in scan.ply --out out_mesh \
      --removed_percentage 5 --cell_size_mul 1.0 --iter 1 --sm_angle 20 --verbose

Stages: outlier removal -> grid simplification -> jet smoothing ->
normal estimation -> MST orientation -> Poisson reconstruction.
Every intermediate cloud and the mesh are saved as PLY, plus report.csv.
"""

import argparse
import csv
import os

import numpy as np
import open3d as o3d

from mesh_quality import summarize_mesh
from pointcloud_errors import ConfigurationError, DegenerateInputError
from pointcloud_filters import compute_average_spacing, grid_simplify, jet_smooth, remove_outliers
from pointcloud_normals import estimate_normals, orient_normals
from pointcloud_utils import as_points, from_open3d, print_observer, to_open3d
from poisson_reconstruction import reconstruct_poisson_surface

PARAMS = {
    # 1) outliers
    "nb_neighbors": 24,
    "removed_percentage": 5.0,
    # 2) simplification; cell_size=None -> cell_size_mul * average spacing
    "cell_size": None,
    "cell_size_mul": 1.0,
    # 3) smoothing
    "smooth_neighbors": 8,
    "iterations": 1,
    # 4-5) normals
    "normal_neighbors": 18,
    "orient_neighbors": 18,
    "trim": True,
    # 6) meshing criteria
    "sm_angle": 20.0,
    "sm_radius": 30.0,
    "sm_distance": 0.375,
}


def run_pipeline(points, normals=None, params=None, observer=None):
    """
    Run the stages in their canonical order and return every intermediate
    result in a dict. With `normals` given, stages 1-5 are skipped and the
    normals are taken as already oriented.
    """
    cfg = dict(PARAMS)
    if params:
        unknown = set(params) - set(PARAMS)
        if unknown:
            raise ConfigurationError(f"unknown pipeline parameters: {sorted(unknown)}")
        cfg.update(params)

    pts = as_points(points)
    result = {"raw": pts, "params": cfg}

    if normals is not None:
        result["oriented"] = (pts, as_points(normals, name="normals"))
        result["n_oriented"] = len(pts)
    else:
        inliers = remove_outliers(pts, cfg["removed_percentage"], cfg["nb_neighbors"],
                                  observer=observer)
        result["inliers"] = inliers

        cell_size = cfg["cell_size"]
        if cell_size is None:
            spacing = compute_average_spacing(inliers, observer=observer)
            cell_size = cfg["cell_size_mul"] * spacing
            result["spacing"] = spacing
        result["cell_size"] = cell_size
        simplified = grid_simplify(inliers, cell_size, observer=observer)
        result["simplified"] = simplified

        smoothed = jet_smooth(simplified, cfg["smooth_neighbors"], cfg["iterations"],
                              observer=observer)
        result["smoothed"] = smoothed

        result["normals"] = estimate_normals(smoothed, cfg["normal_neighbors"], observer=observer)
        opts, onrm, n_oriented = orient_normals(*result["normals"], nb_neighbors=cfg["orient_neighbors"],
                                                trim=cfg["trim"], observer=observer)
        result["oriented"] = (opts, onrm)
        result["n_oriented"] = n_oriented

    opts, onrm = result["oriented"]
    result["mesh"] = reconstruct_poisson_surface(opts, onrm,
                                                 sm_angle=cfg["sm_angle"],
                                                 sm_radius=cfg["sm_radius"],
                                                 sm_distance=cfg["sm_distance"],
                                                 observer=observer)
    return result


# ---- io / report ----
def load_point_cloud(path):
    if not os.path.exists(path):
        raise FileNotFoundError(f"Input file not found: {path}")
    pcd = o3d.io.read_point_cloud(path)
    points, normals = from_open3d(pcd)
    if len(points) == 0:
        raise DegenerateInputError(f"no points read from {path}")
    return points, normals


def _bbox(arr):
    if len(arr) == 0:
        return None, None
    return arr.min(axis=0).tolist(), arr.max(axis=0).tolist()


def save_pcd(pcd, path, note=""):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    if not o3d.io.write_point_cloud(path, pcd):
        raise OSError(f"could not write {path}")
    np_pts = np.asarray(pcd.points)
    bbmin, bbmax = _bbox(np_pts)
    return {
        "file": path,
        "type": "PointCloud",
        "points": int(np_pts.shape[0]),
        "faces": None,
        "bbox_min": bbmin,
        "bbox_max": bbmax,
        "size_MB": round(os.path.getsize(path) / (1024 * 1024), 3),
        "note": note
    }


def save_mesh(mesh, path, note=""):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    if not o3d.io.write_triangle_mesh(path, mesh):
        raise OSError(f"could not write {path}")
    V = np.asarray(mesh.vertices)
    F = np.asarray(mesh.triangles)
    bbmin, bbmax = _bbox(V)
    return {
        "file": path,
        "type": "TriangleMesh",
        "points": int(V.shape[0]),
        "faces": int(F.shape[0]),
        "bbox_min": bbmin,
        "bbox_max": bbmax,
        "size_MB": round(os.path.getsize(path) / (1024 * 1024), 3),
        "note": note
    }


def write_report(report, csv_path):
    with open(csv_path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=list(report[0].keys()))
        writer.writeheader()
        for r in report:
            writer.writerow(r)


def params_from_args(args):
    return {
        "nb_neighbors": args.nb_neighbors,
        "removed_percentage": args.removed_percentage,
        "cell_size": args.cell_size,
        "cell_size_mul": args.cell_size_mul,
        "smooth_neighbors": args.smooth_neighbors,
        "iterations": args.iterations,
        "normal_neighbors": args.normal_neighbors,
        "orient_neighbors": args.orient_neighbors,
        "trim": not args.no_trim,
        "sm_angle": args.sm_angle,
        "sm_radius": args.sm_radius,
        "sm_distance": args.sm_distance,
    }


def main(args):
    in_path = args.input
    out_dir = args.output
    os.makedirs(out_dir, exist_ok=True)
    report = []

    # 0) read
    points, normals = load_point_cloud(in_path)
    if args.oriented_input and normals is None:
        raise ConfigurationError(f"--oriented_input given but {in_path} has no normals")
    if args.verbose:
        print(f"[I] read {len(points)} points from {in_path}")
    observer = print_observer if args.verbose else None

    result = run_pipeline(points,
                          normals=normals if args.oriented_input else None,
                          params=params_from_args(args),
                          observer=observer)
    cfg = result["params"]

    report.append(save_pcd(to_open3d(result["raw"]), os.path.join(out_dir, "00_raw_pointcloud.ply"), "raw"))
    if not args.oriented_input:
        report.append(save_pcd(to_open3d(result["inliers"]), os.path.join(out_dir, "01_outlier_free.ply"),
                               f"nb_neighbors={cfg['nb_neighbors']}, removed_percentage={cfg['removed_percentage']}"))
        report.append(save_pcd(to_open3d(result["simplified"]), os.path.join(out_dir, "02_grid_simplified.ply"),
                               f"cell_size={result['cell_size']:.6g}"))
        report.append(save_pcd(to_open3d(result["smoothed"]), os.path.join(out_dir, "03_jet_smoothed.ply"),
                               f"smooth_neighbors={cfg['smooth_neighbors']}, iter={cfg['iterations']}"))
        report.append(save_pcd(to_open3d(*result["normals"]), os.path.join(out_dir, "04_normals_estimated.ply"),
                               f"normal_neighbors={cfg['normal_neighbors']}"))
        n_unoriented = len(result["normals"][0]) - result["n_oriented"]
        if n_unoriented and args.verbose:
            print(f"[WARN] {n_unoriented} points could not be oriented"
                  + (" (trimmed)" if cfg["trim"] else ""))
        report.append(save_pcd(to_open3d(*result["oriented"]), os.path.join(out_dir, "05_normals_oriented.ply"),
                               f"orient_neighbors={cfg['orient_neighbors']}, trim={cfg['trim']}, "
                               f"oriented={result['n_oriented']}"))

    mesh = result["mesh"]
    quality = summarize_mesh(mesh)
    report.append(save_mesh(mesh, os.path.join(out_dir, "06_poisson_mesh.ply"),
                            f"sm_angle={cfg['sm_angle']}, sm_radius={cfg['sm_radius']}, "
                            f"sm_distance={cfg['sm_distance']}, closed={quality['closed']}"))
    if args.verbose:
        if quality["closed"]:
            print("[OK] mesh is a closed 2-manifold")
        else:
            print(f"[WARN] mesh has {quality['boundary_edges']} boundary and "
                  f"{quality['non_manifold_edges']} non-manifold edges")

    csv_path = os.path.join(out_dir, "report.csv")
    write_report(report, csv_path)

    print("\n=== Processing Summary ===")
    for r in report:
        print(f"{r['type']:12s}  pts={str(r['points']):>8s}  faces={str(r['faces']):>8s}  file={r['file']}  size={r['size_MB']}MB  note={r['note']}")
    print(f"\nCSV report: {csv_path}")
    return result


def build_parser():
    parser = argparse.ArgumentParser(description="Point cloud -> Poisson surface mesh")
    parser.add_argument("--in", dest="input", type=str, default="pointcloud.ply", help="Input point cloud (.ply/.xyz/.pcd/...)")
    parser.add_argument("--out", dest="output", type=str, default="out_mesh", help="Output directory")
    # 点云预处理
    parser.add_argument("--nb_neighbors", type=int, default=PARAMS["nb_neighbors"], help="k for outlier scoring")
    parser.add_argument("--removed_percentage", type=float, default=PARAMS["removed_percentage"], help="percent of points removed as outliers")
    parser.add_argument("--cell_size", type=float, default=PARAMS["cell_size"], help="grid cell side (default: derived from spacing)")
    parser.add_argument("--cell_size_mul", type=float, default=PARAMS["cell_size_mul"], help="cell size = mul * average spacing")
    parser.add_argument("--smooth_neighbors", type=int, default=PARAMS["smooth_neighbors"])
    parser.add_argument("--iter", dest="iterations", type=int, default=PARAMS["iterations"], help="jet smoothing passes (0=skip)")
    # 法向
    parser.add_argument("--normal_neighbors", type=int, default=PARAMS["normal_neighbors"])
    parser.add_argument("--orient_neighbors", type=int, default=PARAMS["orient_neighbors"])
    parser.add_argument("--no_trim", action="store_true", help="keep points the MST could not orient")
    parser.add_argument("--oriented_input", action="store_true", help="input already has oriented normals; skip stages 1-5")
    # ---- 网格质量参数 ----
    parser.add_argument("--sm_angle", type=float, default=PARAMS["sm_angle"], help="min triangle angle (degrees)")
    parser.add_argument("--sm_radius", type=float, default=PARAMS["sm_radius"], help="max triangle size, x average spacing")
    parser.add_argument("--sm_distance", type=float, default=PARAMS["sm_distance"], help="max surface error, x average spacing")
    parser.add_argument("--verbose", action="store_true", help="print stage timings and warnings")
    return parser


def cli(argv=None):
    args = build_parser().parse_args(argv)
    main(args)


if __name__ == "__main__":
    cli()
