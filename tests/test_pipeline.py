"""End-to-end tests: run_pipeline and the command line driver."""

import csv
import os

import numpy as np
import open3d as o3d
import pytest

from mesh_quality import edge_manifold_stats, eval_fit_to_pointcloud
from pointcloud_errors import ConfigurationError
from pointcloud_utils import to_open3d
from reconstruction import PARAMS, build_parser, main, run_pipeline


@pytest.fixture(scope="module")
def cube_run(cube_surface, tmp_path_factory):
    """Full pipeline on the cube cloud through the command line driver."""
    tmp = tmp_path_factory.mktemp("cube")
    in_path = str(tmp / "cube.ply")
    o3d.io.write_point_cloud(in_path, to_open3d(cube_surface))
    out_dir = str(tmp / "out")
    args = build_parser().parse_args(["--in", in_path, "--out", out_dir, "--cell_size", "0.05",
                                      "--removed_percentage", "5", "--nb_neighbors", "24",
                                      "--normal_neighbors", "18", "--orient_neighbors", "18"])
    result = main(args)
    return result, out_dir


class TestCubeEndToEnd:
    """Cube surface: outliers -> simplify -> smooth -> normals -> orient -> mesh."""

    def test_stage_counts(self, cube_run):
        result, _ = cube_run
        assert len(result["raw"]) == 1000
        assert len(result["inliers"]) == 950
        assert len(result["simplified"]) <= 950
        assert len(result["smoothed"]) == len(result["simplified"])
        pts, normals = result["oriented"]
        assert len(pts) == result["n_oriented"] <= len(result["simplified"])
        np.testing.assert_allclose(np.linalg.norm(normals, axis=1), 1.0, atol=1e-6)

    def test_mesh(self, cube_run, cube_surface):
        result, _ = cube_run
        mesh = result["mesh"]
        assert len(mesh.triangles) > 0
        assert edge_manifold_stats(mesh)["non_manifold_edges"] == 0
        assert edge_manifold_stats(mesh)["closed"]
        fit = eval_fit_to_pointcloud(mesh, cube_surface)
        assert fit["median"] < 0.1

    def test_outputs(self, cube_run):
        _, out_dir = cube_run
        for name in ("00_raw_pointcloud.ply", "01_outlier_free.ply", "02_grid_simplified.ply",
                     "03_jet_smoothed.ply", "04_normals_estimated.ply",
                     "05_normals_oriented.ply", "06_poisson_mesh.ply"):
            assert os.path.exists(os.path.join(out_dir, name)), name
        with open(os.path.join(out_dir, "report.csv"), newline="") as f:
            rows = list(csv.DictReader(f))
        assert len(rows) == 7
        assert rows[-1]["type"] == "TriangleMesh"
        assert int(rows[1]["points"]) == 950


class TestRunPipeline:
    """Test cases for run_pipeline."""

    def test_oriented_input_skips_point_stages(self, sphere):
        pts, normals = sphere
        result = run_pipeline(pts, normals)
        assert "inliers" not in result
        assert result["n_oriented"] == len(pts)
        assert len(result["mesh"].vertices) > 0

    def test_unknown_parameter(self, sphere):
        with pytest.raises(ConfigurationError):
            run_pipeline(sphere[0], params={"voxel_size": 0.1})

    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.nb_neighbors == PARAMS["nb_neighbors"]
        assert args.iterations == PARAMS["iterations"]
        assert args.cell_size is None
        assert not args.no_trim


class TestCommandLine:
    """Failure paths of the command line driver."""

    def test_missing_input(self, tmp_path):
        args = build_parser().parse_args(["--in", str(tmp_path / "nope.ply"), "--out", str(tmp_path)])
        with pytest.raises(FileNotFoundError):
            main(args)

    def test_oriented_input_without_normals(self, tmp_path, cube_surface):
        in_path = str(tmp_path / "cube.ply")
        o3d.io.write_point_cloud(in_path, to_open3d(cube_surface))
        args = build_parser().parse_args(["--in", in_path, "--out", str(tmp_path / "out"),
                                          "--oriented_input"])
        with pytest.raises(ConfigurationError):
            main(args)
