"""
Normal estimation (PCA over k-NN, via open3d) and MST normal orientation.
"""

import numpy as np
import open3d as o3d
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import breadth_first_order, minimum_spanning_tree

from pointcloud_utils import (as_oriented_points, as_points, check_neighbors, knn,
                              normalize_rows, stage_timer, to_open3d)

# csgraph drops explicit zeros, which would disconnect parallel-normal edges
_MIN_EDGE_WEIGHT = 1e-9


def estimate_normals(points, nb_neighbors=18, observer=None):
    """
    Tangent-plane normal of every point: the direction of least variance of its
    neighbourhood. Sign is arbitrary. Returns (points, normals).
    """
    pts = as_points(points)
    k = check_neighbors(nb_neighbors, len(pts))

    with stage_timer("estimate_normals", observer):
        pcd = to_open3d(pts)
        # open3d's knn search includes the query point itself
        pcd.estimate_normals(search_param=o3d.geometry.KDTreeSearchParamKNN(knn=k + 1))
        normals = np.asarray(pcd.normals, dtype=np.float64).copy()
        # coincident neighbourhoods have no plane; give them a fixed direction
        flat = ~(np.linalg.norm(normals, axis=1) > 1e-12)
        normals[flat] = (0.0, 0.0, 1.0)
        return pts, normalize_rows(normals)


def orient_normals(points, normals, nb_neighbors=18, trim=True, observer=None):
    """
    Propagate a consistent normal sign along the minimum spanning tree of the
    Riemannian k-NN graph (edge cost 1 - |n_i . n_j|).

    The seed is the point with the largest z, whose normal is turned to +z.
    Points the tree does not reach stay unoriented and are moved after the
    oriented ones; with `trim` they are dropped.

    Returns (points, normals, n_oriented).
    """
    pts, nrm = as_oriented_points(points, normals)
    k = check_neighbors(nb_neighbors, len(pts))

    with stage_timer("orient_normals", observer):
        n = len(pts)
        nrm = normalize_rows(nrm)
        _, idx = knn(pts, k)

        rows = np.repeat(np.arange(n), k)
        cols = idx[:, 1:].ravel()
        not_self = rows != cols
        rows, cols = rows[not_self], cols[not_self]
        cost = 1.0 - np.abs(np.einsum("ij,ij->i", nrm[rows], nrm[cols]))
        cost = np.clip(cost, 0.0, None) + _MIN_EDGE_WEIGHT
        graph = coo_matrix((cost, (rows, cols)), shape=(n, n)).tocsr()
        graph = graph.maximum(graph.T)

        source = int(np.argmax(pts[:, 2]))
        if nrm[source, 2] < 0.0:
            nrm[source] = -nrm[source]

        mst = minimum_spanning_tree(graph)
        order, pred = breadth_first_order(mst, source, directed=False,
                                          return_predecessors=True)
        # parents are visited before their children in BFS order
        for node in order[1:]:
            parent = pred[node]
            if np.dot(nrm[parent], nrm[node]) < 0.0:
                nrm[node] = -nrm[node]

        oriented = np.zeros(n, dtype=bool)
        oriented[order] = True
        n_oriented = int(oriented.sum())
        perm = np.concatenate([np.flatnonzero(oriented), np.flatnonzero(~oriented)])
        if trim:
            perm = perm[:n_oriented]
        return pts[perm], nrm[perm], n_oriented
