from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
from scipy import sparse
from scipy.sparse.csgraph import connected_components
from scipy.spatial import cKDTree

from .errors import GeometryInputError
from .topology import FloatArray, IntArray, as_index_array

logger = logging.getLogger(__name__)


def join_element_sets(
    patches: Sequence[tuple[IntArray, FloatArray]],
    markers: Sequence[int] | None = None,
) -> tuple[IntArray, FloatArray, IntArray]:
    """
    Append patches into one face/vertex set.
    - vertices are stacked in patch order
    - face indices of patch i are offset by the vertex count of patches 0..i-1
    - every face gets the marker of its patch (1..n when `markers` is not given)
    No vertices are merged here; see `merge_vertices`.
    """
    if not patches:
        raise ValueError("join_element_sets needs at least one patch")
    if markers is None:
        markers = list(range(1, len(patches) + 1))
    if len(markers) != len(patches):
        raise ValueError(f"got {len(markers)} markers for {len(patches)} patches")

    width = as_index_array(patches[0][0]).shape[1]
    all_faces: list[IntArray] = []
    all_vertices: list[FloatArray] = []
    all_markers: list[IntArray] = []
    offset = 0
    for (faces, vertices), marker in zip(patches, markers):
        faces = as_index_array(faces, width=width)
        vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
        if faces.size and (faces.min() < 0 or faces.max() >= vertices.shape[0]):
            raise ValueError("patch face indices out of range for its vertex set")
        all_faces.append(faces + offset)
        all_vertices.append(vertices)
        all_markers.append(np.full(faces.shape[0], int(marker), dtype=np.int64))
        offset += vertices.shape[0]

    return np.vstack(all_faces), np.vstack(all_vertices), np.concatenate(all_markers)


def _degenerate_rows(faces: IntArray) -> np.ndarray:
    s = np.sort(faces, axis=1)
    return np.any(s[:, 1:] == s[:, :-1], axis=1)


def merge_vertices(
    faces: IntArray,
    vertices: FloatArray,
    rel_tol: float = 1e-8,
    *,
    drop_degenerate: bool = False,
) -> tuple[IntArray, FloatArray, IntArray]:
    """
    Merge vertices that lie within `rel_tol * bounding-box diagonal` of each other
    (chains of close pairs form one group). Survivors keep the position and order
    of their first occurrence, so merging an already merged set returns it unchanged. Face winding and face order are kept.

    Returns (faces, vertices, index_map) where index_map[old] = new.
    A face that collapses raises GeometryInputError unless `drop_degenerate`,
    in which case collapsed and duplicated faces are removed (surface import).
    """
    faces = as_index_array(faces)
    vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    if vertices.shape[0] == 0:
        return faces.copy(), vertices.copy(), np.zeros(0, dtype=np.int64)

    diag = float(np.linalg.norm(np.ptp(vertices, axis=0)))
    tol = rel_tol * diag if diag > 0 else 1e-12
    n = vertices.shape[0]
    pairs = cKDTree(vertices).query_pairs(tol, output_type="ndarray")
    graph = sparse.coo_matrix((np.ones(pairs.shape[0]), (pairs[:, 0], pairs[:, 1])), shape=(n, n))
    n_groups, inverse = connected_components(graph, directed=False)
    # each group is represented by its lowest original index
    first = np.full(n_groups, n, dtype=np.int64)
    np.minimum.at(first, inverse, np.arange(n, dtype=np.int64))

    order = np.argsort(first, kind="stable")
    rank = np.empty_like(order)
    rank[order] = np.arange(order.size)
    index_map = rank[inverse].astype(np.int64)

    new_vertices = vertices[first[order]]
    new_faces = index_map[faces] if faces.size else faces.copy()

    if new_faces.shape[0]:
        bad = _degenerate_rows(new_faces)
        if bad.any():
            if not drop_degenerate:
                raise GeometryInputError(
                    f"merging within tol={tol:.3g} collapses {int(bad.sum())} face(s)", stage="merge"
                )
            logger.debug("dropping %d collapsed face(s) after merge", int(bad.sum()))
            new_faces = new_faces[~bad]
        if drop_degenerate and new_faces.shape[0]:
            _, keep = np.unique(np.sort(new_faces, axis=1), axis=0, return_index=True)
            new_faces = new_faces[np.sort(keep)]

    n_removed = vertices.shape[0] - new_vertices.shape[0]
    if n_removed:
        logger.debug("merged %d duplicate vertices (tol=%.3g)", n_removed, tol)
    return new_faces, new_vertices, index_map
