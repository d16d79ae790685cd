"""
Index-level mesh topology shared by the surface, volume and result stages.

All arrays are 0-based. Faces are `(M, 3)` triangles or `(M, 4)` quads,
elements are `(K, 4)` tet4 or `(K, 8)` hex8.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray
from scipy import sparse

from .errors import DegenerateBoundary

IntArray = NDArray[np.int64]
FloatArray = NDArray[np.float64]

# Outward faces of a positively oriented tet4 (det[v1-v0, v2-v0, v3-v0] > 0).
TET4_FACES = np.array([[0, 2, 1], [0, 1, 3], [1, 2, 3], [0, 3, 2]], dtype=np.int64)

# Outward faces of a hex8 whose bottom quad 0-3 is counter-clockwise seen from the top quad 4-7.
HEX8_FACES = np.array(
    [[0, 3, 2, 1], [4, 5, 6, 7], [0, 1, 5, 4], [1, 2, 6, 5], [2, 3, 7, 6], [3, 0, 4, 7]],
    dtype=np.int64,
)


def as_index_array(a, *, width: int | None = None) -> IntArray:
    arr = np.asarray(a, dtype=np.int64)
    if arr.ndim == 1 and arr.size == 0:
        arr = arr.reshape(0, width or 3)
    if arr.ndim != 2:
        raise ValueError(f"expected a 2D index array, got shape {arr.shape}")
    if width is not None and arr.shape[1] != width:
        raise ValueError(f"expected {width} indices per row, got {arr.shape[1]}")
    return arr


def element_to_patch(
    elements: IntArray, values: NDArray | None = None
) -> tuple[IntArray, NDArray | None, IntArray]:
    """
    Split elements into their faces.
    Returns (faces, per-face values copied from the owning element, owning element index).
    """
    elements = as_index_array(elements)
    if elements.shape[1] == 4:
        local = TET4_FACES
    elif elements.shape[1] == 8:
        local = HEX8_FACES
    else:
        raise ValueError(f"unsupported element width {elements.shape[1]} (expected 4 or 8)")

    n_local = local.shape[0]
    faces = elements[:, local].reshape(-1, local.shape[1])
    owner = np.repeat(np.arange(elements.shape[0], dtype=np.int64), n_local)
    face_values = None
    if values is not None:
        face_values = np.repeat(np.asarray(values), n_local, axis=0)
    return faces, face_values, owner


def _face_key_inverse(faces: IntArray) -> tuple[IntArray, IntArray]:
    keys = np.sort(faces, axis=1)
    _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    return inverse.reshape(-1), counts


def boundary_face_indices(faces: IntArray) -> IntArray:
    """Indices of faces whose vertex set appears exactly once."""
    faces = as_index_array(faces)
    if faces.shape[0] == 0:
        return np.zeros(0, dtype=np.int64)
    inverse, counts = _face_key_inverse(faces)
    return np.flatnonzero(counts[inverse] == 1)


def boundary_faces(elements: IntArray) -> IntArray:
    faces, _, _ = element_to_patch(elements)
    return faces[boundary_face_indices(faces)]


def face_edges(faces: IntArray) -> IntArray:
    """Directed edges in face winding order, `(M * k, 2)`."""
    faces = as_index_array(faces)
    return np.stack([faces, np.roll(faces, -1, axis=1)], axis=2).reshape(-1, 2)


def patch_edges(faces: IntArray) -> IntArray:
    """Unique undirected edges, each row sorted."""
    edges = np.sort(face_edges(faces), axis=1)
    if edges.shape[0] == 0:
        return edges
    return np.unique(edges, axis=0)


def boundary_edges(faces: IntArray) -> IntArray:
    """Directed edges used by exactly one face, keeping the face's direction."""
    edges = face_edges(faces)
    if edges.shape[0] == 0:
        return edges
    _, inverse, counts = np.unique(np.sort(edges, axis=1), axis=0, return_inverse=True, return_counts=True)
    return edges[counts[inverse.reshape(-1)] == 1]


def edges_to_curves(edges: IntArray) -> list[IntArray]:
    """
    Chain directed boundary edges into closed, ordered vertex loops.
    The first vertex is not repeated at the end.
    """
    nxt: dict[int, int] = {}
    order: list[int] = []
    for a, b in np.asarray(edges, dtype=np.int64).reshape(-1, 2):
        a, b = int(a), int(b)
        if a in nxt:
            raise DegenerateBoundary(f"boundary is non-manifold at vertex {a}")
        nxt[a] = b
        order.append(a)

    visited: set[int] = set()
    curves: list[IntArray] = []
    for start in order:
        if start in visited:
            continue
        loop = [start]
        visited.add(start)
        cur = nxt[start]
        while cur != start:
            if cur not in nxt:
                raise DegenerateBoundary(f"boundary curve is open at vertex {cur}")
            if cur in visited:
                raise DegenerateBoundary(f"boundary is non-manifold at vertex {cur}")
            loop.append(cur)
            visited.add(cur)
            cur = nxt[cur]
        curves.append(np.asarray(loop, dtype=np.int64))
    return curves


def adjacency_matrix(edges: IntArray, n_vertices: int) -> sparse.csr_matrix:
    """Symmetric 0/1 vertex adjacency from (undirected or directed) edges."""
    edges = np.asarray(edges, dtype=np.int64).reshape(-1, 2)
    rows = np.concatenate([edges[:, 0], edges[:, 1]])
    cols = np.concatenate([edges[:, 1], edges[:, 0]])
    data = np.ones(rows.shape[0], dtype=np.float64)
    adj = sparse.coo_matrix((data, (rows, cols)), shape=(n_vertices, n_vertices)).tocsr()
    adj.data[:] = 1.0
    return adj


def face_corner_angles(faces: IntArray, vertices: FloatArray) -> FloatArray:
    """Interior angle at every face corner, `(M, k)` in radians."""
    faces = as_index_array(faces)
    p = vertices[faces]
    prev = np.roll(p, 1, axis=1) - p
    nxt = np.roll(p, -1, axis=1) - p
    num = np.einsum("ijk,ijk->ij", prev, nxt)
    den = np.linalg.norm(prev, axis=2) * np.linalg.norm(nxt, axis=2)
    cos = np.divide(num, den, out=np.ones_like(num), where=den > 0)
    return np.arccos(np.clip(cos, -1.0, 1.0))


def vertex_to_face_measure(faces: IntArray, vertex_values: NDArray) -> NDArray:
    """Mean of the vertex values of each face."""
    faces = as_index_array(faces)
    return np.asarray(vertex_values)[faces].mean(axis=1)


def face_to_vertex_measure(faces: IntArray, n_vertices: int, face_values: NDArray) -> NDArray:
    """Mean of the values of the faces around each vertex; vertices without faces get 0."""
    faces = as_index_array(faces)
    face_values = np.asarray(face_values, dtype=np.float64)
    trailing = face_values.shape[1:]
    acc = np.zeros((n_vertices,) + trailing, dtype=np.float64)
    cnt = np.zeros(n_vertices, dtype=np.float64)
    for j in range(faces.shape[1]):
        np.add.at(acc, faces[:, j], face_values)
        np.add.at(cnt, faces[:, j], 1.0)
    shape = (n_vertices,) + (1,) * len(trailing)
    return np.divide(acc, cnt.reshape(shape), out=np.zeros_like(acc), where=cnt.reshape(shape) > 0)


def face_edge_ids(faces: IntArray) -> IntArray:
    """`(M, k)` row index into `patch_edges(faces)` of every face edge."""
    faces = as_index_array(faces)
    edges = np.sort(face_edges(faces), axis=1)
    _, inverse = np.unique(edges, axis=0, return_inverse=True)
    return inverse.reshape(faces.shape)


def face_edge_neighbours(faces: IntArray) -> IntArray:
    """`(M, k)` index of the face across each edge, -1 on open edges."""
    faces = as_index_array(faces)
    m, k = faces.shape
    inverse = face_edge_ids(faces).reshape(-1)
    owner = np.repeat(np.arange(m, dtype=np.int64), k)

    order = np.argsort(inverse, kind="stable")
    ids = inverse[order]
    same = ids[1:] == ids[:-1]
    a = order[:-1][same]
    b = order[1:][same]
    nbr = np.full(m * k, -1, dtype=np.int64)
    nbr[a] = owner[b]
    nbr[b] = owner[a]
    return nbr.reshape(m, k)
