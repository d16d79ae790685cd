from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import trimesh

from .errors import GeometryInputError
from .joining import merge_vertices
from .topology import FloatArray, IntArray, as_index_array, face_edges, patch_edges

logger = logging.getLogger(__name__)


def load_surface(path: Path, *, scale: float = 1.0, rel_tol: float = 1e-8) -> tuple[IntArray, FloatArray]:
    """
    Read a triangulated surface (STL/OBJ/PLY/...) and return deduplicated (faces, vertices).
    Multi-body files are concatenated. Vertices are multiplied by `scale`.
    """
    if not path.exists():
        raise GeometryInputError(f"surface file not found: {path}", stage="import")
    try:
        mesh = trimesh.load(str(path), process=False, force="mesh")
    except Exception as e:  # noqa: BLE001
        raise GeometryInputError(f"failed to read surface {path.name}: {e}", stage="import") from e

    faces = np.asarray(mesh.faces, dtype=np.int64)
    vertices = np.asarray(mesh.vertices, dtype=np.float64) * float(scale)
    if faces.ndim != 2 or faces.shape[0] == 0 or faces.shape[1] != 3:
        raise GeometryInputError(f"surface {path.name} has no triangles", stage="import")
    if not np.all(np.isfinite(vertices)):
        raise GeometryInputError(f"surface {path.name} has non-finite coordinates", stage="import")

    # STL stores every triangle with its own corners, so dedup before anything topological.
    faces, vertices, _ = merge_vertices(faces, vertices, rel_tol, drop_degenerate=True)
    logger.info("loaded %s: %d faces, %d vertices", path.name, faces.shape[0], vertices.shape[0])
    return faces, vertices


def export_surface(path: Path, faces: IntArray, vertices: FloatArray) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    mesh = trimesh.Trimesh(vertices=vertices, faces=faces, process=False)
    mesh.export(str(path))


def clean_unused(faces: IntArray, vertices: FloatArray) -> tuple[IntArray, FloatArray, IntArray]:
    """
    Drop vertices no face references and re-index densely (relative order kept).
    Returns (faces, vertices, index_map) with index_map[old] = new or -1.
    """
    faces = as_index_array(faces)
    used = np.zeros(vertices.shape[0], dtype=bool)
    used[faces.reshape(-1)] = True
    index_map = np.full(vertices.shape[0], -1, dtype=np.int64)
    index_map[used] = np.arange(int(used.sum()), dtype=np.int64)
    return index_map[faces], vertices[used].copy(), index_map


def mean_edge_length(faces: IntArray, vertices: FloatArray) -> float:
    edges = patch_edges(faces)
    if edges.shape[0] == 0:
        raise GeometryInputError("cannot derive a mesh spacing from an empty surface")
    return float(np.linalg.norm(vertices[edges[:, 0]] - vertices[edges[:, 1]], axis=1).mean())


def face_normals(faces: IntArray, vertices: FloatArray, *, normalize: bool = True) -> FloatArray:
    """
    Face normals from the face winding. Unnormalized normals have length 2 * area
    (quads use the sum over the fan around corner 0).
    """
    faces = as_index_array(faces)
    p = vertices[faces]
    n = np.zeros((faces.shape[0], 3), dtype=np.float64)
    for j in range(1, faces.shape[1] - 1):
        n += np.cross(p[:, j] - p[:, 0], p[:, j + 1] - p[:, 0])
    if not normalize:
        return n
    length = np.linalg.norm(n, axis=1, keepdims=True)
    return np.divide(n, length, out=np.zeros_like(n), where=length > 0)


def face_areas(faces: IntArray, vertices: FloatArray) -> FloatArray:
    return 0.5 * np.linalg.norm(face_normals(faces, vertices, normalize=False), axis=1)


def vertex_normals(faces: IntArray, vertices: FloatArray) -> FloatArray:
    """Area-weighted vertex normals (unit length, zero for unreferenced vertices)."""
    faces = as_index_array(faces)
    fn = face_normals(faces, vertices, normalize=False)
    vn = np.zeros_like(vertices, dtype=np.float64)
    for j in range(faces.shape[1]):
        np.add.at(vn, faces[:, j], fn)
    length = np.linalg.norm(vn, axis=1, keepdims=True)
    return np.divide(vn, length, out=np.zeros_like(vn), where=length > 0)


def signed_volume(faces: IntArray, vertices: FloatArray) -> float:
    """Enclosed volume of a closed triangle surface; positive when faces point outward."""
    faces = as_index_array(faces, width=3)
    c = vertices.mean(axis=0)
    p = vertices[faces] - c
    return float(np.einsum("ij,ij->i", p[:, 0], np.cross(p[:, 1], p[:, 2])).sum() / 6.0)


def euler_to_rotation(angles: tuple[float, float, float]) -> FloatArray:
    """Rotation matrix Rx(a) @ Ry(b) @ Rz(c) for Euler angles (a, b, c) in radians."""
    a, b, c = (float(x) for x in angles)
    rx = np.array([[1.0, 0.0, 0.0], [0.0, np.cos(a), -np.sin(a)], [0.0, np.sin(a), np.cos(a)]])
    ry = np.array([[np.cos(b), 0.0, np.sin(b)], [0.0, 1.0, 0.0], [-np.sin(b), 0.0, np.cos(b)]])
    rz = np.array([[np.cos(c), -np.sin(c), 0.0], [np.sin(c), np.cos(c), 0.0], [0.0, 0.0, 1.0]])
    return rx @ ry @ rz


def reorient(vertices: FloatArray, angles: tuple[float, float, float]) -> FloatArray:
    # Row-vector convention: v' = v @ R.
    return np.asarray(vertices, dtype=np.float64) @ euler_to_rotation(angles)


def orient_faces_outward(faces: IntArray, vertices: FloatArray) -> IntArray:
    """
    Enforce a consistent winding per connected component and point it outward.
    - DFS over shared edges: a neighbour holding the same directed edge is flipped.
    - Each component is then flipped as a whole if its signed volume is negative.
    """
    faces = as_index_array(faces, width=3).copy()
    if faces.shape[0] == 0:
        return faces

    edge_to_faces: dict[tuple[int, int], list[int]] = {}
    for idx, (u, v) in enumerate(face_edges(faces)):
        key = (int(u), int(v)) if u < v else (int(v), int(u))
        edge_to_faces.setdefault(key, []).append(idx // 3)

    def has_directed_edge(tri: np.ndarray, u: int, v: int) -> bool:
        return (tri[0] == u and tri[1] == v) or (tri[1] == u and tri[2] == v) or (tri[2] == u and tri[0] == v)

    visited = np.zeros(faces.shape[0], dtype=bool)
    for seed in range(faces.shape[0]):
        if visited[seed]:
            continue
        visited[seed] = True
        component = [seed]
        stack = [seed]
        while stack:
            cur = stack.pop()
            tri = faces[cur]
            for u, v in ((tri[0], tri[1]), (tri[1], tri[2]), (tri[2], tri[0])):
                u, v = int(u), int(v)
                for nb in edge_to_faces.get((u, v) if u < v else (v, u), []):
                    if visited[nb]:
                        continue
                    if has_directed_edge(faces[nb], u, v):
                        faces[nb] = faces[nb][[0, 2, 1]]
                    visited[nb] = True
                    component.append(nb)
                    stack.append(nb)

        comp = np.asarray(component, dtype=np.int64)
        if signed_volume(faces[comp], vertices) < 0:
            faces[comp] = faces[comp][:, [0, 2, 1]]
    return faces
