from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable

import numpy as np
from numpy.typing import NDArray
from scipy.sparse.csgraph import connected_components
from scipy.spatial import cKDTree

from .errors import GeometryInputError, MeshGenerationFailed, PipelineError
from .surfaces import face_normals, mean_edge_length
from .topology import (
    FloatArray,
    IntArray,
    adjacency_matrix,
    as_index_array,
    boundary_face_indices,
    element_to_patch,
    patch_edges,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VolumeMeshRequest:
    faces: IntArray
    vertices: FloatArray
    face_markers: IntArray
    region_points: FloatArray
    region_ids: IntArray
    region_max_volumes: FloatArray
    hole_points: FloatArray = field(default_factory=lambda: np.zeros((0, 3)))
    options: str = "pq1.2AaY"


@dataclass(frozen=True)
class VolumeMesh:
    elements: IntArray
    vertices: FloatArray
    boundary_faces: IntArray
    boundary_markers: IntArray
    element_regions: IntArray


# A mesher returns (vertices, tet4 elements, per-element region id or None).
Mesher = Callable[[VolumeMeshRequest], tuple[NDArray, NDArray, NDArray | None]]


def tet_vol_mean_est(faces: IntArray, vertices: FloatArray) -> float:
    """Volume of a regular tetrahedron whose edge is the mean edge length of the surface."""
    length = mean_edge_length(faces, vertices)
    return length**3 / (6.0 * math.sqrt(2.0))


def winding_number(faces: IntArray, vertices: FloatArray, points: FloatArray, *, chunk: int = 256) -> FloatArray:
    """
    Generalized winding number of a triangle surface at each query point
    (~1 inside, ~0 outside for an outward-oriented closed surface).
    """
    faces = as_index_array(faces, width=3)
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    tri = vertices[faces]
    out = np.zeros(points.shape[0], dtype=np.float64)
    for start in range(0, points.shape[0], chunk):
        p = points[start : start + chunk]
        a = tri[None, :, 0, :] - p[:, None, :]
        b = tri[None, :, 1, :] - p[:, None, :]
        c = tri[None, :, 2, :] - p[:, None, :]
        la = np.linalg.norm(a, axis=2)
        lb = np.linalg.norm(b, axis=2)
        lc = np.linalg.norm(c, axis=2)
        det = np.einsum("ijk,ijk->ij", a, np.cross(b, c))
        den = (
            la * lb * lc
            + np.einsum("ijk,ijk->ij", a, b) * lc
            + np.einsum("ijk,ijk->ij", b, c) * la
            + np.einsum("ijk,ijk->ij", c, a) * lb
        )
        out[start : start + chunk] = (2.0 * np.arctan2(det, den)).sum(axis=1) / (4.0 * math.pi)
    return out


def inner_point(
    include: tuple[IntArray, FloatArray],
    exclude: tuple[IntArray, FloatArray] | None = None,
    *,
    spacing: float | None = None,
    max_candidates: int = 200,
) -> FloatArray:
    """
    A point inside `include` and outside `exclude`, as far from every vertex as the candidates allow.
    Candidates are face centroids pushed along both normal directions by 0.1..4 x spacing.
    """
    inc_faces, inc_vertices = as_index_array(include[0], width=3), np.asarray(include[1], dtype=np.float64)
    if inc_faces.shape[0] == 0:
        raise GeometryInputError("inner point requested for an empty surface", stage="seed_points")
    if spacing is None:
        spacing = mean_edge_length(inc_faces, inc_vertices)

    pick = np.unique(np.linspace(0, inc_faces.shape[0] - 1, min(max_candidates, inc_faces.shape[0])).astype(np.int64))
    centroids = inc_vertices[inc_faces[pick]].mean(axis=1)
    normals = face_normals(inc_faces[pick], inc_vertices)
    steps = np.array([0.1, 0.25, 0.5, 1.0, 2.0, 4.0]) * spacing
    offsets = np.concatenate([-steps, steps])
    candidates = (centroids[None, :, :] + offsets[:, None, None] * normals[None, :, :]).reshape(-1, 3)

    ok = winding_number(inc_faces, inc_vertices, candidates) > 0.5
    all_vertices = inc_vertices[np.unique(inc_faces)]
    if exclude is not None:
        exc_faces, exc_vertices = as_index_array(exclude[0], width=3), np.asarray(exclude[1], dtype=np.float64)
        if exc_faces.shape[0]:
            ok &= np.abs(winding_number(exc_faces, exc_vertices, candidates)) < 0.5
            all_vertices = np.vstack([all_vertices, exc_vertices[np.unique(exc_faces)]])
    if not ok.any():
        raise GeometryInputError("no interior seed point found", stage="seed_points")

    candidates = candidates[ok]
    clearance, _ = cKDTree(all_vertices).query(candidates)
    return candidates[int(np.argmax(clearance))]


def surface_components(faces: IntArray, n_vertices: int) -> list[IntArray]:
    """Face index groups of the vertex-connected components of a surface."""
    faces = as_index_array(faces)
    if faces.shape[0] == 0:
        return []
    _, labels = connected_components(adjacency_matrix(patch_edges(faces), n_vertices), directed=False)
    face_label = labels[faces[:, 0]]
    return [np.flatnonzero(face_label == k) for k in np.unique(face_label)]


def hole_points(faces: IntArray, vertices: FloatArray, *, spacing: float | None = None) -> FloatArray:
    """One interior point per closed component of a cavity surface (own edge length unless given)."""
    points = [inner_point((faces[idx], vertices), spacing=spacing) for idx in surface_components(faces, vertices.shape[0])]
    return np.asarray(points, dtype=np.float64).reshape(-1, 3)


def build_request(
    faces: IntArray,
    vertices: FloatArray,
    face_markers: IntArray,
    *,
    domain_markers: tuple[int, ...],
    cavity_markers: tuple[int, ...],
    volume_factor: float = 2.0,
    options: str = "pq1.2AaY",
    region_id: int = 1,
) -> VolumeMeshRequest:
    """
    Shell + markers -> mesher request with one region point (inside the domain
    faces, outside the cavity faces) and one hole point per cavity component.
    """
    faces = as_index_array(faces, width=3)
    face_markers = np.asarray(face_markers, dtype=np.int64)
    spacing = mean_edge_length(faces, vertices)
    in_domain = np.isin(face_markers, domain_markers)
    in_cavity = np.isin(face_markers, cavity_markers)

    cavity = (faces[in_cavity], vertices) if in_cavity.any() else None
    region = inner_point((faces[in_domain], vertices), cavity, spacing=spacing)
    holes = hole_points(faces[in_cavity], vertices) if in_cavity.any() else np.zeros((0, 3))
    max_volume = tet_vol_mean_est(faces, vertices) * volume_factor
    logger.info("mesh request: %d holes, target tet volume %.4g", holes.shape[0], max_volume)

    return VolumeMeshRequest(
        faces=faces,
        vertices=np.asarray(vertices, dtype=np.float64),
        face_markers=face_markers,
        region_points=region.reshape(1, 3),
        region_ids=np.array([region_id], dtype=np.int64),
        region_max_volumes=np.array([max_volume], dtype=np.float64),
        hole_points=holes,
        options=options,
    )


def run_tetgen(request: VolumeMeshRequest) -> tuple[NDArray, NDArray, NDArray | None]:
    import tetgen

    tgen = tetgen.TetGen(request.vertices.astype(np.float64), request.faces.astype(np.int32))
    for rid, point, max_vol in zip(request.region_ids, request.region_points, request.region_max_volumes):
        tgen.add_region(int(rid), tuple(float(x) for x in point), float(max_vol))
    for point in request.hole_points:
        tgen.add_hole(tuple(float(x) for x in point))

    result = tgen.tetrahedralize(switches=request.options)
    nodes = np.asarray(result[0], dtype=np.float64)
    elements = np.asarray(result[1], dtype=np.int64)
    regions = None
    if len(result) > 2 and result[2] is not None and np.size(result[2]) == elements.shape[0]:
        regions = np.asarray(result[2]).reshape(-1).astype(np.int64)
    return nodes, elements, regions


def _orient_tets(elements: IntArray, vertices: FloatArray) -> IntArray:
    p = vertices[elements]
    vol = np.einsum("ij,ij->i", p[:, 1] - p[:, 0], np.cross(p[:, 2] - p[:, 0], p[:, 3] - p[:, 0]))
    out = elements.copy()
    neg = vol < 0
    out[neg] = out[neg][:, [0, 2, 1, 3]]
    return out


def _map_markers(boundary: IntArray, request: VolumeMeshRequest) -> IntArray:
    faces = np.asarray(request.faces).tolist()
    lookup = {tuple(sorted(f)): int(m) for f, m in zip(faces, np.asarray(request.face_markers).tolist())}
    keys = [tuple(sorted(f)) for f in boundary.tolist()]
    n_unmapped = sum(1 for k in keys if k not in lookup)
    if n_unmapped:
        # every boundary face must carry exactly one input marker
        raise MeshGenerationFailed(
            f"{n_unmapped} of {len(keys)} boundary face(s) match no input face; "
            f"the mesher must keep the input surface (switches {request.options!r})",
            stage="volume_mesh",
        )
    return np.array([lookup[k] for k in keys], dtype=np.int64)


def generate_volume_mesh(request: VolumeMeshRequest, mesher: Mesher = run_tetgen) -> VolumeMesh:
    """
    Run the mesher and translate its answer: positively oriented tets, boundary
    faces recomputed from the tets, boundary markers carried over from the shell.
    """
    try:
        vertices, elements, regions = mesher(request)
    except PipelineError:
        raise
    except Exception as e:  # noqa: BLE001
        raise MeshGenerationFailed(f"volume mesher failed: {e}", stage="volume_mesh") from e

    vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    elements = np.asarray(elements, dtype=np.int64)
    if elements.size == 0 or vertices.shape[0] == 0:
        raise MeshGenerationFailed("volume mesher returned no elements", stage="volume_mesh")
    elements = elements.reshape(elements.shape[0], -1)[:, :4]
    if elements.min() < 0 or elements.max() >= vertices.shape[0]:
        raise MeshGenerationFailed("volume mesher returned out-of-range node indices", stage="volume_mesh")
    if regions is None:
        regions = np.full(elements.shape[0], int(request.region_ids[0]) if request.region_ids.size else 0)

    elements = _orient_tets(elements, vertices)
    faces, _, _ = element_to_patch(elements)
    boundary = faces[boundary_face_indices(faces)]
    markers = _map_markers(boundary, request)
    logger.info("volume mesh: %d tets, %d nodes, %d boundary faces", elements.shape[0], vertices.shape[0], boundary.shape[0])
    return VolumeMesh(
        elements=elements,
        vertices=vertices,
        boundary_faces=boundary,
        boundary_markers=markers,
        element_regions=np.asarray(regions, dtype=np.int64),
    )
