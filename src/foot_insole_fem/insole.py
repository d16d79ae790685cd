"""
Insole top/bottom surfaces built from the footprint of the foot mesh.

The footprint is the 2D convex hull of the foot surface pushed outward along
its normals. It is resampled, filled with quads, smoothed, and draped onto the
underside of the foot.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from itertools import chain

import numpy as np
from scipy import sparse
from scipy.interpolate import PchipInterpolator
from scipy.spatial import ConvexHull, cKDTree

from .errors import GeometryInputError
from .surfaces import vertex_normals
from .topology import (
    FloatArray,
    IntArray,
    adjacency_matrix,
    as_index_array,
    boundary_edges,
    face_edge_ids,
    face_edge_neighbours,
    patch_edges,
)
from .trimming import triangulate_polygon
from .types import InsoleParams

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InsoleSurface:
    top_faces: IntArray
    top_vertices: FloatArray
    bottom_faces: IntArray
    bottom_vertices: FloatArray
    footprint: FloatArray
    boundary_vertices: IntArray


def resample_closed_curve(points: FloatArray, n: int, *, oversample: int = 20) -> FloatArray:
    """`n` points evenly spaced in arc length along a closed PCHIP curve through `points`."""
    points = np.asarray(points, dtype=np.float64)
    closed = np.vstack([points, points[:1]])
    seg = np.linalg.norm(np.diff(closed, axis=0), axis=1)
    keep = np.concatenate([[True], seg > 0])
    closed = closed[keep]
    t = np.concatenate([[0.0], np.cumsum(seg[seg > 0])])
    if t[-1] <= 0 or closed.shape[0] < 3:
        raise GeometryInputError("cannot resample a curve of zero length", stage="insole")

    curve = PchipInterpolator(t, closed, axis=0)
    dense = curve(np.linspace(0.0, t[-1], n * oversample + 1))
    s = np.concatenate([[0.0], np.cumsum(np.linalg.norm(np.diff(dense, axis=0), axis=1))])
    target = np.linspace(0.0, s[-1], n, endpoint=False)
    return np.column_stack([np.interp(target, s, dense[:, k]) for k in range(dense.shape[1])])


def footprint_curve(faces: IntArray, vertices: FloatArray, *, offset: float, spacing: float) -> FloatArray:
    """Closed counter-clockwise footprint at the lowest elevation of the surface, `(n, 3)`."""
    faces = as_index_array(faces)
    used = np.unique(faces)
    normals = vertex_normals(faces, vertices)
    moved = vertices[used] + offset * normals[used]
    pts = moved[:, :2]
    try:
        hull = ConvexHull(pts)
    except Exception as e:  # noqa: BLE001
        raise GeometryInputError(f"footprint hull failed: {e}", stage="insole") from e

    # 2D hull vertices come counter-clockwise.
    loop = pts[hull.vertices]
    closed = np.vstack([loop, loop[:1]])
    perimeter = float(np.linalg.norm(np.diff(closed, axis=0), axis=1).sum())
    n = max(3, math.ceil(perimeter / spacing))
    curve = resample_closed_curve(loop, n)
    z = float(vertices[used, 2].min())
    return np.column_stack([curve, np.full(n, z)])


def _quad_deviation(p: FloatArray) -> float | None:
    """Max |corner angle - 90 deg| of a 2D quad, None when not strictly convex counter-clockwise."""
    nxt = np.roll(p, -1, axis=0) - p
    prv = np.roll(p, 1, axis=0) - p
    turn = nxt[:, 0] * prv[:, 1] - nxt[:, 1] * prv[:, 0]
    if np.any(turn <= 0):
        return None
    cos = np.einsum("ij,ij->i", nxt, prv) / (np.linalg.norm(nxt, axis=1) * np.linalg.norm(prv, axis=1))
    return float(np.max(np.abs(np.arccos(np.clip(cos, -1.0, 1.0)) - 0.5 * math.pi)))


def tri_to_quad(
    faces: IntArray, points: FloatArray, *, max_angle_deviation_deg: float = 60.0
) -> tuple[IntArray, IntArray]:
    """
    Pair neighbouring triangles into convex quads, best shaped pair first
    (ties by lowest shared edge). Returns (quads, unpaired triangles).
    """
    faces = as_index_array(faces, width=3)
    nbr = face_edge_neighbours(faces)
    eid = face_edge_ids(faces)
    limit = math.radians(max_angle_deviation_deg)

    candidates: list[tuple[float, int, int, int, tuple[int, int, int, int]]] = []
    for f in range(faces.shape[0]):
        for j in range(3):
            g = int(nbr[f, j])
            if g <= f:
                continue
            a, b, c = int(faces[f, j]), int(faces[f, (j + 1) % 3]), int(faces[f, (j + 2) % 3])
            opposite = [int(x) for x in faces[g] if x != a and x != b]
            if len(opposite) != 1:
                continue
            quad = (a, opposite[0], b, c)
            dev = _quad_deviation(points[list(quad), :2])
            if dev is None or dev > limit:
                continue
            candidates.append((dev, int(eid[f, j]), f, g, quad))

    candidates.sort(key=lambda item: (item[0], item[1]))
    used = np.zeros(faces.shape[0], dtype=bool)
    quads: list[tuple[int, int, int, int]] = []
    for _, _, f, g, quad in candidates:
        if used[f] or used[g]:
            continue
        used[f] = used[g] = True
        quads.append(quad)
    return np.asarray(quads, dtype=np.int64).reshape(-1, 4), faces[~used]


def split_to_quads(quads: IntArray, tris: IntArray, points: FloatArray) -> tuple[IntArray, FloatArray]:
    """
    Subdivide a mixed quad/triangle mesh into quads only:
    each quad into 4 and each triangle into 3 via edge midpoints and the face centre.
    Midpoints are shared between the faces of an edge.
    """
    points = np.asarray(points, dtype=np.float64)
    extra: list[FloatArray] = []
    mid: dict[tuple[int, int], int] = {}
    n = points.shape[0]

    def add(p: FloatArray) -> int:
        extra.append(p)
        return n + len(extra) - 1

    def midpoint(a: int, b: int) -> int:
        key = (a, b) if a < b else (b, a)
        if key not in mid:
            mid[key] = add(0.5 * (points[a] + points[b]))
        return mid[key]

    out: list[tuple[int, int, int, int]] = []
    for poly in chain((tuple(int(i) for i in q) for q in quads), (tuple(int(i) for i in t) for t in tris)):
        k = len(poly)
        centre = add(points[list(poly)].mean(axis=0))
        m = [midpoint(poly[i], poly[(i + 1) % k]) for i in range(k)]
        for i in range(k):
            out.append((poly[i], m[i], centre, m[i - 1]))

    new_points = np.vstack([points, np.asarray(extra).reshape(-1, points.shape[1])]) if extra else points.copy()
    return np.asarray(out, dtype=np.int64).reshape(-1, 4), new_points


def _mean_operator(adjacency: sparse.csr_matrix) -> tuple[sparse.csr_matrix, np.ndarray]:
    degree = np.asarray(adjacency.sum(axis=1)).reshape(-1)
    has = degree > 0
    inv = np.zeros_like(degree)
    inv[has] = 1.0 / degree[has]
    return sparse.diags(inv) @ adjacency, has


def hc_smooth(
    points: np.ndarray,
    adjacency: sparse.csr_matrix,
    n_iter: int,
    *,
    alpha: float = 0.1,
    beta: float = 0.5,
    rigid: np.ndarray | None = None,
) -> np.ndarray:
    """Humphrey's Classes smoothing (Laplacian step pulled back towards the original)."""
    mean_op, has = _mean_operator(adjacency)
    original = np.asarray(points, dtype=np.float64).copy()
    p = original.copy()
    for _ in range(n_iter):
        q = p
        p = mean_op @ q
        p[~has] = q[~has]
        b = p - (alpha * original + (1.0 - alpha) * q)
        p = p - (beta * b + (1.0 - beta) * (mean_op @ b))
        p[~has] = q[~has]
        if rigid is not None:
            p[rigid] = original[rigid]
    return p


def laplacian_smooth(
    values: np.ndarray, adjacency: sparse.csr_matrix, n_iter: int, *, rigid: np.ndarray | None = None
) -> np.ndarray:
    mean_op, has = _mean_operator(adjacency)
    original = np.asarray(values, dtype=np.float64).copy()
    p = original.copy()
    for _ in range(n_iter):
        q = mean_op @ p
        q[~has] = p[~has]
        p = q
        if rigid is not None:
            p[rigid] = original[rigid]
    return p


def build_insole(
    faces: IntArray,
    vertices: FloatArray,
    *,
    spacing: float,
    params: InsoleParams | None = None,
) -> InsoleSurface:
    """
    Top and bottom quad surfaces of the insole under the surface (faces, vertices).
    Top faces point up; bottom faces are the same quads reversed (pointing down).
    """
    params = params or InsoleParams()
    faces = as_index_array(faces)
    vertices = np.asarray(vertices, dtype=np.float64)

    curve = footprint_curve(faces, vertices, offset=params.sole_offset_outward, spacing=spacing)
    tri_faces, pts = triangulate_polygon(curve[:, :2], 2.0 * spacing, stage="insole")
    quads, tris = tri_to_quad(tri_faces, pts, max_angle_deviation_deg=params.max_angle_deviation_deg)
    top_faces, pts = split_to_quads(quads, tris, pts)
    n = pts.shape[0]

    b_edges = boundary_edges(top_faces)
    b_idx = np.unique(b_edges)
    boundary_adj = adjacency_matrix(b_edges, n)
    surface_adj = adjacency_matrix(patch_edges(top_faces), n)

    p = hc_smooth(pts, boundary_adj, params.num_smooth_iterations_sole_xy)
    pts[b_idx] = p[b_idx]
    pts = hc_smooth(pts, surface_adj, params.num_smooth_iterations_sole_xy, rigid=b_idx)

    used = np.unique(faces)
    ref = vertices[used]
    query = np.column_stack([pts, np.full(n, curve[0, 2])])
    _, nearest = cKDTree(ref).query(query)
    z = ref[nearest, 2]
    z = laplacian_smooth(z, surface_adj, params.num_smooth_iterations_sole_z)
    zb = laplacian_smooth(z, boundary_adj, params.num_smooth_iterations_sole_z)
    z[b_idx] = zb[b_idx]
    z = z - spacing * params.sole_z_bias_fraction

    top_vertices = np.column_stack([pts, z])
    bottom_vertices = top_vertices.copy()
    bottom_vertices[:, 2] -= params.sole_min_thickness
    logger.info(
        "insole: %d quads (%d paired, %d single triangles before split), %d vertices",
        top_faces.shape[0],
        quads.shape[0],
        tris.shape[0],
        n,
    )
    return InsoleSurface(
        top_faces=top_faces,
        top_vertices=top_vertices,
        bottom_faces=top_faces[:, ::-1].copy(),
        bottom_vertices=bottom_vertices,
        footprint=curve,
        boundary_vertices=b_idx,
    )
