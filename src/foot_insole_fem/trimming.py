"""
Cut a closed surface with an axis-aligned plane and close the cut again.

Steps (see `trim_and_cap`):
1. keep faces whose vertices all lie on one side of the plane
2. repair spikes along the cut (`sharp_fix_face_logic`)
3. fill acute notches of the cut curve (`self_triangulate_boundary`)
4. snap the cut curve onto the plane and fill it with a planar triangulation
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Literal

import numpy as np
import triangle as tr

from .errors import DegenerateBoundary, GeometryInputError
from .surfaces import clean_unused, mean_edge_length
from .topology import (
    FloatArray,
    IntArray,
    as_index_array,
    boundary_edges,
    edges_to_curves,
    face_corner_angles,
    face_edge_neighbours,
)

logger = logging.getLogger(__name__)

KeepSide = Literal["below", "above"]


@dataclass(frozen=True)
class TrimResult:
    faces: IntArray
    vertices: FloatArray
    boundary_curve: IntArray
    cap_faces: IntArray
    cap_vertices: FloatArray
    n_sharp_fixed: int
    n_self_triangulated: int


def threshold_face_logic(
    faces: IntArray,
    vertices: FloatArray,
    *,
    axis: int = 2,
    threshold: float,
    keep: KeepSide = "below",
) -> np.ndarray:
    """A face is kept only if every one of its vertices is strictly on the kept side."""
    faces = as_index_array(faces)
    coord = vertices[:, axis]
    if keep == "below":
        vertex_ok = coord < threshold
    elif keep == "above":
        vertex_ok = coord > threshold
    else:
        raise ValueError(f"keep must be 'below' or 'above', got {keep!r}")
    return np.all(vertex_ok[faces], axis=1)


def sharp_fix_face_logic(
    faces: IntArray,
    vertices: FloatArray,
    logic: np.ndarray,
    *,
    angle_threshold_deg: float = 120.0,
    max_iter: int = 3,
) -> tuple[np.ndarray, int]:
    """
    Flip the inclusion of faces next to the cut where that makes the cut smoother.

    Sharpness of a cut vertex v (one with both kept and dropped faces) is
    |theta_kept(v) - theta_total(v) / 2|, theta being sums of corner angles.
    Candidates: dropped faces with >= 2 kept edge neighbours, kept faces with <= 1.
    A candidate flips when the max sharpness over its corners exceeds
    pi - angle_threshold and the flip strictly lowers it.

    Returns (new logic, number of flips).
    """
    faces = as_index_array(faces)
    logic = np.asarray(logic, dtype=bool).copy()
    n = vertices.shape[0]
    corner = face_corner_angles(faces, vertices)
    theta_total = np.bincount(faces.reshape(-1), weights=corner.reshape(-1), minlength=n)
    count_total = np.bincount(faces.reshape(-1), minlength=n)
    theta_kept = np.bincount(faces[logic].reshape(-1), weights=corner[logic].reshape(-1), minlength=n)
    count_kept = np.bincount(faces[logic].reshape(-1), minlength=n)
    nbr = face_edge_neighbours(faces)
    limit = math.pi - math.radians(angle_threshold_deg)

    def sharpness(v: int, tk: float, ck: int) -> float:
        if ck <= 0 or ck >= count_total[v]:
            return 0.0
        return abs(tk - 0.5 * theta_total[v])

    n_flips = 0
    for _ in range(max_iter):
        changed = False
        for f in range(faces.shape[0]):
            nb = nbr[f][nbr[f] >= 0]
            kept_nb = int(logic[nb].sum())
            if logic[f] and kept_nb > 1:
                continue
            if not logic[f] and kept_nb < 2:
                continue

            sign = -1 if logic[f] else 1
            before = 0.0
            after = 0.0
            for j, v in enumerate(faces[f]):
                before = max(before, sharpness(v, theta_kept[v], count_kept[v]))
                after = max(after, sharpness(v, theta_kept[v] + sign * corner[f, j], count_kept[v] + sign))
            if before <= limit or after >= before:
                continue

            logic[f] = not logic[f]
            theta_kept[faces[f]] += sign * corner[f]
            count_kept[faces[f]] += sign
            n_flips += 1
            changed = True
        if not changed:
            break
    return logic, n_flips


def _select_cut_curve(curves: list[IntArray], vertices: FloatArray, axis: int, threshold: float) -> IntArray:
    if not curves:
        raise DegenerateBoundary("cut produced no boundary curve", stage="trim")
    dist = [float(np.abs(vertices[c, axis] - threshold).mean()) for c in curves]
    return curves[int(np.argmin(dist))]


def _open_angle(vertices: FloatArray, prev: int, v: int, nxt: int) -> float:
    a = vertices[prev] - vertices[v]
    b = vertices[nxt] - vertices[v]
    den = float(np.linalg.norm(a) * np.linalg.norm(b))
    if den <= 0:
        return 0.0
    return math.acos(max(-1.0, min(1.0, float(np.dot(a, b)) / den)))


def self_triangulate_boundary(
    faces: IntArray,
    vertices: FloatArray,
    curve: IntArray,
    *,
    angle_threshold_deg: float = 120.0,
) -> tuple[IntArray, IntArray]:
    """
    Close acute notches of an ordered boundary curve.
    A curve vertex whose kept side is reflex and whose open angle is below the
    threshold gets the triangle (v, prev, next); v then leaves the curve.
    Smallest angle first, ties by lowest curve position.
    Returns (new triangles, updated curve).
    """
    faces = as_index_array(faces)
    corner = face_corner_angles(faces, vertices)
    theta_kept = np.bincount(faces.reshape(-1), weights=corner.reshape(-1), minlength=vertices.shape[0])
    limit = math.radians(angle_threshold_deg)
    work = [int(v) for v in curve]
    added: list[tuple[int, int, int]] = []

    while len(work) > 3:
        best: tuple[float, int] | None = None
        n = len(work)
        for i, v in enumerate(work):
            if theta_kept[v] <= math.pi:
                continue
            alpha = _open_angle(vertices, work[i - 1], v, work[(i + 1) % n])
            if alpha >= limit:
                continue
            if best is None or alpha < best[0]:
                best = (alpha, i)
        if best is None:
            break

        i = best[1]
        v, p, q = work[i], work[i - 1], work[(i + 1) % n]
        tri = np.array([[v, p, q]], dtype=np.int64)
        ang = face_corner_angles(tri, vertices)[0]
        theta_kept[v] += ang[0]
        theta_kept[p] += ang[1]
        theta_kept[q] += ang[2]
        added.append((v, p, q))
        del work[i]

    new_faces = np.asarray(added, dtype=np.int64).reshape(-1, 3)
    return new_faces, np.asarray(work, dtype=np.int64)


def _plane_axes(axis: int) -> tuple[int, int]:
    # (u, v, axis) is a right-handed frame.
    return (axis + 1) % 3, (axis + 2) % 3


def _signed_area_2d(pts: FloatArray) -> float:
    x, y = pts[:, 0], pts[:, 1]
    return 0.5 * float(np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y))


def _closed_polyline_self_intersects(pts: FloatArray) -> bool:
    n = pts.shape[0]
    if n < 4:
        return False
    a = pts
    b = np.roll(pts, -1, axis=0)
    d = b - a

    def cross(u: np.ndarray, w: np.ndarray) -> np.ndarray:
        return u[..., 0] * w[..., 1] - u[..., 1] * w[..., 0]

    # o[i, j] = orientation of a[j] / b[j] relative to segment i
    o1 = cross(d[:, None, :], a[None, :, :] - a[:, None, :])
    o2 = cross(d[:, None, :], b[None, :, :] - a[:, None, :])
    straddle = (o1 * o2) < 0
    crosses = straddle & straddle.T

    idx = np.arange(n)
    gap = np.abs(idx[:, None] - idx[None, :])
    non_adjacent = (gap > 1) & (gap < n - 1)
    return bool(np.any(crosses & non_adjacent))


def triangulate_polygon(pts: FloatArray, spacing: float, *, stage: str) -> tuple[IntArray, FloatArray]:
    """
    Constrained Delaunay fill of a closed 2D polygon with target edge length `spacing`.
    Output vertices start with the polygon vertices and triangles are counter-clockwise.
    """
    pts = np.ascontiguousarray(pts, dtype=np.float64)
    n = pts.shape[0]
    segments = np.column_stack([np.arange(n), (np.arange(n) + 1) % n])
    max_area = math.sqrt(3.0) / 4.0 * spacing**2
    out = tr.triangulate({"vertices": pts, "segments": segments}, f"pYq30a{max_area:.10f}")
    faces = np.asarray(out.get("triangles", []), dtype=np.int64).reshape(-1, 3)
    out_pts = np.asarray(out["vertices"], dtype=np.float64)
    if faces.shape[0] == 0:
        raise DegenerateBoundary("planar triangulation returned no triangles", stage=stage)
    if out_pts.shape[0] < n or not np.allclose(out_pts[:n], pts):
        raise DegenerateBoundary("planar triangulation altered the boundary polygon", stage=stage)
    return faces, out_pts


def cap_boundary(
    curve: IntArray,
    vertices: FloatArray,
    *,
    axis: int = 2,
    threshold: float,
    spacing: float,
) -> tuple[IntArray, FloatArray]:
    """
    Fill a planar closed curve with a constrained Delaunay triangulation.
    Returned cap vertices start with the curve vertices (no boundary Steiner points);
    cap winding runs against the curve direction.
    """
    u, v = _plane_axes(axis)
    pts = np.ascontiguousarray(vertices[curve][:, [u, v]], dtype=np.float64)
    n = pts.shape[0]
    if n < 3:
        raise DegenerateBoundary(f"cut curve has only {n} vertices", stage="cap")
    if _closed_polyline_self_intersects(pts):
        raise DegenerateBoundary("cut curve self-intersects in the cap plane", stage="cap")

    cap_faces, cap_pts = triangulate_polygon(pts, spacing, stage="cap")

    if _signed_area_2d(pts) > 0:
        cap_faces = cap_faces[:, ::-1].copy()

    cap_vertices = np.zeros((cap_pts.shape[0], 3), dtype=np.float64)
    cap_vertices[:, u] = cap_pts[:, 0]
    cap_vertices[:, v] = cap_pts[:, 1]
    cap_vertices[:, axis] = threshold
    return cap_faces, cap_vertices


def trim_and_cap(
    faces: IntArray,
    vertices: FloatArray,
    *,
    threshold: float,
    axis: int = 2,
    keep: KeepSide = "below",
    angle_threshold_deg: float = 120.0,
    sharp_fix_iterations: int = 3,
    spacing: float | None = None,
) -> TrimResult:
    """Cut a closed surface at `threshold`, smooth the cut, snap it and cap it."""
    faces = as_index_array(faces, width=3)
    vertices = np.asarray(vertices, dtype=np.float64)
    if spacing is None:
        spacing = mean_edge_length(faces, vertices)

    logic = threshold_face_logic(faces, vertices, axis=axis, threshold=threshold, keep=keep)
    if not logic.any():
        raise GeometryInputError(f"no face lies entirely on the kept side of {threshold:.6g}", stage="trim")
    if logic.all():
        raise GeometryInputError(f"cut level {threshold:.6g} does not intersect the surface", stage="trim")

    logic, n_fixed = sharp_fix_face_logic(
        faces, vertices, logic, angle_threshold_deg=angle_threshold_deg, max_iter=sharp_fix_iterations
    )
    kept, kept_vertices, _ = clean_unused(faces[logic], vertices)

    curve = _select_cut_curve(edges_to_curves(boundary_edges(kept)), kept_vertices, axis, threshold)
    extra, curve = self_triangulate_boundary(kept, kept_vertices, curve, angle_threshold_deg=angle_threshold_deg)
    if extra.shape[0]:
        kept = np.vstack([kept, extra])

    kept_vertices = kept_vertices.copy()
    kept_vertices[curve, axis] = threshold

    cap_faces, cap_vertices = cap_boundary(curve, kept_vertices, axis=axis, threshold=threshold, spacing=spacing)
    logger.info(
        "trimmed at %.4g: kept %d faces (%d sharp fixes, %d notch triangles), cap %d faces",
        threshold,
        kept.shape[0],
        n_fixed,
        extra.shape[0],
        cap_faces.shape[0],
    )
    return TrimResult(
        faces=kept,
        vertices=kept_vertices,
        boundary_curve=curve,
        cap_faces=cap_faces,
        cap_vertices=cap_vertices,
        n_sharp_fixed=n_fixed,
        n_self_triangulated=int(extra.shape[0]),
    )
