import numpy as np
import pytest

from foot_insole_fem.errors import GeometryInputError
from foot_insole_fem.insole import (
    build_insole,
    footprint_curve,
    resample_closed_curve,
    split_to_quads,
    tri_to_quad,
)
from foot_insole_fem.surfaces import face_normals
from foot_insole_fem.topology import boundary_edges
from foot_insole_fem.types import InsoleParams

from conftest import box_surface


def _signed_area(xy):
    x, y = xy[:, 0], xy[:, 1]
    return 0.5 * float(np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y))


class TestCurves:
    """Footprint and resampling."""

    def test_resample_circle(self):
        t = np.linspace(0, 2 * np.pi, 50, endpoint=False)
        circle = np.column_stack([np.cos(t), np.sin(t)])
        out = resample_closed_curve(circle, 20)
        assert out.shape == (20, 2)
        np.testing.assert_allclose(np.linalg.norm(out, axis=1), 1.0, atol=1e-2)
        step = np.linalg.norm(np.diff(np.vstack([out, out[:1]]), axis=0), axis=1)
        assert step.std() / step.mean() < 0.05

    def test_zero_length_curve(self):
        with pytest.raises(GeometryInputError):
            resample_closed_curve(np.zeros((4, 2)), 5)

    def test_footprint_of_box(self):
        faces, vertices = box_surface((0, 0, 2), (10, 6, 5))
        curve = footprint_curve(faces, vertices, offset=1.0, spacing=1.0)
        assert curve.shape[1] == 3
        np.testing.assert_allclose(curve[:, 2], 2.0)
        assert _signed_area(curve[:, :2]) > 60.0
        x, y = curve[:, 0], curve[:, 1]
        assert np.all((x < 0) | (x > 10) | (y < 0) | (y > 6))
        assert curve.shape[0] >= 32


class TestQuads:
    """Triangle pairing and quad subdivision."""

    def test_square_pairs_into_one_quad(self):
        pts = np.array([[0, 0], [1, 0], [1, 1], [0, 1]], dtype=float)
        quads, tris = tri_to_quad(np.array([[0, 1, 2], [0, 2, 3]]), pts)
        assert quads.shape == (1, 4)
        assert tris.shape == (0, 3)
        assert sorted(quads[0].tolist()) == [0, 1, 2, 3]
        assert _signed_area(pts[quads[0]]) == pytest.approx(1.0)

    def test_bad_shape_stays_triangle(self):
        pts = np.array([[0, 0], [1, 0], [0.5, 0.05], [0.5, -0.05]], dtype=float)
        quads, tris = tri_to_quad(np.array([[0, 1, 2], [1, 0, 3]]), pts, max_angle_deviation_deg=30.0)
        assert quads.shape == (0, 4)
        assert tris.shape == (2, 3)

    def test_split_counts_and_shared_midpoints(self):
        pts = np.array([[0, 0], [1, 0], [1, 1], [0, 1], [2, 0.5]], dtype=float)
        quads = np.array([[0, 1, 2, 3]])
        tris = np.array([[1, 4, 2]])
        out, new_pts = split_to_quads(quads, tris, pts)
        assert out.shape == (7, 4)
        # 5 input points, 2 centres, 6 distinct edge midpoints (edge 1-2 shared)
        assert new_pts.shape == (13, 2)
        for q in out:
            assert _signed_area(new_pts[q]) > 0
        assert boundary_edges(out).shape[0] == 10


class TestInsole:
    """Top/bottom insole surfaces."""

    def test_box_footprint_insole(self):
        faces, vertices = box_surface((0, 0, 0), (20, 10, 8))
        params = InsoleParams(num_smooth_iterations_sole_xy=5, num_smooth_iterations_sole_z=2)
        sole = build_insole(faces, vertices, spacing=2.0, params=params)

        assert sole.top_faces.shape[1] == 4
        np.testing.assert_array_equal(sole.bottom_faces, sole.top_faces[:, ::-1])
        np.testing.assert_allclose(sole.top_vertices[:, 2], -2.0 / 3.0)
        np.testing.assert_allclose(
            sole.bottom_vertices[:, 2], sole.top_vertices[:, 2] - params.sole_min_thickness
        )
        np.testing.assert_allclose(sole.bottom_vertices[:, :2], sole.top_vertices[:, :2])
        assert np.all(face_normals(sole.top_faces, sole.top_vertices)[:, 2] > 0)
        assert sole.boundary_vertices.size > 0
