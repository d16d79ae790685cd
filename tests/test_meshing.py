import numpy as np
import pytest

from foot_insole_fem.errors import GeometryInputError, MeshGenerationFailed
from foot_insole_fem.joining import join_element_sets
from foot_insole_fem.meshing import (
    VolumeMeshRequest,
    build_request,
    generate_volume_mesh,
    hole_points,
    inner_point,
    surface_components,
    tet_vol_mean_est,
    winding_number,
)
from foot_insole_fem.topology import boundary_faces

from conftest import box_surface, unit_tet


def _nested_boxes():
    outer = box_surface((0, 0, 0), (4, 4, 4))
    inner = box_surface((1.5, 1.5, 1.5), (2.5, 2.5, 2.5))
    return outer, inner


def _tet_request():
    elements, vertices = unit_tet()
    faces = boundary_faces(elements)
    return VolumeMeshRequest(
        faces=faces,
        vertices=vertices,
        face_markers=np.array([1, 2, 3, 4]),
        region_points=np.array([[0.1, 0.1, 0.1]]),
        region_ids=np.array([7]),
        region_max_volumes=np.array([1.0]),
    )


class TestSeedPoints:
    """Winding number and interior points."""

    def test_winding_number_box(self, unit_box):
        faces, vertices = unit_box
        w = winding_number(faces, vertices, np.array([[0.5, 0.5, 0.5], [2.0, 0.5, 0.5], [0.5, 0.5, -3.0]]))
        np.testing.assert_allclose(w, [1.0, 0.0, 0.0], atol=1e-9)

    def test_inner_point_avoids_excluded_region(self):
        outer, inner = _nested_boxes()
        p = inner_point(outer, inner)
        assert np.all((p > 0) & (p < 4))
        assert not np.all((p > 1.5) & (p < 2.5))

    def test_hole_point_per_component(self):
        a = box_surface((0, 0, 0), (1, 1, 1))
        b = box_surface((3, 0, 0), (4, 1, 1))
        faces, vertices, _ = join_element_sets([a, b])
        assert len(surface_components(faces, vertices.shape[0])) == 2
        points = hole_points(faces, vertices)
        assert points.shape == (2, 3)
        assert sorted(points[:, 0] > 2) == [False, True]
        w = winding_number(faces, vertices, points)
        np.testing.assert_allclose(w, 1.0, atol=1e-9)

    def test_empty_surface(self):
        with pytest.raises(GeometryInputError):
            inner_point((np.zeros((0, 3), dtype=np.int64), np.zeros((0, 3))))


class TestRequest:
    """Mesher request assembly."""

    def test_nested_boxes(self):
        outer, inner = _nested_boxes()
        faces, vertices, markers = join_element_sets([outer, inner], markers=[2, 1])
        req = build_request(faces, vertices, markers, domain_markers=(2,), cavity_markers=(1,), region_id=5)
        assert req.region_points.shape == (1, 3)
        np.testing.assert_array_equal(req.region_ids, [5])
        assert req.hole_points.shape == (1, 3)
        assert np.all((req.hole_points > 1.5) & (req.hole_points < 2.5))
        assert req.region_max_volumes[0] == pytest.approx(2.0 * tet_vol_mean_est(faces, vertices))

    def test_no_cavity(self, unit_box):
        faces, vertices = unit_box
        req = build_request(faces, vertices, np.ones(12), domain_markers=(1,), cavity_markers=(9,))
        assert req.hole_points.shape == (0, 3)


class TestVolumeMesh:
    """Translation of the mesher answer."""

    def test_orients_and_maps_markers(self):
        req = _tet_request()
        mesh = generate_volume_mesh(req, mesher=lambda r: (r.vertices, np.array([[0, 2, 1, 3]]), None))
        p = mesh.vertices[mesh.elements[0]]
        assert np.linalg.det(p[1:] - p[0]) > 0
        assert sorted(mesh.boundary_markers.tolist()) == [1, 2, 3, 4]
        np.testing.assert_array_equal(mesh.element_regions, [7])

    def test_unmatched_boundary_faces_fail(self):
        # bottom face split at its centroid, as a mesher without surface preservation would
        def splitting(r):
            vertices = np.vstack([r.vertices, [[1 / 3, 1 / 3, 0.0]]])
            return vertices, np.array([[0, 1, 4, 3], [1, 2, 4, 3], [2, 0, 4, 3]]), None

        with pytest.raises(MeshGenerationFailed) as exc:
            generate_volume_mesh(_tet_request(), mesher=splitting)
        assert "3 of 6 boundary face(s)" in str(exc.value)
        assert exc.value.stage == "volume_mesh"

    def test_mesher_exception_is_wrapped(self):
        def broken(_request):
            raise RuntimeError("boom")

        with pytest.raises(MeshGenerationFailed) as exc:
            generate_volume_mesh(_tet_request(), mesher=broken)
        assert "boom" in str(exc.value)
        assert exc.value.stage == "volume_mesh"

    def test_empty_output(self):
        with pytest.raises(MeshGenerationFailed):
            generate_volume_mesh(_tet_request(), mesher=lambda r: (r.vertices, np.zeros((0, 4)), None))

    def test_out_of_range_output(self):
        with pytest.raises(MeshGenerationFailed):
            generate_volume_mesh(_tet_request(), mesher=lambda r: (r.vertices, np.array([[0, 1, 2, 9]]), None))

    def test_tetgen_box_with_cavity(self):
        tetgen = pytest.importorskip("tetgen")
        if not hasattr(tetgen.TetGen, "add_region"):
            pytest.skip("tetgen build without region support")
        outer, inner = _nested_boxes()
        faces, vertices, markers = join_element_sets([outer, inner], markers=[2, 1])
        mesh = generate_volume_mesh(build_request(faces, vertices, markers, domain_markers=(2,), cavity_markers=(1,)))
        p = mesh.vertices[mesh.elements]
        vol = np.einsum("ij,ij->i", p[:, 1] - p[:, 0], np.cross(p[:, 2] - p[:, 0], p[:, 3] - p[:, 0])) / 6.0
        assert np.all(vol > 0)
        assert vol.sum() == pytest.approx(64.0 - 1.0)
        assert set(np.unique(mesh.boundary_markers).tolist()) == {1, 2}
