from dataclasses import replace

import numpy as np
import pytest

from foot_insole_fem.assembly import assemble, check_index_ranges
from foot_insole_fem.boundary import (
    annotate_contact_and_supports,
    orient_away_from_tets,
    node_set_from_faces,
    partition_boundary_nodes,
)
from foot_insole_fem.errors import ModelValidationError
from foot_insole_fem.extrusion import extrude_quads
from foot_insole_fem.meshing import VolumeMesh
from foot_insole_fem.surfaces import face_normals
from foot_insole_fem.topology import boundary_faces
from foot_insole_fem.types import IndexRange

from conftest import unit_tet


def _foot(markers=(1, 2, 2, 2)):
    elements, vertices = unit_tet()
    faces = boundary_faces(elements)
    return VolumeMesh(
        elements=elements,
        vertices=vertices + [0.0, 0.0, 1.0],
        boundary_faces=faces,
        boundary_markers=np.asarray(markers),
        element_regions=np.ones(1, dtype=np.int64),
    )


def _sole():
    quads = np.array([[0, 1, 2, 3]])
    top = np.array([[0, 0, 0.5], [1, 0, 0.5], [1, 1, 0.5], [0, 1, 0.5]], dtype=float)
    bottom = top - [0.0, 0.0, 1.0]
    return extrude_quads(quads, top, quads[:, ::-1], bottom)


class TestAssembly:
    """Global numbering of foot + insole."""

    def test_ranges_are_disjoint(self):
        mesh = assemble(_foot(), _sole())
        assert mesh.n_vertices == 12
        assert mesh.foot_nodes == IndexRange(start=0, stop=4)
        assert mesh.sole_nodes == IndexRange(start=4, stop=12)
        assert mesh.foot_elements == IndexRange(start=0, stop=1)
        assert mesh.sole_elements == IndexRange(start=1, stop=2)
        assert mesh.hex_elements.min() == 4
        np.testing.assert_allclose(mesh.vertices[mesh.hex_elements[0]], _sole().vertices)

    def test_bad_ranges_are_reported(self):
        mesh = assemble(_foot(), _sole())
        broken = replace(mesh, hex_elements=mesh.hex_elements - 4)
        with pytest.raises(ModelValidationError) as exc:
            check_index_ranges(broken)
        assert exc.value.stage == "assembly"
        assert any("sole elements" in p for p in exc.value.problems)


class TestBoundarySets:
    """Contact surfaces and node sets."""

    def test_partition_by_smallest_marker(self):
        faces = np.array([[0, 1, 2], [1, 3, 2], [3, 4, 2]])
        groups = partition_boundary_nodes(faces, np.array([3, 1, 2]))
        np.testing.assert_array_equal(groups[1], [1, 2, 3])
        np.testing.assert_array_equal(groups[2], [4])
        np.testing.assert_array_equal(groups[3], [0])
        covered = np.concatenate(list(groups.values()))
        assert sorted(covered.tolist()) == [0, 1, 2, 3, 4]

    def test_node_set(self):
        np.testing.assert_array_equal(node_set_from_faces(np.array([[4, 2, 9], [2, 4, 1]])), [1, 2, 4, 9])

    def test_orient_away_from_tets(self):
        elements, vertices = unit_tet()
        outward = boundary_faces(elements)
        np.testing.assert_array_equal(orient_away_from_tets(outward[:, ::-1], elements, vertices), outward)
        np.testing.assert_array_equal(orient_away_from_tets(outward, elements, vertices), outward)
        with pytest.raises(ValueError):
            orient_away_from_tets(np.array([[0, 1, 4]]), elements, np.vstack([vertices, [[2.0, 2.0, 2.0]]]))

    def test_annotate(self):
        mesh = assemble(_foot(), _sole())
        sets = annotate_contact_and_supports(mesh)
        np.testing.assert_array_equal(sets.master_faces, mesh.sole_top_faces)
        np.testing.assert_array_equal(sets.slave_faces, mesh.foot_boundary_faces[1:])
        np.testing.assert_array_equal(sets.support_nodes, [4, 5, 6, 7])
        np.testing.assert_array_equal(sets.prescribed_nodes, np.unique(mesh.foot_boundary_faces[0]))
        assert np.intersect1d(sets.support_nodes, sets.prescribed_nodes).size == 0

    @pytest.mark.parametrize("reverse", [False, True])
    def test_contact_normals_oppose(self, reverse):
        # foot sole (z = 1) resting over the insole top (z = 0.5)
        mesh = assemble(_foot(markers=(2, 1, 1, 1)), _sole())
        if reverse:
            mesh = replace(mesh, foot_boundary_faces=mesh.foot_boundary_faces[:, ::-1].copy())
        sets = annotate_contact_and_supports(mesh)
        n_slave = face_normals(sets.slave_faces, mesh.vertices)
        n_master = face_normals(sets.master_faces, mesh.vertices)
        np.testing.assert_allclose(n_slave, [[0.0, 0.0, -1.0]])
        np.testing.assert_allclose(n_master, [[0.0, 0.0, 1.0]])
        assert np.all(n_slave @ n_master.T < 0)

    def test_missing_markers(self):
        mesh = assemble(_foot(markers=(5, 5, 5, 5)), _sole())
        with pytest.raises(ModelValidationError) as exc:
            annotate_contact_and_supports(mesh)
        assert len(exc.value.problems) == 2
        assert exc.value.stage == "boundary"

    def test_support_and_prescribed_overlap(self):
        mesh = assemble(_foot(), _sole())
        overlapping = replace(mesh, sole_bottom_faces=mesh.foot_boundary_faces[:1])
        with pytest.raises(ModelValidationError) as exc:
            annotate_contact_and_supports(overlapping)
        assert "both supported and prescribed" in str(exc.value)
