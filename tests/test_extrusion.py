import numpy as np
import pytest

from foot_insole_fem.extrusion import extrude_quads


def _square(z):
    return np.array([[0, 0, z], [1, 0, z], [1, 1, z], [0, 1, z]], dtype=float)


def _hex_volume(p):
    # split into 6 tets around the 0-6 diagonal
    tets = [(0, 1, 2, 6), (0, 2, 3, 6), (0, 3, 7, 6), (0, 7, 4, 6), (0, 4, 5, 6), (0, 5, 1, 6)]
    vol = 0.0
    for a, b, c, d in tets:
        vol += np.linalg.det(np.array([p[b] - p[a], p[c] - p[a], p[d] - p[a]])) / 6.0
    return vol


class TestExtrusion:
    """Quad pair -> hex8 block."""

    def test_single_quad(self):
        quads = np.array([[0, 1, 2, 3]])
        block = extrude_quads(quads, _square(2.0), quads[:, ::-1], _square(0.0))
        assert block.elements.shape == (1, 8)
        assert block.vertices.shape == (8, 3)
        assert block.boundary_faces.shape == (6, 4)
        np.testing.assert_array_equal(block.elements[0], [0, 1, 2, 3, 4, 5, 6, 7])
        np.testing.assert_allclose(block.vertices[:4, 2], 0.0)
        np.testing.assert_allclose(block.vertices[4:, 2], 2.0)
        assert _hex_volume(block.vertices[block.elements[0]]) == pytest.approx(2.0)
        np.testing.assert_array_equal(block.top_faces, [[4, 5, 6, 7]])
        np.testing.assert_array_equal(block.bottom_faces, [[3, 2, 1, 0]])

    def test_strip_shares_side_faces(self):
        top = np.array([[0, 0, 1], [1, 0, 1], [2, 0, 1], [0, 1, 1], [1, 1, 1], [2, 1, 1]], dtype=float)
        bottom = top - [0, 0, 1]
        quads = np.array([[0, 1, 4, 3], [1, 2, 5, 4]])
        block = extrude_quads(quads, top, quads, bottom)
        assert block.elements.shape == (2, 8)
        assert block.boundary_faces.shape == (10, 4)

    def test_vertex_count_mismatch(self):
        quads = np.array([[0, 1, 2, 3]])
        with pytest.raises(ValueError):
            extrude_quads(quads, _square(1.0), quads, np.vstack([_square(0.0), [[5, 5, 5]]]))

    def test_connectivity_mismatch(self):
        with pytest.raises(ValueError):
            extrude_quads(np.array([[0, 1, 2, 3]]), _square(1.0), np.array([[1, 2, 3, 0]]), _square(0.0))
