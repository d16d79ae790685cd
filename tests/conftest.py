from __future__ import annotations

import numpy as np
import pytest

from foot_insole_fem.cube import hex_mesh_box


def quads_to_tris(quads: np.ndarray) -> np.ndarray:
    quads = np.asarray(quads, dtype=np.int64)
    return np.vstack([quads[:, [0, 1, 2]], quads[:, [0, 2, 3]]])


def box_surface(lo=(0.0, 0.0, 0.0), hi=(1.0, 1.0, 1.0)) -> tuple[np.ndarray, np.ndarray]:
    """Outward-wound 12-triangle surface of an axis-aligned box."""
    lo = np.asarray(lo, dtype=np.float64)
    hi = np.asarray(hi, dtype=np.float64)
    box = hex_mesh_box(tuple(hi - lo), (1, 1, 1))
    vertices = box.vertices + 0.5 * (lo + hi)
    return quads_to_tris(box.boundary_faces), vertices


def unit_tet() -> tuple[np.ndarray, np.ndarray]:
    vertices = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0], [0, 0, 1]], dtype=np.float64)
    return np.array([[0, 1, 2, 3]], dtype=np.int64), vertices


@pytest.fixture
def unit_box():
    return box_surface()


@pytest.fixture
def sphere():
    trimesh = pytest.importorskip("trimesh")
    mesh = trimesh.creation.icosphere(subdivisions=3, radius=10.0)
    return np.asarray(mesh.faces, dtype=np.int64), np.asarray(mesh.vertices, dtype=np.float64)
