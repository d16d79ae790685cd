from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .boundary import node_set_from_faces
from .model import Control, ModelBuilder, ModelDocument, OgdenMaterial
from .surfaces import face_normals
from .topology import FloatArray, IntArray, boundary_faces
from .types import CubeParams, IndexRange

logger = logging.getLogger(__name__)

# Boundary markers of `hex_mesh_box`: 2 * axis + 1 on the low side, 2 * axis + 2 on the high side.
MARKER_X_MIN, MARKER_X_MAX = 1, 2
MARKER_Y_MIN, MARKER_Y_MAX = 3, 4
MARKER_Z_MIN, MARKER_Z_MAX = 5, 6

# (x, y, z) prescribed on the top face per step, in units of the stretch displacement.
# All three dofs are held in every step so the top face moves only as prescribed.
CUBE_STEP_LOADS: tuple[tuple[float, float, float], ...] = (
    (0.0, 0.0, 1.0),  # tension
    (0.0, 0.0, -1.0),  # unload
    (0.0, 0.0, -1.0),  # compression
    (0.0, 0.0, 1.0),  # unload
    (1.0, 0.0, 0.0),  # shear
)


@dataclass(frozen=True)
class HexBox:
    elements: IntArray
    vertices: FloatArray
    boundary_faces: IntArray
    boundary_markers: IntArray


def hex_mesh_box(size: tuple[float, float, float], counts: tuple[int, int, int]) -> HexBox:
    """Structured hex8 block centred on the origin, with one boundary marker per box side."""
    nx, ny, nz = (int(c) for c in counts)
    if min(nx, ny, nz) < 1:
        raise ValueError(f"element counts must be positive, got {counts}")
    axes = [np.linspace(-0.5 * s, 0.5 * s, n + 1) for s, n in zip(size, (nx, ny, nz))]
    X, Y, Z = np.meshgrid(*axes, indexing="ij")
    vertices = np.column_stack([X.ravel(), Y.ravel(), Z.ravel()])

    def vid(i, j, k):
        return (i * (ny + 1) + j) * (nz + 1) + k

    i, j, k = (a.ravel() for a in np.meshgrid(np.arange(nx), np.arange(ny), np.arange(nz), indexing="ij"))
    elements = np.column_stack(
        [
            vid(i, j, k),
            vid(i + 1, j, k),
            vid(i + 1, j + 1, k),
            vid(i, j + 1, k),
            vid(i, j, k + 1),
            vid(i + 1, j, k + 1),
            vid(i + 1, j + 1, k + 1),
            vid(i, j + 1, k + 1),
        ]
    ).astype(np.int64)

    faces = boundary_faces(elements)
    normals = face_normals(faces, vertices)
    axis = np.abs(normals).argmax(axis=1)
    markers = 2 * axis + np.where(normals[np.arange(len(axis)), axis] < 0, 1, 2)
    return HexBox(elements=elements, vertices=vertices, boundary_faces=faces, boundary_markers=markers.astype(np.int64))


def build_cube_model(params: CubeParams, *, log_file: str = "cube.log") -> ModelDocument:
    """
    Bottom face fixed, top face driven through the steps of `CUBE_STEP_LOADS`.
    Step k ramps load curve k from time k-1 to k.
    """
    n = max(1, int(round(params.cube_size / params.element_size)))
    box = hex_mesh_box((params.cube_size,) * 3, (n, n, n))
    d = params.displacement

    b = ModelBuilder()
    b.add_material(
        OgdenMaterial(id=1, name="Material1", c1=params.c1, m1=params.m1, c2=params.c1, m2=-params.m1, k=params.c1 * params.k_factor)
    )
    b.set_nodes(box.vertices)
    b.add_element_set("Part1", "hex8", 1, box.elements)
    b.add_node_set("bcSupportList", node_set_from_faces(box.boundary_faces[box.boundary_markers == MARKER_Z_MIN]))
    b.add_node_set("bcPrescribeList", node_set_from_faces(box.boundary_faces[box.boundary_markers == MARKER_Z_MAX]))
    b.add_fixed("bcSupportList", ("x", "y", "z"))

    control = Control.from_params(params.control)
    for k, loads in enumerate(CUBE_STEP_LOADS, start=1):
        step = b.add_step(control)
        b.add_load_curve(k, [(k - 1, 0.0), (k, 1.0)])
        for dof, factor in zip(("x", "y", "z"), loads):
            b.add_prescribed("bcPrescribeList", dof, factor * d, load_curve=k, step=step)

    nodes = IndexRange(start=0, stop=box.vertices.shape[0])
    b.set_log_file(log_file)
    b.add_output("node_data", "disp_out.txt", "ux;uy;uz", nodes)
    b.add_output("node_data", "force_out.txt", "Rx;Ry;Rz", nodes)
    doc = b.finalize()
    logger.info(
        "cube model: %d nodes, %d hexes, %d steps, stretch %.3g (d=%.3g)",
        doc.n_nodes,
        doc.n_elements,
        len(doc.steps),
        params.stretch_load,
        d,
    )
    return doc
