from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .errors import ModelValidationError
from .extrusion import HexBlock
from .meshing import VolumeMesh
from .topology import FloatArray, IntArray
from .types import IndexRange

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssembledMesh:
    """Foot tets and insole hexes in one global numbering (foot first)."""

    vertices: FloatArray
    tet_elements: IntArray
    hex_elements: IntArray
    foot_boundary_faces: IntArray
    foot_boundary_markers: IntArray
    sole_top_faces: IntArray
    sole_bottom_faces: IntArray
    sole_boundary_faces: IntArray
    foot_nodes: IndexRange
    sole_nodes: IndexRange
    foot_elements: IndexRange
    sole_elements: IndexRange

    @property
    def n_vertices(self) -> int:
        return int(self.vertices.shape[0])


def check_index_ranges(mesh: AssembledMesh) -> None:
    """Each block uses only its own node range; node and element ranges are disjoint."""
    problems: list[str] = []
    if not mesh.foot_nodes.contains(mesh.tet_elements):
        problems.append("foot elements reference nodes outside the foot node range")
    if not mesh.sole_nodes.contains(mesh.hex_elements):
        problems.append("sole elements reference nodes outside the sole node range")
    if mesh.foot_nodes.overlaps(mesh.sole_nodes):
        problems.append("foot and sole node ranges overlap")
    if mesh.foot_elements.overlaps(mesh.sole_elements):
        problems.append("foot and sole element ranges overlap")
    if mesh.sole_nodes.stop != mesh.n_vertices:
        problems.append(f"node ranges end at {mesh.sole_nodes.stop}, mesh has {mesh.n_vertices} vertices")
    if problems:
        raise ModelValidationError(problems, stage="assembly")


def assemble(foot: VolumeMesh, sole: HexBlock) -> AssembledMesh:
    """Stack foot and sole vertices and shift every sole index by the foot vertex count."""
    n_foot = int(foot.vertices.shape[0])
    n_sole = int(sole.vertices.shape[0])
    k_foot = int(foot.elements.shape[0])
    k_sole = int(sole.elements.shape[0])

    mesh = AssembledMesh(
        vertices=np.vstack([foot.vertices, sole.vertices]),
        tet_elements=foot.elements.copy(),
        hex_elements=sole.elements + n_foot,
        foot_boundary_faces=foot.boundary_faces.copy(),
        foot_boundary_markers=foot.boundary_markers.copy(),
        sole_top_faces=sole.top_faces + n_foot,
        sole_bottom_faces=sole.bottom_faces + n_foot,
        sole_boundary_faces=sole.boundary_faces + n_foot,
        foot_nodes=IndexRange(start=0, stop=n_foot),
        sole_nodes=IndexRange(start=n_foot, stop=n_foot + n_sole),
        foot_elements=IndexRange(start=0, stop=k_foot),
        sole_elements=IndexRange(start=k_foot, stop=k_foot + k_sole),
    )
    check_index_ranges(mesh)
    logger.info("assembled %d vertices, %d tets, %d hexes", mesh.n_vertices, k_foot, k_sole)
    return mesh
