from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .topology import FloatArray, IntArray, as_index_array, boundary_face_indices, element_to_patch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HexBlock:
    elements: IntArray
    vertices: FloatArray
    top_faces: IntArray
    bottom_faces: IntArray
    boundary_faces: IntArray


def _same_connectivity(top: IntArray, bottom: IntArray) -> bool:
    if top.shape != bottom.shape:
        return False
    return bool(np.array_equal(top, bottom) or np.array_equal(top, bottom[:, ::-1]))


def extrude_quads(
    top_faces: IntArray,
    top_vertices: FloatArray,
    bottom_faces: IntArray,
    bottom_vertices: FloatArray,
) -> HexBlock:
    """
    One hex8 per quad: `[bottom quad, top quad + n_bottom]`, bottom vertices first.

    Top quads must be counter-clockwise seen from above. The bottom surface must
    have the same vertex count and the same quads (possibly reversed).
    """
    top_faces = as_index_array(top_faces, width=4)
    bottom_faces = as_index_array(bottom_faces, width=4)
    top_vertices = np.asarray(top_vertices, dtype=np.float64).reshape(-1, 3)
    bottom_vertices = np.asarray(bottom_vertices, dtype=np.float64).reshape(-1, 3)
    if top_vertices.shape[0] != bottom_vertices.shape[0]:
        raise ValueError(
            f"top and bottom vertex counts differ ({top_vertices.shape[0]} != {bottom_vertices.shape[0]})"
        )
    if not _same_connectivity(top_faces, bottom_faces):
        raise ValueError("top and bottom surfaces do not share quad connectivity")

    n = bottom_vertices.shape[0]
    elements = np.hstack([top_faces, top_faces + n])
    vertices = np.vstack([bottom_vertices, top_vertices])
    faces, _, _ = element_to_patch(elements)
    boundary = faces[boundary_face_indices(faces)]
    logger.debug("extruded %d hex elements, %d boundary faces", elements.shape[0], boundary.shape[0])
    return HexBlock(
        elements=elements,
        vertices=vertices,
        top_faces=top_faces + n,
        bottom_faces=top_faces[:, ::-1].copy(),
        boundary_faces=boundary,
    )
