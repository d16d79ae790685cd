from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .assembly import AssembledMesh
from .errors import ModelValidationError
from .topology import FloatArray, IntArray, as_index_array, element_to_patch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContactBoundarySets:
    master_faces: IntArray
    slave_faces: IntArray
    support_nodes: IntArray
    prescribed_nodes: IntArray


def orient_away_from_tets(faces: IntArray, tets: IntArray, vertices: FloatArray) -> IntArray:
    """
    Wind every boundary triangle so its normal points away from the tet that owns it,
    i.e. out of the volume. Faces that belong to no tet raise ValueError.
    """
    faces = as_index_array(faces, width=3)
    tets = as_index_array(tets, width=4)
    tet_faces, _, owner = element_to_patch(tets)
    lookup = {tuple(sorted(f)): int(e) for f, e in zip(tet_faces.tolist(), owner.tolist())}
    try:
        owners = np.array([lookup[tuple(sorted(f))] for f in faces.tolist()], dtype=np.int64)
    except KeyError as e:
        raise ValueError(f"face {list(e.args[0])} is not a face of any tet") from e
    if owners.size == 0:
        return faces.copy()

    # the owner's fourth vertex lies on the inner side of the face
    opposite = tets[owners].sum(axis=1) - faces.sum(axis=1)
    p = vertices[faces]
    normal = np.cross(p[:, 1] - p[:, 0], p[:, 2] - p[:, 0])
    inward = np.einsum("ij,ij->i", normal, vertices[opposite] - p[:, 0]) > 0
    out = faces.copy()
    out[inward] = out[inward][:, ::-1]
    return out


def node_set_from_faces(faces: IntArray) -> IntArray:
    """Sorted unique vertex indices used by `faces`."""
    return np.unique(as_index_array(faces)).astype(np.int64)


def partition_boundary_nodes(faces: IntArray, markers: IntArray) -> dict[int, IntArray]:
    """
    Assign every boundary vertex to exactly one marker group: the smallest
    marker among the faces around it.
    """
    faces = as_index_array(faces)
    markers = np.asarray(markers, dtype=np.int64)
    if faces.shape[0] != markers.shape[0]:
        raise ValueError(f"{faces.shape[0]} faces but {markers.shape[0]} markers")
    if faces.shape[0] == 0:
        return {}

    sentinel = np.iinfo(np.int64).max
    owner = np.full(int(faces.max()) + 1, sentinel, dtype=np.int64)
    np.minimum.at(owner, faces.reshape(-1), np.repeat(markers, faces.shape[1]))
    return {int(m): np.flatnonzero(owner == m) for m in np.unique(markers)}


def annotate_contact_and_supports(
    mesh: AssembledMesh,
    *,
    contact_marker: int = 2,
    prescribed_marker: int = 1,
) -> ContactBoundarySets:
    """
    - master: insole top surface
    - slave: foot boundary faces with `contact_marker`, wound out of the foot so
      their normals oppose the master's where the foot rests on the insole
    - support: every vertex of the insole bottom
    - prescribed: every vertex of foot boundary faces with `prescribed_marker`
    """
    markers = mesh.foot_boundary_markers
    slave = orient_away_from_tets(mesh.foot_boundary_faces[markers == contact_marker], mesh.tet_elements, mesh.vertices)
    prescribed_faces = mesh.foot_boundary_faces[markers == prescribed_marker]

    support_nodes = node_set_from_faces(mesh.sole_bottom_faces)
    prescribed_nodes = node_set_from_faces(prescribed_faces)

    problems: list[str] = []
    if slave.shape[0] == 0:
        problems.append(f"no foot boundary faces carry contact marker {contact_marker}")
    if prescribed_nodes.size == 0:
        problems.append(f"no foot boundary faces carry prescribed marker {prescribed_marker}")
    if mesh.sole_top_faces.shape[0] == 0:
        problems.append("insole top surface is empty")
    common = np.intersect1d(support_nodes, prescribed_nodes)
    if common.size:
        problems.append(f"{common.size} node(s) are both supported and prescribed")
    if problems:
        raise ModelValidationError(problems, stage="boundary")

    logger.info(
        "contact: %d master / %d slave faces; %d support, %d prescribed nodes",
        mesh.sole_top_faces.shape[0],
        slave.shape[0],
        support_nodes.size,
        prescribed_nodes.size,
    )
    return ContactBoundarySets(
        master_faces=mesh.sole_top_faces.copy(),
        slave_faces=slave,
        support_nodes=support_nodes,
        prescribed_nodes=prescribed_nodes,
    )
