"""
Solver-agnostic description of an FE job.

`ModelBuilder` collects sections while the model is staged; `finalize()`
checks every named reference and index range at once and returns a frozen
`ModelDocument` (serialized by `febio_xml.write_feb`). Node and element
indices are 0-based here; the serializer writes 1-based ids.
"""

from __future__ import annotations

import logging
from typing import Annotated, Literal, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from .errors import ModelValidationError
from .types import ContactParams, IndexRange, SolverControlParams

logger = logging.getLogger(__name__)

Dof = Literal["x", "y", "z"]
ElementType = Literal["tet4", "hex8"]

_ELEMENT_WIDTH = {"tet4": 4, "hex8": 8}
_SECTION = ConfigDict(frozen=True, extra="forbid")
_ARRAY_SECTION = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)


def _readonly(a, dtype) -> np.ndarray:
    arr = np.array(a, dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


class OgdenMaterial(BaseModel):
    model_config = _SECTION

    type: Literal["Ogden"] = "Ogden"
    id: int
    name: str
    c1: float
    m1: float
    c2: float
    m2: float
    k: float
    density: float = 1.0


class OgdenUnconstrainedMaterial(BaseModel):
    model_config = _SECTION

    type: Literal["Ogden unconstrained"] = "Ogden unconstrained"
    id: int
    name: str
    c1: float
    m1: float
    c2: float
    m2: float
    cp: float
    density: float = 1.0


class NeoHookeanMaterial(BaseModel):
    model_config = _SECTION

    type: Literal["neo-Hookean"] = "neo-Hookean"
    id: int
    name: str
    E: float
    v: float
    density: float = 1.0


Material = Annotated[
    Union[OgdenMaterial, OgdenUnconstrainedMaterial, NeoHookeanMaterial],
    Field(discriminator="type"),
]


class TimeStepper(BaseModel):
    model_config = _SECTION

    dtmin: float
    dtmax: float
    max_retries: int
    opt_iter: int


class Control(BaseModel):
    model_config = _SECTION

    analysis: Literal["static", "dynamic"] = "static"
    time_steps: int
    step_size: float
    time_stepper: TimeStepper
    max_refs: int
    max_ups: int
    symmetric_stiffness: int = 0
    min_residual: float = 1e-20

    @classmethod
    def from_params(cls, params: SolverControlParams) -> "Control":
        return cls(
            time_steps=params.num_time_steps,
            step_size=params.step_size,
            time_stepper=TimeStepper(
                dtmin=params.dtmin,
                dtmax=params.dtmax,
                max_retries=params.max_retries,
                opt_iter=params.opt_iter,
            ),
            max_refs=params.max_refs,
            max_ups=params.max_ups,
            symmetric_stiffness=params.symmetric_stiffness,
            min_residual=params.min_residual,
        )


class ElementSet(BaseModel):
    model_config = _ARRAY_SECTION

    name: str
    element_type: ElementType
    material_id: int
    elements: np.ndarray
    first_index: int

    @property
    def index_range(self) -> IndexRange:
        return IndexRange(start=self.first_index, stop=self.first_index + int(self.elements.shape[0]))


class NodeSet(BaseModel):
    model_config = _ARRAY_SECTION

    name: str
    nodes: np.ndarray


class Surface(BaseModel):
    model_config = _ARRAY_SECTION

    name: str
    faces: np.ndarray


class SurfacePair(BaseModel):
    model_config = _SECTION

    name: str
    master: str
    slave: str


class FixedBC(BaseModel):
    model_config = _SECTION

    node_set: str
    dofs: tuple[Dof, ...]


class PrescribedBC(BaseModel):
    model_config = _SECTION

    node_set: str
    dof: Dof
    load_curve: int
    value: float
    scale: float = 1.0
    relative: bool = True


class SlidingElasticContact(BaseModel):
    model_config = _SECTION

    type: Literal["sliding-elastic"] = "sliding-elastic"
    surface_pair: str
    two_pass: int = 1
    laugon: int = 0
    tolerance: float = 0.2
    gaptol: float = 0.0
    minaug: int = 1
    maxaug: int = 10
    search_tol: float = 0.01
    search_radius: float = 0.1
    symmetric_stiffness: int = 0
    auto_penalty: int = 1
    penalty: float = 20.0
    fric_coeff: float = 0.25

    @classmethod
    def from_params(cls, surface_pair: str, params: ContactParams) -> "SlidingElasticContact":
        return cls(surface_pair=surface_pair, **params.model_dump())


class LoadCurve(BaseModel):
    model_config = _SECTION

    id: int
    type: Literal["linear", "smooth", "step"] = "linear"
    points: tuple[tuple[float, float], ...]


class Step(BaseModel):
    model_config = _SECTION

    id: int
    control: Control
    prescribed: tuple[PrescribedBC, ...] = ()


class OutputRequest(BaseModel):
    """One logfile channel: `data` fields of the entities in `target`, one row each."""

    model_config = _SECTION

    kind: Literal["node_data", "element_data"]
    file: str
    data: str
    target: IndexRange
    delim: str = ","

    @property
    def fields(self) -> list[str]:
        return [f for f in self.data.split(";") if f]


class ModelDocument(BaseModel):
    model_config = _ARRAY_SECTION

    version: str = "2.5"
    module: Literal["solid"] = "solid"
    control: Control | None = None
    materials: tuple[Material, ...]
    nodes: np.ndarray
    element_sets: tuple[ElementSet, ...]
    node_sets: tuple[NodeSet, ...] = ()
    surfaces: tuple[Surface, ...] = ()
    surface_pairs: tuple[SurfacePair, ...] = ()
    fixed: tuple[FixedBC, ...] = ()
    prescribed: tuple[PrescribedBC, ...] = ()
    contacts: tuple[SlidingElasticContact, ...] = ()
    load_curves: tuple[LoadCurve, ...] = ()
    steps: tuple[Step, ...] = ()
    log_file: str | None = None
    outputs: tuple[OutputRequest, ...] = ()

    @property
    def n_nodes(self) -> int:
        return int(self.nodes.shape[0])

    @property
    def n_elements(self) -> int:
        return sum(int(s.elements.shape[0]) for s in self.element_sets)

    def element_set(self, name: str) -> ElementSet:
        for s in self.element_sets:
            if s.name == name:
                return s
        raise KeyError(name)

    def node_set(self, name: str) -> NodeSet:
        for s in self.node_sets:
            if s.name == name:
                return s
        raise KeyError(name)

    def output(self, file: str) -> OutputRequest:
        for o in self.outputs:
            if o.file == file:
                return o
        raise KeyError(file)


class ModelBuilder:
    """Mutable staging area for a `ModelDocument`."""

    def __init__(self) -> None:
        self.control: Control | None = None
        self.materials: list[Material] = []
        self.nodes: np.ndarray | None = None
        self.element_sets: list[ElementSet] = []
        self.node_sets: list[NodeSet] = []
        self.surfaces: list[Surface] = []
        self.surface_pairs: list[SurfacePair] = []
        self.fixed: list[FixedBC] = []
        self.prescribed: list[PrescribedBC] = []
        self.contacts: list[SlidingElasticContact] = []
        self.load_curves: list[LoadCurve] = []
        self.steps: list[Step] = []
        self.log_file: str | None = None
        self.outputs: list[OutputRequest] = []
        self._n_elements = 0

    def set_control(self, control: Control) -> "ModelBuilder":
        self.control = control
        return self

    def add_material(self, material: Material) -> "ModelBuilder":
        self.materials.append(material)
        return self

    def set_nodes(self, vertices) -> "ModelBuilder":
        self.nodes = _readonly(vertices, np.float64).reshape(-1, 3)
        return self

    def add_element_set(self, name: str, element_type: ElementType, material_id: int, elements) -> IndexRange:
        """Append an element block; returns its 0-based global element index range."""
        arr = _readonly(elements, np.int64)
        if arr.ndim != 2:
            arr = _readonly(arr.reshape(-1, _ELEMENT_WIDTH[element_type]), np.int64)
        block = ElementSet(
            name=name,
            element_type=element_type,
            material_id=material_id,
            elements=arr,
            first_index=self._n_elements,
        )
        self.element_sets.append(block)
        self._n_elements += int(arr.shape[0])
        return block.index_range

    def add_node_set(self, name: str, nodes) -> "ModelBuilder":
        self.node_sets.append(NodeSet(name=name, nodes=_readonly(np.unique(np.asarray(nodes, dtype=np.int64)), np.int64)))
        return self

    def add_surface(self, name: str, faces) -> "ModelBuilder":
        self.surfaces.append(Surface(name=name, faces=_readonly(faces, np.int64)))
        return self

    def add_surface_pair(self, name: str, *, master: str, slave: str) -> "ModelBuilder":
        self.surface_pairs.append(SurfacePair(name=name, master=master, slave=slave))
        return self

    def add_fixed(self, node_set: str, dofs: tuple[Dof, ...]) -> "ModelBuilder":
        self.fixed.append(FixedBC(node_set=node_set, dofs=tuple(dofs)))
        return self

    def add_prescribed(
        self,
        node_set: str,
        dof: Dof,
        value: float,
        *,
        load_curve: int = 1,
        scale: float = 1.0,
        relative: bool = True,
        step: int | None = None,
    ) -> "ModelBuilder":
        """Prescribed displacement; with `step` it goes into that step's Boundary section."""
        bc = PrescribedBC(node_set=node_set, dof=dof, load_curve=load_curve, value=value, scale=scale, relative=relative)
        if step is None:
            self.prescribed.append(bc)
            return self
        for i, s in enumerate(self.steps):
            if s.id == step:
                self.steps[i] = s.model_copy(update={"prescribed": s.prescribed + (bc,)})
                return self
        raise KeyError(f"unknown step {step}")

    def add_contact(self, contact: SlidingElasticContact) -> "ModelBuilder":
        self.contacts.append(contact)
        return self

    def add_load_curve(self, curve_id: int, points, *, curve_type: str = "linear") -> "ModelBuilder":
        pts = tuple((float(t), float(v)) for t, v in points)
        self.load_curves.append(LoadCurve(id=curve_id, type=curve_type, points=pts))
        return self

    def add_step(self, control: Control) -> int:
        step_id = len(self.steps) + 1
        self.steps.append(Step(id=step_id, control=control))
        return step_id

    def set_log_file(self, file: str) -> "ModelBuilder":
        self.log_file = file
        return self

    def add_output(self, kind: str, file: str, data: str, target: IndexRange, *, delim: str = ",") -> "ModelBuilder":
        self.outputs.append(OutputRequest(kind=kind, file=file, data=data, target=target, delim=delim))
        return self

    def _problems(self) -> list[str]:
        problems: list[str] = []
        n_nodes = 0 if self.nodes is None else int(self.nodes.shape[0])
        if n_nodes == 0:
            problems.append("model has no nodes")
        if self.control is None and not self.steps:
            problems.append("model has neither a Control section nor steps")

        def duplicates(kind: str, names: list) -> None:
            seen: set = set()
            for name in names:
                if name in seen:
                    problems.append(f"duplicate {kind} {name!r}")
                seen.add(name)

        duplicates("material id", [m.id for m in self.materials])
        duplicates("element set", [s.name for s in self.element_sets])
        duplicates("node set", [s.name for s in self.node_sets])
        duplicates("surface", [s.name for s in self.surfaces])
        duplicates("surface pair", [p.name for p in self.surface_pairs])
        duplicates("load curve", [c.id for c in self.load_curves])
        duplicates("output file", [o.file for o in self.outputs])

        material_ids = {m.id for m in self.materials}
        node_sets = {s.name for s in self.node_sets}
        surfaces = {s.name for s in self.surfaces}
        pairs = {p.name for p in self.surface_pairs}
        curves = {c.id for c in self.load_curves}

        def in_range(arr: np.ndarray) -> bool:
            return arr.size == 0 or (int(arr.min()) >= 0 and int(arr.max()) < n_nodes)

        if not self.element_sets:
            problems.append("model has no elements")
        for s in self.element_sets:
            if s.material_id not in material_ids:
                problems.append(f"element set {s.name!r} references unknown material {s.material_id}")
            if s.elements.shape[1] != _ELEMENT_WIDTH[s.element_type]:
                problems.append(f"element set {s.name!r} has {s.elements.shape[1]} nodes per {s.element_type}")
            if s.elements.shape[0] == 0:
                problems.append(f"element set {s.name!r} is empty")
            if not in_range(s.elements):
                problems.append(f"element set {s.name!r} references nodes outside 0..{n_nodes - 1}")
        for s in self.node_sets:
            if s.nodes.size == 0:
                problems.append(f"node set {s.name!r} is empty")
            if not in_range(s.nodes):
                problems.append(f"node set {s.name!r} references nodes outside 0..{n_nodes - 1}")
        for s in self.surfaces:
            if s.faces.ndim != 2 or s.faces.shape[1] not in (3, 4):
                problems.append(f"surface {s.name!r} must hold tri3 or quad4 faces")
            elif s.faces.shape[0] == 0:
                problems.append(f"surface {s.name!r} is empty")
            if not in_range(s.faces):
                problems.append(f"surface {s.name!r} references nodes outside 0..{n_nodes - 1}")
        for p in self.surface_pairs:
            for role, name in (("master", p.master), ("slave", p.slave)):
                if name not in surfaces:
                    problems.append(f"surface pair {p.name!r} references unknown {role} surface {name!r}")
        for bc in self.fixed:
            if bc.node_set not in node_sets:
                problems.append(f"fixed BC references unknown node set {bc.node_set!r}")

        def check_prescribed(bc: PrescribedBC, where: str) -> None:
            if bc.node_set not in node_sets:
                problems.append(f"prescribed BC{where} references unknown node set {bc.node_set!r}")
            if bc.load_curve not in curves:
                problems.append(f"prescribed BC{where} references unknown load curve {bc.load_curve}")

        for bc in self.prescribed:
            check_prescribed(bc, "")
        for step in self.steps:
            for bc in step.prescribed:
                check_prescribed(bc, f" in step {step.id}")
        for c in self.contacts:
            if c.surface_pair not in pairs:
                problems.append(f"contact references unknown surface pair {c.surface_pair!r}")
        for c in self.load_curves:
            times = [t for t, _ in c.points]
            if len(times) < 2 or any(b <= a for a, b in zip(times, times[1:])):
                problems.append(f"load curve {c.id} needs at least two points with increasing time")
        for o in self.outputs:
            limit = n_nodes if o.kind == "node_data" else self._n_elements
            if o.target.stop > limit or len(o.target) == 0:
                problems.append(f"output {o.file!r} targets {o.kind} {o.target.start}..{o.target.stop} of {limit}")
            if not o.fields:
                problems.append(f"output {o.file!r} requests no fields")
        if self.outputs and not self.log_file:
            problems.append("output channels need a log file")
        return problems

    def finalize(self) -> ModelDocument:
        problems = self._problems()
        if problems:
            for p in problems:
                logger.error("model check: %s", p)
            raise ModelValidationError(problems, stage="model")
        return ModelDocument(
            control=self.control,
            materials=tuple(self.materials),
            nodes=self.nodes,
            element_sets=tuple(self.element_sets),
            node_sets=tuple(self.node_sets),
            surfaces=tuple(self.surfaces),
            surface_pairs=tuple(self.surface_pairs),
            fixed=tuple(self.fixed),
            prescribed=tuple(self.prescribed),
            contacts=tuple(self.contacts),
            load_curves=tuple(self.load_curves),
            steps=tuple(self.steps),
            log_file=self.log_file,
            outputs=tuple(self.outputs),
        )
