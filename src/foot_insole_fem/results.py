"""
Read FEBio logfile data channels back onto the model numbering.

A channel file is a sequence of blocks:

    *Step  = 1
    *Time  = 0.1
    *Data  = ux;uy;uz
    1,0.0,0.0,-0.3
    2,...

one row per entity (1-based id first). Parsed series are stored as
`values[entity, field, step]` with a synthetic all-zero step 0 prepended.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from numpy.typing import NDArray

from .errors import ResultParseError
from .model import ModelDocument, OutputRequest
from .topology import FloatArray, IntArray, boundary_face_indices, element_to_patch, face_to_vertex_measure
from .types import ReportStatus

logger = logging.getLogger(__name__)

_HEADER_RE = re.compile(r"^\*?\s*(Step|Time|Data)\s*=\s*(.*?)\s*$")

# Relative slack when comparing the last logged time against the analysis end time.
_TIME_RTOL = 1e-6


def _readonly(a: NDArray) -> NDArray:
    a = np.ascontiguousarray(a)
    a.setflags(write=False)
    return a


@dataclass(frozen=True)
class TimeSeries:
    fields: tuple[str, ...]
    entity_ids: IntArray
    time: FloatArray
    values: FloatArray
    truncated: bool = False

    @property
    def n_steps(self) -> int:
        """Logged steps, not counting the synthetic step 0."""
        return int(self.time.shape[0]) - 1

    def field(self, name: str) -> FloatArray:
        """`(n_entities, T + 1)` history of one field."""
        return self.values[:, self.fields.index(name), :]


@dataclass
class _RawBlock:
    step: str
    time: str | None = None
    data: str | None = None
    rows: list[str] | None = None


def _split_blocks(text: str) -> list[_RawBlock]:
    """Group lines under their *Step header; other `*` lines and leading rows are skipped."""
    blocks: list[_RawBlock] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        m = _HEADER_RE.match(line)
        if m:
            key, value = m.group(1), m.group(2)
            if key == "Step":
                blocks.append(_RawBlock(step=value, rows=[]))
            elif not blocks:
                continue
            elif key == "Time":
                blocks[-1].time = value
            else:
                blocks[-1].data = value
            continue
        if line.startswith("*") or not blocks:
            continue
        blocks[-1].rows.append(line)
    return blocks


def _parse_rows(rows: list[str], delim: str, width: int) -> NDArray | None:
    out = np.empty((len(rows), width), dtype=np.float64)
    for i, row in enumerate(rows):
        parts = row.split() if delim.isspace() else [p.strip() for p in row.split(delim)]
        if len(parts) != width:
            return None
        try:
            out[i] = [float(p) for p in parts]
        except ValueError:
            return None
    return out


def parse_logfile_data(
    text: str,
    *,
    delim: str = ",",
    n_entities: int | None = None,
    entity_ids=None,
    strict: bool = False,
    source: str = "<text>",
) -> TimeSeries:
    """
    Parse one channel. The first malformed block (bad header, wrong field list,
    wrong row or column count, non-numeric value, ids out of order) ends the
    series: earlier blocks are kept and `truncated` is set, or
    `ResultParseError` is raised when `strict`.
    """
    blocks = _split_blocks(text)
    expected_ids = None if entity_ids is None else np.asarray(entity_ids, dtype=np.int64)
    if expected_ids is not None and n_entities is None:
        n_entities = int(expected_ids.shape[0])

    fields: tuple[str, ...] | None = None
    times: list[float] = []
    frames: list[NDArray] = []
    problem: str | None = None

    for block in blocks:
        if block.time is None or block.data is None:
            problem = f"step {block.step}: missing *Time or *Data header"
            break
        try:
            t = float(block.time)
        except ValueError:
            problem = f"step {block.step}: non-numeric time {block.time!r}"
            break
        block_fields = tuple(f for f in block.data.split(";") if f)
        if fields is None:
            fields = block_fields
        elif block_fields != fields:
            problem = f"step {block.step}: fields {block_fields} differ from {fields}"
            break
        if n_entities is None:
            n_entities = len(block.rows)
        if len(block.rows) != n_entities:
            problem = f"step {block.step}: {len(block.rows)} rows, expected {n_entities}"
            break
        table = _parse_rows(block.rows, delim, 1 + len(fields))
        if table is None:
            problem = f"step {block.step}: malformed data row"
            break
        ids = table[:, 0].astype(np.int64)
        if expected_ids is None:
            expected_ids = ids
        elif not np.array_equal(ids, expected_ids):
            problem = f"step {block.step}: entity ids do not match the requested range"
            break
        times.append(t)
        frames.append(table[:, 1:])

    if problem is not None:
        if strict:
            raise ResultParseError(f"{source}: {problem}", stage="results")
        logger.warning("%s: %s; keeping %d step(s)", source, problem, len(frames))

    fields = fields or ()
    n = int(n_entities or 0)
    values = np.zeros((n, len(fields), len(frames) + 1), dtype=np.float64)
    for k, frame in enumerate(frames, start=1):
        values[:, :, k] = frame
    if expected_ids is None:
        expected_ids = np.zeros(0, dtype=np.int64)
    return TimeSeries(
        fields=fields,
        entity_ids=_readonly(np.array(expected_ids, dtype=np.int64)),
        time=_readonly(np.asarray([0.0] + times, dtype=np.float64)),
        values=_readonly(values),
        truncated=problem is not None,
    )


def read_channel(path: Path, output: OutputRequest, *, strict: bool = False) -> TimeSeries:
    """Read the channel written for `output`; ids must match its target range."""
    if not path.exists():
        raise ResultParseError(f"channel file not found: {path}", stage="results")
    text = path.read_text(encoding="utf-8", errors="ignore")
    ids = np.arange(output.target.start + 1, output.target.stop + 1, dtype=np.int64)
    series = parse_logfile_data(text, delim=output.delim, entity_ids=ids, strict=strict, source=path.name)
    if series.n_steps and series.fields != tuple(output.fields):
        raise ResultParseError(f"{path.name}: fields {series.fields} differ from requested {output.fields}", stage="results")
    return series


def analysis_end_time(doc: ModelDocument) -> float:
    """Total analysis time: the main Control plus every Step."""
    controls = ([doc.control] if doc.control is not None else []) + [s.control for s in doc.steps]
    return float(sum(c.time_steps * c.step_size for c in controls))


def series_status(series: TimeSeries, *, end_time: float) -> ReportStatus:
    if series.n_steps == 0:
        return "failed"
    if series.truncated or series.time[-1] < end_time * (1.0 - _TIME_RTOL):
        return "incomplete"
    return "success"


@dataclass(frozen=True)
class ResultSet:
    channels: dict[str, TimeSeries]
    status: ReportStatus
    end_time: float
    missing: tuple[str, ...] = ()

    @property
    def n_steps(self) -> int:
        """Steps present in every channel."""
        if not self.channels:
            return 0
        return min(s.n_steps for s in self.channels.values())


def load_results(doc: ModelDocument, work_dir: Path, *, strict: bool = False) -> ResultSet:
    """Read every output channel of `doc` from `work_dir`."""
    end_time = analysis_end_time(doc)
    channels: dict[str, TimeSeries] = {}
    missing: list[str] = []
    for output in doc.outputs:
        path = work_dir / output.file
        try:
            channels[output.file] = read_channel(path, output, strict=strict)
        except ResultParseError:
            if strict:
                raise
            logger.warning("channel %s unavailable", output.file)
            missing.append(output.file)

    statuses = [series_status(s, end_time=end_time) for s in channels.values()]
    if not channels or all(s == "failed" for s in statuses):
        status: ReportStatus = "failed"
    elif missing or any(s != "success" for s in statuses):
        status = "incomplete"
    else:
        status = "success"
    return ResultSet(channels=channels, status=status, end_time=end_time, missing=tuple(missing))


def deformed_positions(vertices: FloatArray, displacement: TimeSeries) -> FloatArray:
    """`(N, 3, T + 1)` positions; step 0 is the reference configuration."""
    vertices = np.asarray(vertices, dtype=np.float64)
    if displacement.values.shape[:2] != (vertices.shape[0], 3):
        raise ValueError(
            f"displacement shape {displacement.values.shape[:2]} does not match {vertices.shape[0]} vertices"
        )
    return _readonly(vertices[:, :, None] + displacement.values)


def element_boundary_vertex_measure(elements: IntArray, element_values: NDArray, n_vertices: int) -> FloatArray:
    """
    Push per-element values (e.g. strain energy density) to the vertices of the
    element block's boundary: element -> its boundary faces -> face-to-vertex mean.
    Interior vertices get 0.
    """
    faces, face_values, _ = element_to_patch(elements, element_values)
    keep = boundary_face_indices(faces)
    return face_to_vertex_measure(faces[keep], n_vertices, face_values[keep])


def save_npz(path: Path, result: ResultSet, *, vertices: FloatArray | None = None) -> Path:
    """Compressed archive: `<channel>__values`, `<channel>__time`, `<channel>__ids` per channel."""
    arrays: dict[str, NDArray] = {}
    for name, series in result.channels.items():
        key = Path(name).stem
        arrays[f"{key}__values"] = series.values
        arrays[f"{key}__time"] = series.time
        arrays[f"{key}__ids"] = series.entity_ids
    if vertices is not None:
        arrays["vertices"] = np.asarray(vertices, dtype=np.float64)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(path, **arrays)
    return path


def export_vtu(
    path: Path,
    *,
    vertices: FloatArray,
    tets: IntArray | None = None,
    hexes: IntArray | None = None,
    point_data: dict[str, NDArray] | None = None,
    cell_data: dict[str, NDArray] | None = None,
) -> Path:
    """Unstructured grid with tet cells first, then hex cells."""
    import pyvista as pv

    blocks = []
    types = []
    for elements, n_corner, cell_type in ((tets, 4, pv.CellType.TETRA), (hexes, 8, pv.CellType.HEXAHEDRON)):
        if elements is None or len(elements) == 0:
            continue
        elements = np.asarray(elements, dtype=np.int64).reshape(-1, n_corner)
        blocks.append(np.hstack([np.full((elements.shape[0], 1), n_corner, dtype=np.int64), elements]).ravel())
        types.append(np.full(elements.shape[0], cell_type, dtype=np.uint8))
    if not blocks:
        raise ValueError("export_vtu needs at least one tet or hex element")

    grid = pv.UnstructuredGrid(np.concatenate(blocks), np.concatenate(types), np.asarray(vertices, dtype=np.float64))
    for name, arr in (point_data or {}).items():
        grid.point_data[name] = np.asarray(arr)
    for name, arr in (cell_data or {}).items():
        grid.cell_data[name] = np.asarray(arr)
    path.parent.mkdir(parents=True, exist_ok=True)
    grid.save(str(path))
    return path
