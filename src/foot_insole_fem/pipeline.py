from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar

import numpy as np

from .assembly import AssembledMesh, assemble
from .boundary import ContactBoundarySets, annotate_contact_and_supports
from .case_id import compute_case_id
from .config import PIPELINE_VERSION
from .cube import build_cube_model
from .errors import ArtifactWriteError, PipelineError
from .extrusion import extrude_quads
from .febio_xml import write_feb
from .fem import JobRunResult, _write_json, run_job
from .insole import build_insole
from .joining import join_element_sets, merge_vertices
from .meshing import Mesher, build_request, generate_volume_mesh, run_tetgen
from .model import (
    Control,
    ModelBuilder,
    ModelDocument,
    OgdenMaterial,
    OgdenUnconstrainedMaterial,
    SlidingElasticContact,
)
from .results import ResultSet, deformed_positions, element_boundary_vertex_measure, export_vtu, load_results, save_npz
from .surfaces import export_surface, load_surface, mean_edge_length, orient_faces_outward, reorient
from .topology import FloatArray, IntArray
from .trimming import trim_and_cap
from .types import CubeParams, IndexRange, InsoleParams, PipelineParams, ReportStatus, RunMode, RunSettings, StepReport

logger = logging.getLogger(__name__)

T = TypeVar("T")

DISP_FILE = "disp_out.txt"
FORCE_FILE = "force_out.txt"
ENERGY_FILE = "energy_out.txt"


@dataclass(frozen=True)
class CaseArtifacts:
    case_dir: Path
    foot_shell_stl: Path
    feb: Path
    febio_log: Path
    mesh_vtu: Path
    results_npz: Path
    results_vtu: Path
    report_json: Path

    def existing(self) -> list[str]:
        return [str(p) for k, p in self.__dict__.items() if k != "case_dir" and Path(p).exists()]


def get_case_artifacts(*, case_dir: Path, job_name: str) -> CaseArtifacts:
    return CaseArtifacts(
        case_dir=case_dir,
        foot_shell_stl=case_dir / "foot_shell.stl",
        feb=case_dir / f"{job_name}.feb",
        febio_log=case_dir / f"{job_name}.log",
        mesh_vtu=case_dir / "mesh.vtu",
        results_npz=case_dir / "results.npz",
        results_vtu=case_dir / "results.vtu",
        report_json=case_dir / "report.json",
    )


@dataclass(frozen=True)
class FootShell:
    faces: IntArray
    vertices: FloatArray
    markers: IntArray
    spacing: float
    cut_level: float


def _timed(stages: dict[str, StepReport], name: str, fn: Callable[..., T], *args, **kwargs) -> T:
    start = time.perf_counter()
    try:
        out = fn(*args, **kwargs)
    except PipelineError as e:
        stages[name] = StepReport(
            status="failed",
            failure_reason=str(e),
            stage=e.stage or name,
            category=e.category,
            elapsed_ms=int((time.perf_counter() - start) * 1000),
        )
        raise
    stages[name] = StepReport(status="success", stage=name, elapsed_ms=int((time.perf_counter() - start) * 1000))
    return out


def _write_artifact(fn: Callable[..., T], *args, **kwargs) -> T:
    """Run a file writer; file system errors and a missing export package become ArtifactWriteError."""
    try:
        return fn(*args, **kwargs)
    except OSError as e:
        raise ArtifactWriteError(f"artifact write error: {e}", stage="export") from e
    except ImportError as e:
        raise ArtifactWriteError(f"artifact export unavailable: {e}", stage="export") from e


def prepare_foot_shell(bone_path: Path, skin_path: Path, params: InsoleParams) -> FootShell:
    """
    Bones + skin -> one closed, merged shell:
    - both surfaces scaled, reoriented and wound outward
    - skin cut just above the bones and capped
    - faces marked bone / skin / cap
    """
    bone_f, bone_v = load_surface(bone_path, scale=params.bone_scale, rel_tol=params.merge_rel_tol)
    skin_f, skin_v = load_surface(skin_path, scale=params.skin_scale, rel_tol=params.merge_rel_tol)
    bone_v = reorient(bone_v, params.reorient_euler_rad)
    skin_v = reorient(skin_v, params.reorient_euler_rad)
    bone_f = orient_faces_outward(bone_f, bone_v)
    skin_f = orient_faces_outward(skin_f, skin_v)

    spacing = mean_edge_length(skin_f, skin_v)
    cut_level = float(bone_v[:, 2].max() + params.cut_margin_factor * spacing)
    trim = trim_and_cap(
        skin_f,
        skin_v,
        threshold=cut_level,
        axis=2,
        keep="below",
        angle_threshold_deg=params.angle_threshold_deg,
        sharp_fix_iterations=params.sharp_fix_iterations,
        spacing=spacing,
    )
    faces, vertices, markers = join_element_sets(
        [(bone_f, bone_v), (trim.faces, trim.vertices), (trim.cap_faces, trim.cap_vertices)],
        [params.bone_marker, params.skin_marker, params.cap_marker],
    )
    faces, vertices, _ = merge_vertices(faces, vertices, params.merge_rel_tol)
    logger.info("foot shell: %d faces, %d vertices, spacing %.4g, cut at %.4g", faces.shape[0], vertices.shape[0], spacing, cut_level)
    return FootShell(faces=faces, vertices=vertices, markers=markers, spacing=spacing, cut_level=cut_level)


def build_foot_insole_mesh(
    shell: FootShell, params: InsoleParams, *, mesher: Mesher = run_tetgen
) -> tuple[AssembledMesh, ContactBoundarySets]:
    request = build_request(
        shell.faces,
        shell.vertices,
        shell.markers,
        domain_markers=(params.skin_marker, params.cap_marker),
        cavity_markers=(params.bone_marker,),
        volume_factor=params.volume_factor,
        options=params.tetgen_options,
    )
    foot = generate_volume_mesh(request, mesher)

    outer = foot.boundary_faces[foot.boundary_markers != params.bone_marker]
    insole = build_insole(outer, foot.vertices, spacing=shell.spacing, params=params)
    sole = extrude_quads(insole.top_faces, insole.top_vertices, insole.bottom_faces, insole.bottom_vertices)

    mesh = assemble(foot, sole)
    sets = annotate_contact_and_supports(mesh, contact_marker=params.skin_marker, prescribed_marker=params.bone_marker)
    return mesh, sets


def build_foot_model(
    mesh: AssembledMesh, sets: ContactBoundarySets, params: PipelineParams, *, log_file: str
) -> ModelDocument:
    """Foot (Ogden tets) pushed down onto the insole (Ogden unconstrained hexes) resting on a fixed floor."""
    m = params.materials
    b = ModelBuilder()
    b.set_control(Control.from_params(params.control))
    b.add_material(OgdenMaterial(id=1, name="Foot", c1=m.foot_c1, m1=m.foot_m1, c2=m.foot_c1, m2=-m.foot_m1, k=m.foot_k))
    b.add_material(
        OgdenUnconstrainedMaterial(id=2, name="Sole", c1=m.sole_c1, m1=m.sole_m1, c2=m.sole_c1, m2=-m.sole_m1, cp=m.sole_cp)
    )
    b.set_nodes(mesh.vertices)
    foot_elements = b.add_element_set("Foot", "tet4", 1, mesh.tet_elements)
    b.add_element_set("Sole", "hex8", 2, mesh.hex_elements)

    b.add_node_set("bcSupportList", sets.support_nodes)
    b.add_node_set("bcPrescribeList", sets.prescribed_nodes)
    b.add_surface("contact_master", sets.master_faces)
    b.add_surface("contact_slave", sets.slave_faces)
    b.add_surface_pair("Contact1", master="contact_master", slave="contact_slave")

    b.add_fixed("bcSupportList", ("x", "y", "z"))
    b.add_fixed("bcPrescribeList", ("x", "y"))
    b.add_load_curve(1, [(0.0, 0.0), (1.0, 1.0)])
    b.add_prescribed("bcPrescribeList", "z", params.load.displacement_magnitude, load_curve=1)
    b.add_contact(SlidingElasticContact.from_params("Contact1", params.contact))

    nodes = IndexRange(start=0, stop=mesh.n_vertices)
    b.set_log_file(log_file)
    b.add_output("node_data", DISP_FILE, "ux;uy;uz", nodes)
    b.add_output("node_data", FORCE_FILE, "Rx;Ry;Rz", nodes)
    b.add_output("element_data", ENERGY_FILE, "sed", foot_elements)
    return b.finalize()


def _export_model(doc: ModelDocument, mesh: AssembledMesh, artifacts: CaseArtifacts) -> None:
    _write_artifact(write_feb, doc, artifacts.feb)
    _write_artifact(
        export_vtu,
        artifacts.mesh_vtu,
        vertices=mesh.vertices,
        tets=mesh.tet_elements,
        hexes=mesh.hex_elements,
        cell_data={"part": np.r_[np.full(len(mesh.foot_elements), 1), np.full(len(mesh.sole_elements), 2)]},
    )


def _solve_status(job: JobRunResult) -> ReportStatus:
    if job.ok:
        return "success"
    if job.status in ("timeout", "partial"):
        return "incomplete"
    return "failed"


def _solve_and_reconstruct(
    doc: ModelDocument,
    *,
    artifacts: CaseArtifacts,
    stages: dict[str, StepReport],
    tets: IntArray | None,
    hexes: IntArray | None,
    run_mode: RunMode,
    max_total_wait: float,
    febio_bin: str | None,
    command: list[str] | None,
) -> tuple[ReportStatus, dict[str, Any]]:
    settings = RunSettings(
        run_filename=artifacts.feb,
        run_logname=artifacts.febio_log,
        run_mode=run_mode,
        max_total_wait=max_total_wait,
    )
    job = run_job(settings, febio_bin=febio_bin, command=command)
    stages["solve"] = StepReport(
        status=_solve_status(job),
        failure_reason=job.failure_reason,
        stage="solve",
        category="solver_timeout" if job.status == "timeout" else None,
        elapsed_ms=job.elapsed_ms,
        stdout_tail=job.stdout_tail or None,
        stats={"job_status": job.status, "converged_steps": job.converged_steps, "returncode": job.returncode},
    )

    start = time.perf_counter()
    results: ResultSet = load_results(doc, artifacts.case_dir)
    stats: dict[str, Any] = {"n_steps": results.n_steps, "end_time": results.end_time, "missing_channels": list(results.missing)}
    if results.status != "failed":
        vertices = np.asarray(doc.nodes)
        point_data: dict[str, np.ndarray] = {}
        deformed = None
        disp = results.channels.get(DISP_FILE)
        if disp is not None and disp.n_steps:
            deformed = deformed_positions(vertices, disp)
            point_data["displacement"] = disp.values[:, :, -1]
        energy = results.channels.get(ENERGY_FILE)
        if energy is not None and energy.n_steps and tets is not None:
            point_data["sed"] = element_boundary_vertex_measure(tets, energy.values[:, 0, -1], vertices.shape[0])
        try:
            _write_artifact(save_npz, artifacts.results_npz, results, vertices=vertices)
            _write_artifact(
                export_vtu,
                artifacts.results_vtu,
                vertices=deformed[:, :, -1] if deformed is not None else vertices,
                tets=tets,
                hexes=hexes,
                point_data=point_data,
            )
        except ArtifactWriteError as e:
            stages["results"] = StepReport(
                status="failed",
                failure_reason=str(e),
                stage=e.stage,
                category=e.category,
                elapsed_ms=int((time.perf_counter() - start) * 1000),
                stats=stats,
            )
            return "failed", stats
    stages["results"] = StepReport(
        status=results.status,
        failure_reason=None if results.status == "success" else f"results {results.status}",
        stage="results",
        elapsed_ms=int((time.perf_counter() - start) * 1000),
        stats=stats,
    )

    if results.status == "failed":
        return "failed", stats
    if job.ok and results.status == "success":
        return "success", stats
    return "incomplete", stats


def _finish(
    *,
    artifacts: CaseArtifacts,
    status: ReportStatus,
    start: float,
    stages: dict[str, StepReport],
    extra: dict[str, Any],
    error: PipelineError | None = None,
    failure_reason: str | None = None,
) -> tuple[bool, dict[str, Any], CaseArtifacts]:
    report = {
        "status": status,
        "failure_reason": str(error) if error is not None else failure_reason,
        "stage": error.stage if error is not None else None,
        "category": error.category if error is not None else None,
        "elapsed_ms": int((time.perf_counter() - start) * 1000),
        "created_at": StepReport.now_iso(),
        "pipeline_version": PIPELINE_VERSION,
        "stages": {k: v.model_dump(mode="json") for k, v in stages.items()},
        "artifacts": artifacts.existing(),
        **extra,
    }
    _write_json(artifacts.report_json, report)
    report["artifacts"] = artifacts.existing()
    return status == "success", report, artifacts


def run_insole_case(
    *,
    bone_path: Path,
    skin_path: Path,
    out_dir: Path,
    params: PipelineParams | None = None,
    mesher: Mesher = run_tetgen,
    run_solver: bool = True,
    run_mode: RunMode = "external",
    max_total_wait: float = 1e99,
    febio_bin: str | None = None,
    command: list[str] | None = None,
) -> tuple[bool, dict[str, Any], CaseArtifacts]:
    """
    Foot + insole case, written to `out_dir/<case_id>/`:
    - foot_shell.stl, mesh.vtu
    - foot_insole.feb and, when solved, the FEBio log and data channels
    - results.npz, results.vtu
    - report.json

    Returns (ok, report, artifacts). Geometry and model errors stop the case
    before the solver runs; a solver that stops early yields status "incomplete".
    """
    start = time.perf_counter()
    params = params or PipelineParams()
    case_id = compute_case_id(params=params, surface_paths=[bone_path, skin_path], pipeline_version=PIPELINE_VERSION)
    artifacts = get_case_artifacts(case_dir=out_dir / case_id, job_name="foot_insole")
    artifacts.case_dir.mkdir(parents=True, exist_ok=True)
    stages: dict[str, StepReport] = {}
    extra: dict[str, Any] = {"case_id": case_id, "params": params.model_dump(mode="json")}
    logger.info("case %s -> %s", case_id, artifacts.case_dir)

    try:
        shell = _timed(stages, "shell", prepare_foot_shell, bone_path, skin_path, params.insole)
        _write_artifact(export_surface, artifacts.foot_shell_stl, shell.faces, shell.vertices)
        mesh, sets = _timed(stages, "mesh", build_foot_insole_mesh, shell, params.insole, mesher=mesher)
        doc = _timed(stages, "model", build_foot_model, mesh, sets, params, log_file=artifacts.febio_log.name)
        _timed(stages, "export", _export_model, doc, mesh, artifacts)
    except PipelineError as e:
        logger.error("case %s failed at %s: %s", case_id, e.stage, e)
        return _finish(artifacts=artifacts, status="failed", start=start, stages=stages, extra=extra, error=e)

    extra["stats"] = {
        "nodes": mesh.n_vertices,
        "tets": len(mesh.foot_elements),
        "hexes": len(mesh.sole_elements),
        "contact_master_faces": int(sets.master_faces.shape[0]),
        "contact_slave_faces": int(sets.slave_faces.shape[0]),
        "support_nodes": int(sets.support_nodes.size),
        "prescribed_nodes": int(sets.prescribed_nodes.size),
        "spacing": shell.spacing,
        "cut_level": shell.cut_level,
    }
    if not run_solver:
        return _finish(artifacts=artifacts, status="success", start=start, stages=stages, extra=extra)

    status, result_stats = _solve_and_reconstruct(
        doc,
        artifacts=artifacts,
        stages=stages,
        tets=mesh.tet_elements,
        hexes=mesh.hex_elements,
        run_mode=run_mode,
        max_total_wait=max_total_wait,
        febio_bin=febio_bin,
        command=command,
    )
    extra["stats"].update(result_stats)
    reason = None if status == "success" else stages["solve"].failure_reason or stages["results"].failure_reason
    return _finish(artifacts=artifacts, status=status, start=start, stages=stages, extra=extra, failure_reason=reason)


def run_cube_case(
    *,
    out_dir: Path,
    params: CubeParams | None = None,
    run_solver: bool = True,
    run_mode: RunMode = "external",
    max_total_wait: float = 1e99,
    febio_bin: str | None = None,
    command: list[str] | None = None,
) -> tuple[bool, dict[str, Any], CaseArtifacts]:
    """Five-step block demo (tension, unload, compression, unload, shear) in `out_dir/cube/`."""
    start = time.perf_counter()
    params = params or CubeParams()
    artifacts = get_case_artifacts(case_dir=out_dir / "cube", job_name="cube")
    artifacts.case_dir.mkdir(parents=True, exist_ok=True)
    stages: dict[str, StepReport] = {}
    extra: dict[str, Any] = {"params": params.model_dump(mode="json")}

    try:
        doc = _timed(stages, "model", build_cube_model, params, log_file=artifacts.febio_log.name)
        _timed(stages, "export", _write_artifact, write_feb, doc, artifacts.feb)
    except PipelineError as e:
        return _finish(artifacts=artifacts, status="failed", start=start, stages=stages, extra=extra, error=e)
    hexes = doc.element_set("Part1").elements
    extra["stats"] = {"nodes": doc.n_nodes, "hexes": doc.n_elements, "steps": len(doc.steps)}
    if not run_solver:
        return _finish(artifacts=artifacts, status="success", start=start, stages=stages, extra=extra)

    status, result_stats = _solve_and_reconstruct(
        doc,
        artifacts=artifacts,
        stages=stages,
        tets=None,
        hexes=hexes,
        run_mode=run_mode,
        max_total_wait=max_total_wait,
        febio_bin=febio_bin,
        command=command,
    )
    extra["stats"].update(result_stats)
    reason = None if status == "success" else stages["solve"].failure_reason or stages["results"].failure_reason
    return _finish(artifacts=artifacts, status=status, start=start, stages=stages, extra=extra, failure_reason=reason)
