import json
import sys
import textwrap

import numpy as np
import pytest

from foot_insole_fem import pipeline
from foot_insole_fem.case_id import compute_case_id
from foot_insole_fem.config import PIPELINE_VERSION
from foot_insole_fem.pipeline import run_cube_case, run_insole_case
from foot_insole_fem.types import CubeParams, InsoleParams, PipelineParams

# Writes the cube channels (27 nodes, step k at time k) into the working directory.
FAKE_CUBE_SOLVER = """
import sys
log, n_nodes, n_steps, normal = sys.argv[1], int(sys.argv[2]), int(sys.argv[3]), sys.argv[4] == "1"
for name, data in (("disp_out.txt", "ux;uy;uz"), ("force_out.txt", "Rx;Ry;Rz")):
    with open(name, "w") as f:
        for k in range(1, n_steps + 1):
            f.write(f"*Step  = {k}\\n*Time  = {k}\\n*Data  = {data}\\n")
            for i in range(1, n_nodes + 1):
                f.write(f"{i},0,0,{0.1 * k}\\n")
with open(log, "w") as f:
    for k in range(1, n_steps + 1):
        f.write(f" converged at time : {k}\\n")
    if normal:
        f.write(" N O R M A L   T E R M I N A T I O N\\n")
"""


def _cube_command(tmp_path, *, n_steps: int, normal: bool) -> list[str]:
    script = tmp_path / "fake_febio.py"
    script.write_text(textwrap.dedent(FAKE_CUBE_SOLVER), encoding="utf-8")
    log = tmp_path / "out" / "cube" / "cube.log"
    return [sys.executable, str(script), str(log), "27", str(n_steps), "1" if normal else "0"]


def _small_cube() -> CubeParams:
    return CubeParams(element_size=5.0)


class TestCaseId:
    """Deterministic case directories."""

    def test_stable_and_sensitive(self, tmp_path):
        surface = tmp_path / "skin.stl"
        surface.write_bytes(b"solid a\nendsolid a\n")
        params = PipelineParams()
        a = compute_case_id(params=params, surface_paths=[surface], pipeline_version=PIPELINE_VERSION)
        b = compute_case_id(params=PipelineParams(), surface_paths=[surface], pipeline_version=PIPELINE_VERSION)
        assert a == b
        assert len(a) == 16

        changed = PipelineParams(insole=InsoleParams(sole_min_thickness=8.0))
        assert compute_case_id(params=changed, surface_paths=[surface], pipeline_version=PIPELINE_VERSION) != a
        surface.write_bytes(b"solid b\nendsolid b\n")
        assert compute_case_id(params=params, surface_paths=[surface], pipeline_version=PIPELINE_VERSION) != a


class TestCubeCase:
    """Multi-step block demo end to end."""

    def test_model_only(self, tmp_path):
        ok, report, artifacts = run_cube_case(out_dir=tmp_path, params=_small_cube(), run_solver=False)
        assert ok
        assert artifacts.feb.exists()
        assert report["stats"] == {"nodes": 27, "hexes": 8, "steps": 5}
        on_disk = json.loads(artifacts.report_json.read_text(encoding="utf-8"))
        assert on_disk["status"] == "success"
        assert on_disk["stages"]["model"]["status"] == "success"

    def test_solved_with_fake_solver(self, tmp_path):
        pytest.importorskip("pyvista")
        command = _cube_command(tmp_path, n_steps=5, normal=True)
        ok, report, artifacts = run_cube_case(
            out_dir=tmp_path / "out", params=_small_cube(), run_mode="internal", command=command
        )
        assert ok, report
        assert report["stages"]["solve"]["stats"]["converged_steps"] == 5
        assert report["stats"]["n_steps"] == 5
        with np.load(artifacts.results_npz) as data:
            assert data["disp_out__values"].shape == (27, 3, 6)
            np.testing.assert_allclose(data["disp_out__time"], [0, 1, 2, 3, 4, 5])
        assert artifacts.results_vtu.exists()

    def test_early_stop_is_incomplete(self, tmp_path):
        pytest.importorskip("pyvista")
        command = _cube_command(tmp_path, n_steps=3, normal=False)
        ok, report, artifacts = run_cube_case(
            out_dir=tmp_path / "out", params=_small_cube(), run_mode="internal", command=command
        )
        assert not ok
        assert report["status"] == "incomplete"
        assert report["stages"]["solve"]["stats"]["job_status"] == "partial"
        assert report["stages"]["results"]["status"] == "incomplete"
        assert artifacts.results_npz.exists()

    def test_solver_without_output_fails(self, tmp_path):
        command = [sys.executable, "-c", "raise SystemExit(2)"]
        ok, report, artifacts = run_cube_case(
            out_dir=tmp_path, params=_small_cube(), run_mode="internal", command=command
        )
        assert not ok
        assert report["status"] == "failed"
        assert "code 2" in report["failure_reason"]
        assert not artifacts.results_npz.exists()

    def test_unwritable_model_file_is_reported(self, tmp_path):
        (tmp_path / "cube" / "cube.feb").mkdir(parents=True)
        ok, report, artifacts = run_cube_case(out_dir=tmp_path, params=_small_cube(), run_solver=False)
        assert not ok
        assert report["status"] == "failed"
        assert report["stage"] == "export"
        assert report["category"] == "artifact_write"
        assert report["stages"]["export"]["status"] == "failed"
        on_disk = json.loads(artifacts.report_json.read_text(encoding="utf-8"))
        assert on_disk["category"] == "artifact_write"

    def test_missing_vtu_exporter_is_reported(self, tmp_path, monkeypatch):
        def no_pyvista(*args, **kwargs):
            raise ModuleNotFoundError("No module named 'pyvista'")

        monkeypatch.setattr(pipeline, "export_vtu", no_pyvista)
        command = _cube_command(tmp_path, n_steps=5, normal=True)
        ok, report, artifacts = run_cube_case(
            out_dir=tmp_path / "out", params=_small_cube(), run_mode="internal", command=command
        )
        assert not ok
        assert report["status"] == "failed"
        results = report["stages"]["results"]
        assert results["category"] == "artifact_write"
        assert "pyvista" in results["failure_reason"]
        assert "pyvista" in report["failure_reason"]
        assert artifacts.results_npz.exists()
        assert artifacts.report_json.exists()


class TestInsoleCase:
    """Foot + insole model preparation."""

    def test_missing_surface_is_reported(self, tmp_path):
        ok, report, artifacts = run_insole_case(
            bone_path=tmp_path / "bone.stl",
            skin_path=tmp_path / "skin.stl",
            out_dir=tmp_path / "out",
            run_solver=False,
        )
        assert not ok
        assert report["status"] == "failed"
        assert report["category"] == "geometry_input"
        assert report["stage"] == "import"
        assert artifacts.report_json.exists()
        assert not artifacts.feb.exists()

    def test_sphere_over_box_builds_model(self, tmp_path):
        trimesh = pytest.importorskip("trimesh")
        tetgen = pytest.importorskip("tetgen")
        pytest.importorskip("pyvista")
        if not hasattr(tetgen.TetGen, "add_region"):
            pytest.skip("tetgen build without region support")

        skin = tmp_path / "skin.stl"
        bone = tmp_path / "bone.stl"
        trimesh.creation.icosphere(subdivisions=3, radius=10.0).export(str(skin))
        box = trimesh.creation.box(extents=(4.0, 4.0, 4.0))
        box.apply_translation((0.0, 0.0, -4.0))
        box.export(str(bone))

        params = PipelineParams(
            insole=InsoleParams(reorient_euler_rad=(0.0, 0.0, 0.0), num_smooth_iterations_sole_xy=5)
        )
        ok, report, artifacts = run_insole_case(
            bone_path=bone, skin_path=skin, out_dir=tmp_path / "out", params=params, run_solver=False
        )
        assert ok, report
        stats = report["stats"]
        assert stats["tets"] > 0
        assert stats["hexes"] > 0
        assert stats["cut_level"] > -2.0
        assert artifacts.feb.exists()
        assert artifacts.mesh_vtu.exists()
        assert artifacts.foot_shell_stl.exists()
        text = artifacts.feb.read_text(encoding="utf-8")
        assert '<SurfacePair name="Contact1">' in text
        assert '<Elements type="hex8" mat="2" name="Sole">' in text
