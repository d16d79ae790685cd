import numpy as np
import pytest

from foot_insole_fem.errors import ResultParseError
from foot_insole_fem.model import Control, ModelBuilder, OgdenMaterial
from foot_insole_fem.results import (
    analysis_end_time,
    deformed_positions,
    element_boundary_vertex_measure,
    export_vtu,
    load_results,
    parse_logfile_data,
    read_channel,
    save_npz,
    series_status,
)
from foot_insole_fem.types import IndexRange, SolverControlParams

from conftest import unit_tet


def channel_text(n_steps: int, n_entities: int = 4, *, fields: str = "ux;uy;uz", dt: float = 0.1) -> str:
    width = len(fields.split(";"))
    lines = []
    for k in range(1, n_steps + 1):
        lines += [f"*Step  = {k}", f"*Time  = {k * dt:.6g}", f"*Data  = {fields}"]
        for i in range(1, n_entities + 1):
            lines.append(",".join([str(i)] + [f"{-0.01 * k * i:.6g}"] * width))
    return "\n".join(lines) + "\n"


def tet_document(*, log_file: str = "job.log"):
    elements, vertices = unit_tet()
    b = ModelBuilder()
    b.set_control(Control.from_params(SolverControlParams(num_time_steps=10)))
    b.add_material(OgdenMaterial(id=1, name="Foot", c1=1e-3, m1=2.0, c2=1e-3, m2=-2.0, k=0.1))
    b.set_nodes(vertices)
    target = b.add_element_set("Foot", "tet4", 1, elements)
    b.set_log_file(log_file)
    b.add_output("node_data", "disp_out.txt", "ux;uy;uz", IndexRange(start=0, stop=4))
    b.add_output("element_data", "energy_out.txt", "sed", target)
    return b.finalize()


class TestParse:
    """Logfile channel parsing."""

    def test_complete_channel(self):
        series = parse_logfile_data(channel_text(10))
        assert series.fields == ("ux", "uy", "uz")
        assert series.n_steps == 10
        assert series.values.shape == (4, 3, 11)
        np.testing.assert_allclose(series.time, np.round(np.arange(11) * 0.1, 6))
        np.testing.assert_array_equal(series.entity_ids, [1, 2, 3, 4])
        assert not series.truncated

    def test_zero_step_is_reference(self):
        series = parse_logfile_data(channel_text(2))
        assert series.time[0] == 0.0
        assert np.all(series.values[:, :, 0] == 0.0)
        np.testing.assert_allclose(series.field("uz")[:, 2], [-0.02, -0.04, -0.06, -0.08])

    def test_truncated_block_keeps_earlier_steps(self):
        text = channel_text(10)
        lines = text.splitlines()
        # step 4 loses its last row
        cut = lines.index("*Step  = 4") + 3 + 3
        broken = "\n".join(lines[:cut] + lines[cut + 1 :]) + "\n"
        series = parse_logfile_data(broken)
        assert series.truncated
        assert series.n_steps == 3
        assert series.time.shape == (4,)
        assert series_status(series, end_time=1.0) == "incomplete"

    def test_strict_raises(self):
        text = channel_text(3).replace("2,-0.04", "2,abc")
        with pytest.raises(ResultParseError) as exc:
            parse_logfile_data(text, strict=True, source="disp.txt")
        assert "disp.txt" in str(exc.value)
        assert exc.value.stage == "results"

    def test_field_change_stops_series(self):
        text = channel_text(2) + channel_text(1, fields="ux;uy").replace("*Step  = 1", "*Step  = 3")
        series = parse_logfile_data(text)
        assert series.n_steps == 2
        assert series.truncated

    def test_ignores_preamble_and_other_headers(self):
        text = "0.5,0.5\n*Title = run\n" + channel_text(1)
        series = parse_logfile_data(text)
        assert series.n_steps == 1
        assert not series.truncated

    def test_id_mismatch(self):
        series = parse_logfile_data(channel_text(2), entity_ids=[1, 2, 3, 5])
        assert series.n_steps == 0
        assert series_status(series, end_time=0.2) == "failed"

    def test_whitespace_delimiter(self):
        text = channel_text(1).replace(",", " ")
        series = parse_logfile_data(text, delim=" ")
        assert series.n_steps == 1

    def test_arrays_read_only(self):
        series = parse_logfile_data(channel_text(1))
        with pytest.raises(ValueError):
            series.values[0, 0, 0] = 1.0


class TestResultSet:
    """Channels of a whole model."""

    def test_end_time(self):
        assert analysis_end_time(tet_document()) == pytest.approx(1.0)

    def test_success(self, tmp_path):
        (tmp_path / "disp_out.txt").write_text(channel_text(10), encoding="utf-8")
        (tmp_path / "energy_out.txt").write_text(channel_text(10, 1, fields="sed"), encoding="utf-8")
        result = load_results(tet_document(), tmp_path)
        assert result.status == "success"
        assert result.n_steps == 10
        assert result.missing == ()

    def test_missing_channel_is_incomplete(self, tmp_path):
        (tmp_path / "disp_out.txt").write_text(channel_text(10), encoding="utf-8")
        result = load_results(tet_document(), tmp_path)
        assert result.status == "incomplete"
        assert result.missing == ("energy_out.txt",)
        with pytest.raises(ResultParseError):
            load_results(tet_document(), tmp_path, strict=True)

    def test_short_run_is_incomplete(self, tmp_path):
        (tmp_path / "disp_out.txt").write_text(channel_text(6), encoding="utf-8")
        (tmp_path / "energy_out.txt").write_text(channel_text(6, 1, fields="sed"), encoding="utf-8")
        assert load_results(tet_document(), tmp_path).status == "incomplete"

    def test_nothing_written_is_failed(self, tmp_path):
        assert load_results(tet_document(), tmp_path).status == "failed"

    def test_read_channel_checks_fields(self, tmp_path):
        doc = tet_document()
        path = tmp_path / "disp_out.txt"
        path.write_text(channel_text(2, fields="vx;vy;vz"), encoding="utf-8")
        with pytest.raises(ResultParseError):
            read_channel(path, doc.output("disp_out.txt"))


class TestReconstruction:
    """Deformed geometry and exports."""

    def test_deformed_positions(self):
        _, vertices = unit_tet()
        series = parse_logfile_data(channel_text(3))
        pos = deformed_positions(vertices, series)
        assert pos.shape == (4, 3, 4)
        np.testing.assert_allclose(pos[:, :, 0], vertices)
        np.testing.assert_allclose(pos[3, 2, 3], 1.0 - 0.12)

    def test_deformed_positions_shape_mismatch(self):
        series = parse_logfile_data(channel_text(1, 3))
        with pytest.raises(ValueError):
            deformed_positions(np.zeros((4, 3)), series)

    def test_element_values_to_boundary_vertices(self):
        elements = np.array([[0, 1, 2, 3], [1, 2, 3, 4]])
        out = element_boundary_vertex_measure(elements, np.array([2.0, 4.0]), 6)
        assert out[0] == pytest.approx(2.0)
        assert out[4] == pytest.approx(4.0)
        assert 2.0 < out[1] < 4.0
        assert out[5] == 0.0

    def test_npz_and_vtu(self, tmp_path):
        (tmp_path / "disp_out.txt").write_text(channel_text(10), encoding="utf-8")
        (tmp_path / "energy_out.txt").write_text(channel_text(10, 1, fields="sed"), encoding="utf-8")
        elements, vertices = unit_tet()
        result = load_results(tet_document(), tmp_path)
        npz = save_npz(tmp_path / "out" / "results.npz", result, vertices=vertices)
        with np.load(npz) as data:
            assert data["disp_out__values"].shape == (4, 3, 11)
            assert data["energy_out__time"].shape == (11,)
            np.testing.assert_array_equal(data["energy_out__ids"], [1])
            np.testing.assert_allclose(data["vertices"], vertices)

        pytest.importorskip("pyvista")
        vtu = export_vtu(
            tmp_path / "out" / "mesh.vtu",
            vertices=vertices,
            tets=elements,
            point_data={"u": result.channels["disp_out.txt"].values[:, :, -1]},
            cell_data={"sed": np.array([1.0])},
        )
        assert vtu.exists()

    def test_vtu_needs_cells(self, tmp_path):
        pytest.importorskip("pyvista")
        with pytest.raises(ValueError):
            export_vtu(tmp_path / "x.vtu", vertices=np.zeros((4, 3)))
