from __future__ import annotations

from pathlib import Path
from xml.sax.saxutils import quoteattr

import numpy as np

from .model import (
    Control,
    ModelDocument,
    NeoHookeanMaterial,
    OgdenMaterial,
    OgdenUnconstrainedMaterial,
    PrescribedBC,
)

_FACE_TAG = {3: "tri3", 4: "quad4"}


def _num(x: float) -> str:
    return f"{float(x):.12g}"


def _format_id_list(ids, *, per_line: int = 16) -> str:
    """1-based, comma separated ids (input is 0-based)."""
    values = [str(int(i) + 1) for i in ids]
    if not values:
        return ""
    lines: list[str] = []
    for i in range(0, len(values), per_line):
        lines.append(",".join(values[i : i + per_line]))
    return ",\n".join(lines)


def _row(values) -> str:
    return ",".join(str(int(v) + 1) for v in values)


def _control_lines(control: Control, indent: str) -> list[str]:
    ts = control.time_stepper
    i2 = indent + "  "
    return [
        f"{indent}<Control>",
        f'{i2}<analysis type="{control.analysis}"/>',
        f"{i2}<time_steps>{control.time_steps}</time_steps>",
        f"{i2}<step_size>{_num(control.step_size)}</step_size>",
        f"{i2}<time_stepper>",
        f"{i2}  <dtmin>{_num(ts.dtmin)}</dtmin>",
        f"{i2}  <dtmax>{_num(ts.dtmax)}</dtmax>",
        f"{i2}  <max_retries>{ts.max_retries}</max_retries>",
        f"{i2}  <opt_iter>{ts.opt_iter}</opt_iter>",
        f"{i2}</time_stepper>",
        f"{i2}<max_refs>{control.max_refs}</max_refs>",
        f"{i2}<max_ups>{control.max_ups}</max_ups>",
        f"{i2}<symmetric_stiffness>{control.symmetric_stiffness}</symmetric_stiffness>",
        f"{i2}<min_residual>{_num(control.min_residual)}</min_residual>",
        f"{indent}</Control>",
    ]


def _material_lines(material) -> list[str]:
    head = f"    <material id=\"{material.id}\" name={quoteattr(material.name)} type={quoteattr(material.type)}>"
    if isinstance(material, OgdenMaterial):
        params = {"c1": material.c1, "m1": material.m1, "c2": material.c2, "m2": material.m2, "k": material.k}
    elif isinstance(material, OgdenUnconstrainedMaterial):
        params = {"c1": material.c1, "m1": material.m1, "c2": material.c2, "m2": material.m2, "cp": material.cp}
    elif isinstance(material, NeoHookeanMaterial):
        params = {"E": material.E, "v": material.v}
    else:
        raise TypeError(f"unsupported material {type(material).__name__}")
    lines = [head, f"      <density>{_num(material.density)}</density>"]
    lines.extend(f"      <{k}>{_num(v)}</{k}>" for k, v in params.items())
    lines.append("    </material>")
    return lines


def _prescribe_lines(bc: PrescribedBC, indent: str) -> list[str]:
    return [
        f"{indent}<prescribe bc=\"{bc.dof}\" node_set={quoteattr(bc.node_set)}>",
        f"{indent}  <scale lc=\"{bc.load_curve}\">{_num(bc.scale)}</scale>",
        f"{indent}  <relative>{int(bc.relative)}</relative>",
        f"{indent}  <value>{_num(bc.value)}</value>",
        f"{indent}</prescribe>",
    ]


def feb_lines(doc: ModelDocument) -> list[str]:
    lines: list[str] = []
    lines.append('<?xml version="1.0" encoding="UTF-8"?>')
    lines.append(f'<febio_spec version="{doc.version}">')
    lines.append(f'  <Module type="{doc.module}"/>')
    if doc.control is not None:
        lines.extend(_control_lines(doc.control, "  "))

    lines.append("  <Material>")
    for material in doc.materials:
        lines.extend(_material_lines(material))
    lines.append("  </Material>")

    lines.append("  <Geometry>")
    lines.append('    <Nodes name="nodeSet_all">')
    for i, (x, y, z) in enumerate(np.asarray(doc.nodes), start=1):
        lines.append(f'      <node id="{i}">{_num(x)},{_num(y)},{_num(z)}</node>')
    lines.append("    </Nodes>")
    for block in doc.element_sets:
        lines.append(
            f'    <Elements type="{block.element_type}" mat="{block.material_id}" name={quoteattr(block.name)}>'
        )
        for k, elem in enumerate(block.elements, start=block.first_index + 1):
            lines.append(f'      <elem id="{k}">{_row(elem)}</elem>')
        lines.append("    </Elements>")
    for ns in doc.node_sets:
        lines.append(f"    <NodeSet name={quoteattr(ns.name)}>")
        for n in ns.nodes:
            lines.append(f'      <node id="{int(n) + 1}"/>')
        lines.append("    </NodeSet>")
    for surface in doc.surfaces:
        tag = _FACE_TAG[surface.faces.shape[1]]
        lines.append(f"    <Surface name={quoteattr(surface.name)}>")
        for k, face in enumerate(surface.faces, start=1):
            lines.append(f'      <{tag} id="{k}">{_row(face)}</{tag}>')
        lines.append("    </Surface>")
    for pair in doc.surface_pairs:
        lines.append(f"    <SurfacePair name={quoteattr(pair.name)}>")
        lines.append(f"      <master surface={quoteattr(pair.master)}/>")
        lines.append(f"      <slave surface={quoteattr(pair.slave)}/>")
        lines.append("    </SurfacePair>")
    lines.append("  </Geometry>")

    if doc.fixed or doc.prescribed:
        lines.append("  <Boundary>")
        for bc in doc.fixed:
            for dof in bc.dofs:
                lines.append(f'    <fix bc="{dof}" node_set={quoteattr(bc.node_set)}/>')
        for bc in doc.prescribed:
            lines.extend(_prescribe_lines(bc, "    "))
        lines.append("  </Boundary>")

    if doc.contacts:
        lines.append("  <Contact>")
        for c in doc.contacts:
            lines.append(f"    <contact type={quoteattr(c.type)} surface_pair={quoteattr(c.surface_pair)}>")
            for key, value in c.model_dump(exclude={"type", "surface_pair"}).items():
                lines.append(f"      <{key}>{_num(value)}</{key}>")
            lines.append("    </contact>")
        lines.append("  </Contact>")

    for step in doc.steps:
        lines.append(f'  <Step id="{step.id}">')
        lines.extend(_control_lines(step.control, "    "))
        if step.prescribed:
            lines.append("    <Boundary>")
            for bc in step.prescribed:
                lines.extend(_prescribe_lines(bc, "      "))
            lines.append("    </Boundary>")
        lines.append("  </Step>")

    if doc.load_curves:
        lines.append("  <LoadData>")
        for curve in doc.load_curves:
            lines.append(f'    <loadcurve id="{curve.id}" type="{curve.type}">')
            for t, v in curve.points:
                lines.append(f"      <point>{_num(t)},{_num(v)}</point>")
            lines.append("    </loadcurve>")
        lines.append("  </LoadData>")

    if doc.log_file:
        lines.append("  <Output>")
        lines.append(f"    <logfile file={quoteattr(doc.log_file)}>")
        for out in doc.outputs:
            ids = range(out.target.start, out.target.stop)
            lines.append(
                f"      <{out.kind} data={quoteattr(out.data)} delim={quoteattr(out.delim)} file={quoteattr(out.file)}>"
                f"{_format_id_list(ids)}</{out.kind}>"
            )
        lines.append("    </logfile>")
        lines.append("  </Output>")

    lines.append("</febio_spec>")
    return lines


def write_feb(doc: ModelDocument, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(feb_lines(doc)) + "\n", encoding="utf-8")
    return path
