from __future__ import annotations

import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, model_validator


class InsoleParams(BaseModel):
    """Geometry and meshing parameters of the foot + insole model."""

    bone_scale: float = Field(1.0, gt=0)
    skin_scale: float = Field(1.0, gt=0)
    # Applied to both surfaces so the leg points up (+Z) with the toes along the view axis.
    reorient_euler_rad: tuple[float, float, float] = (-0.5 * math.pi, 0.0, -0.5 * math.pi)
    cut_margin_factor: float = Field(2.0, ge=0)
    angle_threshold_deg: float = Field(120.0, gt=0, lt=180)
    sharp_fix_iterations: int = Field(3, ge=0)
    merge_rel_tol: float = Field(1e-8, gt=0)
    volume_factor: float = Field(2.0, gt=0)
    tetgen_options: str = "pq1.2AaY"
    sole_offset_outward: float = Field(3.0, ge=0)
    sole_min_thickness: float = Field(6.0, gt=0)
    num_smooth_iterations_sole_xy: int = Field(25, ge=0)
    num_smooth_iterations_sole_z: int = Field(10, ge=0)
    max_angle_deviation_deg: float = Field(60.0, gt=0, le=90)
    sole_z_bias_fraction: float = Field(1.0 / 3.0, ge=0)
    bone_marker: int = 1
    skin_marker: int = 2
    cap_marker: int = 3


class MaterialParams(BaseModel):
    # Foot soft tissue (Ogden, coupled)
    foot_c1: float = Field(1e-3, gt=0)
    foot_m1: float = 2.0
    foot_k: float = Field(1e-1, gt=0)
    # Insole (Ogden unconstrained)
    sole_c1: float = Field(1e-2, gt=0)
    sole_m1: float = 2.0
    sole_cp: float = Field(1e-1, gt=0)


class SolverControlParams(BaseModel):
    num_time_steps: int = Field(10, gt=0)
    max_refs: int = Field(25, ge=0)
    max_ups: int = Field(0, ge=0)
    opt_iter: int = Field(10, gt=0)
    max_retries: int = Field(5, ge=0)
    symmetric_stiffness: int = 0
    min_residual: float = 1e-20

    @property
    def step_size(self) -> float:
        return 1.0 / self.num_time_steps

    @property
    def dtmin(self) -> float:
        return self.step_size / 100.0

    @property
    def dtmax(self) -> float:
        return self.step_size


class ContactParams(BaseModel):
    penalty: float = Field(20.0, gt=0)
    auto_penalty: int = 1
    two_pass: int = 1
    laugon: int = 0
    tolerance: float = 0.2
    gaptol: float = 0.0
    minaug: int = 1
    maxaug: int = 10
    search_tol: float = 0.01
    search_radius: float = 0.1
    symmetric_stiffness: int = 0
    fric_coeff: float = Field(0.25, ge=0)


class LoadParams(BaseModel):
    # Vertical displacement prescribed on the bones (negative pushes the foot down).
    displacement_magnitude: float = -3.0


RunMode = Literal["internal", "external"]


class CubeParams(BaseModel):
    """Multi-step tension, compression and shear of a hyperelastic block."""

    cube_size: float = Field(10.0, gt=0)
    element_size: float = Field(1.0, gt=0)
    stretch_load: float = Field(1.3, gt=0)
    c1: float = Field(1e-3, gt=0)
    m1: float = 8.0
    k_factor: float = Field(100.0, gt=0)
    control: SolverControlParams = Field(default_factory=lambda: SolverControlParams(opt_iter=6))

    @property
    def displacement(self) -> float:
        return (self.stretch_load - 1.0) * self.cube_size


class RunSettings(BaseModel):
    run_filename: Path
    run_logname: Path
    disp_on: bool = True
    disp_log_on: bool = True
    run_mode: RunMode = "external"
    t_check: float = Field(0.25, gt=0)
    max_total_wait: float = Field(1e99, gt=0)
    max_log_check_time: float = Field(10.0, gt=0)


class PipelineParams(BaseModel):
    insole: InsoleParams = Field(default_factory=InsoleParams)
    materials: MaterialParams = Field(default_factory=MaterialParams)
    control: SolverControlParams = Field(default_factory=SolverControlParams)
    contact: ContactParams = Field(default_factory=ContactParams)
    load: LoadParams = Field(default_factory=LoadParams)


def load_pipeline_params(path: Path) -> PipelineParams:
    return PipelineParams.model_validate_json(path.read_text(encoding="utf-8"))


ReportStatus = Literal["success", "incomplete", "failed"]


class StepReport(BaseModel):
    status: ReportStatus
    failure_reason: str | None = None
    stage: str | None = None
    category: str | None = None
    elapsed_ms: int
    stdout_tail: str | None = None
    stderr_tail: str | None = None
    artifacts: list[str] = Field(default_factory=list)
    stats: dict[str, Any] = Field(default_factory=dict)

    @staticmethod
    def now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()


class IndexRange(BaseModel):
    """Half-open range [start, stop) of 0-based node or element indices."""

    model_config = ConfigDict(frozen=True)

    start: int = Field(ge=0)
    stop: int = Field(ge=0)

    @model_validator(mode="after")
    def _ordered(self) -> "IndexRange":
        if self.stop < self.start:
            raise ValueError(f"range stop {self.stop} < start {self.start}")
        return self

    def __len__(self) -> int:
        return self.stop - self.start

    def contains(self, indices) -> bool:
        arr = np.asarray(indices)
        return bool(arr.size == 0 or (arr.min() >= self.start and arr.max() < self.stop))

    def overlaps(self, other: "IndexRange") -> bool:
        return self.start < other.stop and other.start < self.stop and len(self) > 0 and len(other) > 0
