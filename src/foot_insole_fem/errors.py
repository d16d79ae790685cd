from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for pipeline failures. `category` names the failure kind in reports."""

    category = "pipeline"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage


class GeometryInputError(PipelineError):
    category = "geometry_input"


class DegenerateBoundary(PipelineError):
    category = "degenerate_boundary"


class MeshGenerationFailed(PipelineError):
    category = "mesh_generation"


class ModelValidationError(PipelineError):
    category = "model_validation"

    def __init__(self, problems: list[str], *, stage: str | None = None) -> None:
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid model", stage=stage)


class SolverTimeout(PipelineError):
    category = "solver_timeout"


class ResultParseError(PipelineError):
    category = "result_parse"


class ArtifactWriteError(PipelineError):
    category = "artifact_write"
