"""Foot + insole contact model preparation for FEBio."""

from foot_insole_fem.model import ModelBuilder, ModelDocument
from foot_insole_fem.pipeline import run_cube_case, run_insole_case

__all__ = ["ModelBuilder", "ModelDocument", "run_cube_case", "run_insole_case"]
