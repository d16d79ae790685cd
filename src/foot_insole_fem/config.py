from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path


PIPELINE_VERSION = "v0.1.0"

# FEBio executables in the order they are tried when FEBIO_BIN is not set.
FEBIO_BIN_NAMES = ("febio4", "febio3", "febio2", "febio")


@dataclass(frozen=True)
class Paths:
    project_root: Path

    @property
    def data_dir(self) -> Path:
        return self.project_root / "data"

    @property
    def raw_dir(self) -> Path:
        return self.data_dir / "raw"

    @property
    def surfaces_dir(self) -> Path:
        return self.raw_dir / "surfaces"

    @property
    def mesh_dir(self) -> Path:
        return self.raw_dir / "mesh"

    @property
    def febio_dir(self) -> Path:
        return self.raw_dir / "febio"


def get_paths(project_root: Path) -> Paths:
    return Paths(project_root=project_root)


def find_febio_bin() -> str | None:
    env = os.environ.get("FEBIO_BIN")
    if env and Path(env).exists():
        return env
    for name in FEBIO_BIN_NAMES:
        which = shutil.which(name)
        if which:
            return which
    return None
