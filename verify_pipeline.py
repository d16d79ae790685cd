import sys
from pathlib import Path

import numpy as np

# Add src to sys.path
sys.path.append(str(Path.cwd() / "src"))

from foot_insole_fem.config import Paths, find_febio_bin
from foot_insole_fem.pipeline import run_cube_case
from foot_insole_fem.types import CubeParams


def main():
    print(">>> Verifying Pipeline...")

    paths = Paths(project_root=Path.cwd())

    # Coarse cube so the check finishes quickly
    params = CubeParams(cube_size=10.0, element_size=2.5, stretch_load=1.3)
    print(f">>> Cube: {params}")

    febio = find_febio_bin()
    if not febio:
        print("!!! WARNING: febio binary not found. Only the model is written.")
    else:
        print(f"    Found febio: {febio}")

    ok, report, artifacts = run_cube_case(out_dir=paths.febio_dir, params=params, run_solver=febio is not None)
    print(f"    Status: {report['status']}")
    print(f"    Model: {artifacts.feb}")
    if not ok:
        print(f"    Reason: {report.get('failure_reason')}")
        solve = report.get("stages", {}).get("solve") or {}
        if solve.get("stdout_tail"):
            print("    Stdout:", solve["stdout_tail"])
        return
    if febio is None:
        return

    print(">>> Verifying Results...")
    if not artifacts.results_npz.exists():
        print("!!! results.npz missing")
        return

    data = np.load(artifacts.results_npz)
    disp = data["disp_out__values"]
    time = data["disp_out__time"]
    print(f"    Nodes: {disp.shape[0]}  Steps: {disp.shape[2] - 1}  End time: {time[-1]:.3f}")
    print(f"    Disp Range: {disp.min():.3e} ~ {disp.max():.3e}")

    if np.any(np.isnan(disp)) or np.any(np.isinf(disp)):
        print("!!! Found NaN/Inf in displacement")
    else:
        print("    No NaN/Inf in displacement.")

    print(">>> Success!")


if __name__ == "__main__":
    main()
