from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from foot_insole_fem.config import get_paths  # noqa: E402
from foot_insole_fem.pipeline import run_cube_case  # noqa: E402
from foot_insole_fem.types import CubeParams  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Multi-step tension / compression / shear of a hyperelastic cube.")
    parser.add_argument("--size", type=float, default=10.0, help="cube edge length")
    parser.add_argument("--element_size", type=float, default=1.0)
    parser.add_argument("--stretch", type=float, default=1.3, help="tensile stretch of step 1")
    parser.add_argument("--out", type=Path, default=None, help="output root (default: data/raw/febio)")
    parser.add_argument("--mode", choices=("internal", "external"), default="external")
    parser.add_argument("--no_solve", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    params = CubeParams(cube_size=args.size, element_size=args.element_size, stretch_load=args.stretch)
    out_dir = args.out or get_paths(PROJECT_ROOT).febio_dir
    ok, report, artifacts = run_cube_case(out_dir=out_dir, params=params, run_solver=not args.no_solve, run_mode=args.mode)

    stats = report.get("stats") or {}
    short = f"cube {report['status']} nodes={stats.get('nodes')} hexes={stats.get('hexes')} steps={stats.get('n_steps', '-')}"
    if report.get("failure_reason"):
        short += f" ({report['failure_reason']})"
    print(short)
    print(f"feb: {artifacts.feb}")
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
