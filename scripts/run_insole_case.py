from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from foot_insole_fem.config import find_febio_bin, get_paths  # noqa: E402
from foot_insole_fem.pipeline import run_insole_case  # noqa: E402
from foot_insole_fem.types import PipelineParams, load_pipeline_params  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Build the foot + insole FEBio model from bone and skin surfaces and solve it.")
    parser.add_argument("--bone", type=Path, required=True, help="bone surface (stl/obj/ply)")
    parser.add_argument("--skin", type=Path, required=True, help="skin surface (stl/obj/ply)")
    parser.add_argument("--params", type=Path, default=None, help="PipelineParams JSON")
    parser.add_argument("--out", type=Path, default=None, help="output root (default: data/raw/febio)")
    parser.add_argument("--mode", choices=("internal", "external"), default="external")
    parser.add_argument("--max_wait_s", type=float, default=1e99)
    parser.add_argument("--no_solve", action="store_true", help="stop after writing the .feb file")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    paths = get_paths(PROJECT_ROOT)
    out_dir = args.out or paths.febio_dir
    params = load_pipeline_params(args.params) if args.params else PipelineParams()

    if not args.no_solve and find_febio_bin() is None:
        print("ERROR: febio not found. Install FEBio or set FEBIO_BIN (or pass --no_solve).", file=sys.stderr)
        return 2

    ok, report, artifacts = run_insole_case(
        bone_path=args.bone,
        skin_path=args.skin,
        out_dir=out_dir,
        params=params,
        run_solver=not args.no_solve,
        run_mode=args.mode,
        max_total_wait=args.max_wait_s,
    )

    short = f"{report.get('case_id')} {report['status']}"
    if report.get("failure_reason"):
        short += f" ({report.get('stage') or ''}: {report['failure_reason']})"
    print(short)
    print(f"report: {artifacts.report_json}")
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
