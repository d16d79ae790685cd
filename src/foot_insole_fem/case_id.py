from __future__ import annotations

import hashlib
import json
from pathlib import Path

from .types import PipelineParams


def _round_float(value: float, step: float) -> float:
    if step <= 0:
        return value
    return round(value / step) * step


def _normalize(value, step: float = 1e-9):
    if isinstance(value, float):
        return _round_float(value, step)
    if isinstance(value, dict):
        return {k: _normalize(v, step) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v, step) for v in value]
    return value


def normalize_params(params: PipelineParams) -> dict:
    return _normalize(params.model_dump(mode="json"))


def file_digest(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()


def compute_case_id(*, params: PipelineParams, surface_paths: list[Path], pipeline_version: str) -> str:
    payload = {
        "params": normalize_params(params),
        # Missing files hash by name; load_surface reports them later.
        "surfaces": [file_digest(p) if p.exists() else f"missing:{p.name}" for p in surface_paths],
        "pipeline_version": pipeline_version,
    }
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:16]
