import copy
import os
from typing import Any, Dict, List, NamedTuple, Optional

import yaml


DEFAULT_PARAMS: Dict[str, Any] = {
    "columns": {
        "transcript": "feature_name",
        "x": "x_location",
        "y": "y_location",
        "z": None,
        "cell_id": "cell_id",
        "overlaps_nucleus": "overlaps_nucleus",
        "qv": "qv",
        "cell_x": "x_centroid",
        "cell_y": "y_centroid",
    },
    "min_qv": 20.0,
    "ncomponents": 20,
    "niter": 1000,
    "nthreads": None,
    "background_prob": 0.05,
    "local_steps_per_iter": 100,
    "seed": 0,
    "chunk_factor": 4,
    "max_cells_per_chunk": 100,
    "full_area_method": "hull",
    "report_every": 100,
    "graph": {
        "knn": 16,
    },
    "sampler": {
        "background_proposal_prob": 0.1,
        "proposal_fraction": 0.05,
        "check_invariants": False,
    },
    # coarse-to-fine hexagonal chunks; each stage gets `fraction` of niter
    "schedule": [
        {"chunk_scale": 5.0, "fraction": 0.25},
        {"chunk_scale": 2.5, "fraction": 0.25},
        {"chunk_scale": 1.0, "fraction": 0.25},
        {"chunk_scale": 0.5, "fraction": 0.25},
    ],
    "output": {
        "counts": "counts.csv.gz",
        "z": "z.csv.gz",
        "cell_assignments": "cell_assignments.csv.gz",
        "cell_polygons": "cells.geojson.gz",
    },
}


class SamplerStage(NamedTuple):
    """One schedule stage; `chunk_scale` multiplies the searched chunk size to give the hexagon size."""

    chunk_scale: float
    niter: int


def _workspace_root() -> str:
    return os.path.dirname(os.path.dirname(__file__))


def _params_path() -> str:
    root = _workspace_root()
    return os.path.join(root, 'config', 'params.yaml')


def load_params_yaml(path: Optional[str] = None) -> Dict[str, Any]:
    """Load params YAML from `path` or `config/params.yaml`; a missing file gives {}."""
    p = path or _params_path()
    if not os.path.isfile(p):
        if path:
            raise FileNotFoundError(f"Config file not found: {p}")
        return {}
    with open(p, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid config root in '{p}': expected a mapping, got {type(data).__name__}.")
    return data


def _deep_update(base: Dict[str, Any], upd: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in upd.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _deep_update(base[k], v)
        else:
            base[k] = v
    return base


def resolve_params(overrides: Optional[Dict[str, Any]] = None, config_path: Optional[str] = None) -> Dict[str, Any]:
    """Defaults, then the YAML params file, then explicit overrides (None values skipped)."""
    cfg = copy.deepcopy(DEFAULT_PARAMS)
    _deep_update(cfg, load_params_yaml(config_path))
    if overrides:
        _deep_update(cfg, _drop_none(overrides))
    return cfg


def _drop_none(d: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for k, v in d.items():
        if isinstance(v, dict):
            out[k] = _drop_none(v)
        elif v is not None:
            out[k] = v
    return out


def _get_by_path(cfg: Dict[str, Any], dotted: str) -> Any:
    cur: Any = cfg
    for part in dotted.split('.'):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return None
    return cur


def validate_params(cfg: Dict[str, Any]) -> None:
    """Raise ValueError for settings that would make sampling meaningless."""
    if int(cfg["ncomponents"]) <= 0:
        raise ValueError(f"ncomponents must be positive, got {cfg['ncomponents']}.")
    if int(cfg["niter"]) < 0:
        raise ValueError(f"niter must be non-negative, got {cfg['niter']}.")
    if int(cfg["local_steps_per_iter"]) <= 0:
        raise ValueError(f"local_steps_per_iter must be positive, got {cfg['local_steps_per_iter']}.")
    if not 0.0 < float(cfg["background_prob"]) < 1.0:
        raise ValueError(f"background_prob must be in (0, 1), got {cfg['background_prob']}.")
    if cfg.get("nthreads") is not None and int(cfg["nthreads"]) <= 0:
        raise ValueError(f"nthreads must be positive, got {cfg['nthreads']}.")
    if cfg["full_area_method"] not in ("hull", "bins"):
        raise ValueError(f"Unknown full_area_method '{cfg['full_area_method']}'; use 'hull' or 'bins'.")
    for dotted in ("graph.knn",):
        if int(_get_by_path(cfg, dotted)) <= 0:
            raise ValueError(f"{dotted} must be positive.")
    for dotted in ("sampler.background_proposal_prob", "sampler.proposal_fraction"):
        v = float(_get_by_path(cfg, dotted))
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"{dotted} must be in [0, 1], got {v}.")
    build_schedule(cfg["schedule"], int(cfg["niter"]))


def build_schedule(records: List[Dict[str, Any]], niter: int) -> List[SamplerStage]:
    """Split the iteration budget over stage records.

    A record gives `chunk_scale` and either an explicit `niter` or a
    `fraction` of the total; the last fraction-based stage takes whatever the
    other fraction-based stages leave. Stages left with zero iterations are
    dropped.
    """
    if not isinstance(records, list) or not records:
        raise ValueError("schedule must be a non-empty list of stage records.")
    for rec in records:
        unknown = set(rec) - {"chunk_scale", "fraction", "niter"}
        if unknown:
            raise ValueError(f"Unknown schedule keys: {sorted(unknown)}")
        if "chunk_scale" not in rec or not float(rec["chunk_scale"]) > 0:
            raise ValueError(f"Schedule stage needs a positive chunk_scale: {rec}")
        if ("niter" in rec) == ("fraction" in rec):
            raise ValueError(f"Schedule stage needs exactly one of 'niter' or 'fraction': {rec}")
        if "niter" in rec and int(rec["niter"]) <= 0:
            raise ValueError(f"Schedule stage niter must be positive: {rec}")
        if "fraction" in rec and float(rec["fraction"]) < 0:
            raise ValueError(f"Schedule stage fraction must be non-negative: {rec}")

    fractional = [i for i, rec in enumerate(records) if "fraction" in rec]
    stages = []
    allotted = 0
    for i, rec in enumerate(records):
        if "niter" in rec:
            n = int(rec["niter"])
        elif i == fractional[-1]:
            n = max(0, niter - allotted)
        else:
            n = int(niter * float(rec["fraction"]))
            allotted += n
        if n > 0:
            stages.append(SamplerStage(float(rec["chunk_scale"]), n))
    return stages


def preferred_n_jobs(nthreads: Optional[int] = None) -> int:
    """Worker count: explicit value, then HEXSEG_N_JOBS, then all CPUs."""
    if nthreads:
        return max(1, int(nthreads))
    v_raw = os.environ.get("HEXSEG_N_JOBS", "").strip()
    if v_raw:
        try:
            v = int(v_raw)
            if v > 0:
                return v
        except ValueError:
            pass
    return max(1, os.cpu_count() or 1)
