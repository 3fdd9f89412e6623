# oneshotsg_io/params_json.py
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np

from models import OptimizationResult

logger = logging.getLogger("OneShotSG.io")


def _jsonable(v: Any) -> Any:
    if isinstance(v, dict):
        return {str(k): _jsonable(x) for k, x in v.items()}
    if isinstance(v, (list, tuple)):
        return [_jsonable(x) for x in v]
    if isinstance(v, np.ndarray):
        return _jsonable(v.tolist())
    if isinstance(v, (np.integer,)):
        return int(v)
    if isinstance(v, (np.floating, float)):
        f = float(v)
        return f if np.isfinite(f) else None
    return v


def build_params_record(
    result: Optional[OptimizationResult],
    safeguard_params: Optional[Dict[str, Any]] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    rec: Dict[str, Any] = {"created": datetime.now().isoformat(timespec="seconds")}
    if result is not None:
        rec["optimization"] = result.as_dict()
    rec["safeguardParams"] = dict(safeguard_params or {})
    if extra:
        rec.update(extra)
    return _jsonable(rec)


def save_params(
    path,
    result: Optional[OptimizationResult],
    safeguard_params: Optional[Dict[str, Any]] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Path:
    """Structured parameter record (best threshold, error curve, SG params)."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w", encoding="utf-8") as f:
        json.dump(build_params_record(result, safeguard_params, extra), f, indent=4)
    logger.info(f"Saved parameters: {p.name}")
    return p


def load_params(path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
