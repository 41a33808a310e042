import copy
import os
from typing import Optional

import yaml


DEFAULTS = {
    "weights": {"amount": 0.45, "date": 0.35, "vendor": 0.20},
    "thresholds": {"base": 0.60, "vendor_present": 0.80, "vendor_mismatch_exact": 0.70, "near_fallback": 0.45},
    # (max delta, sub-score) tiers, first match wins
    "amount_tiers": [[0.01, 1.0], [1.0, 0.8], [5.0, 0.6], [10.0, 0.4], [25.0, 0.2]],
    "date_tiers": [[0, 1.0], [1, 0.85], [3, 0.7], [7, 0.5], [14, 0.25]],
    "similarity": {"vendor_match": 0.85, "vendor_penalty": 0.3},
    "date_close_days": 2,
    "penalty_factor": 0.7,
    "unallowable_keywords": [
        "alcohol", "wine", "beer", "spirits", "liquor", "cocktail",
        "entertainment", "gift", "flowers", "golf", "country club",
    ],
}

DEFAULT_POLICY = {
    "low_dollar_waiver": {"enabled": True, "threshold": 25},
    "general": {"receipt_threshold": 0, "approval_threshold": 0},
    "categories": {
        "travel": {"receipt_threshold": 75, "approval_threshold": 0},
        "meals": {"receipt_threshold": 75, "approval_threshold": 0},
        "supplies": {"receipt_threshold": 0, "approval_threshold": 0},
    },
}


def _default_path() -> str:
    return os.getenv(
        "FAR_AUDIT_MATCHING_CONFIG",
        os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config", "matching.yml"),
    )


def _read_yaml(path: Optional[str]) -> dict:
    try:
        with open(path or _default_path(), "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}


def _merge(defaults: dict, overrides: dict) -> dict:
    # shallow merge: nested dicts are merged one level deep
    merged = copy.deepcopy(defaults)
    for k, v in (overrides or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            mv = dict(merged[k])
            mv.update(v)
            merged[k] = mv
        else:
            merged[k] = v
    return merged


def load_matching_config(path: Optional[str] = None) -> dict:
    cfg = _read_yaml(path)
    cfg.pop("policy", None)
    return _merge(DEFAULTS, cfg)


def load_policy(path: Optional[str] = None) -> dict:
    cfg = _read_yaml(path)
    return _merge(DEFAULT_POLICY, cfg.get("policy") or {})
