import os
from typing import Optional

import yaml
from dotenv import load_dotenv

from matric_recon.values import CLASSES_OF_DEGREE


DEFAULTS = {
    "normalizer": {"delimiters": "/"},
    "matching": {"enable_similar": True, "prefix_min_similarity": 0.0},
    "values": {"allowed": list(CLASSES_OF_DEGREE), "case_insensitive": True},
    "executor": {"max_workers": 4, "max_retries": 3, "backoff_seconds": 0.5, "dry_run": False},
    "coverage": {"thresholds": {"excellent": 95, "good": 80, "moderate": 50}},
    "session": {"ttl_hours": 6},
    "api": {"base_url": None, "token": None, "timeout": 60},
}


def _default_path() -> str:
    return os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config", "reconcile.yml")


def _merge(base: dict, cfg: dict) -> dict:
    # shallow merge defaults
    merged = {k: (dict(v) if isinstance(v, dict) else v) for k, v in base.items()}
    for k, v in (cfg or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            mv = dict(merged[k])
            mv.update(v)
            merged[k] = mv
        else:
            merged[k] = v
    return merged


def _env_overrides(cfg: dict) -> dict:
    if os.getenv("RECON_API_BASE_URL"):
        cfg["api"]["base_url"] = os.getenv("RECON_API_BASE_URL")
    if os.getenv("RECON_API_TOKEN"):
        cfg["api"]["token"] = os.getenv("RECON_API_TOKEN")
    if os.getenv("RECON_MAX_WORKERS"):
        cfg["executor"]["max_workers"] = int(os.getenv("RECON_MAX_WORKERS"))
    if os.getenv("RECON_DRY_RUN"):
        cfg["executor"]["dry_run"] = os.getenv("RECON_DRY_RUN", "false").lower() == "true"
    return cfg


def load_reconcile_config(path: Optional[str] = None) -> dict:
    load_dotenv()
    path = path or os.getenv("RECON_CONFIG") or _default_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        cfg = {}
    return _env_overrides(_merge(DEFAULTS, cfg))
