"""
config.py - Load config.json and expose pipeline thresholds

The clustering and matching thresholds were tuned by hand; they only mean
"same trip, same place" and are meant to be adjusted in config.json.
"""

import copy
import json
from datetime import timedelta
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent
CONFIG_PATH = PROJECT_ROOT / "config.json"

DEFAULTS = {
    "site_title": "Bird Outings",
    "timezone": "UTC",
    "clustering": {
        "time_gap_minutes": 300,
        "radius_km": 6.0,
    },
    "matching": {
        "buffer_minutes": 300,
    },
    "identification": {
        "api_url": "https://api.openai.com/v1/chat/completions",
        "model": "gpt-4o",
        "api_key_env": "OPENAI_API_KEY",
        "timeout": 60,
        "high_confidence": 0.8,
        "min_confidence": 0.3,
        "max_candidates": 5,
    },
    "search": {
        "limit": 8,
    },
}


def merge(base: dict, override: dict) -> dict:
    """Recursively overlay `override` on a copy of `base`"""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(path: Path = None) -> dict:
    """Load configuration from config.json, filling in defaults"""
    path = path or CONFIG_PATH
    if not path.exists():
        return copy.deepcopy(DEFAULTS)
    with open(path) as f:
        return merge(DEFAULTS, json.load(f))


def time_gap(config: dict) -> timedelta:
    return timedelta(minutes=config["clustering"]["time_gap_minutes"])


def radius_km(config: dict) -> float:
    return float(config["clustering"]["radius_km"])


def match_buffer(config: dict) -> timedelta:
    return timedelta(minutes=config["matching"]["buffer_minutes"])


def high_confidence(config: dict) -> float:
    return float(config["identification"]["high_confidence"])
