from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Union

import yaml
from jsonschema import Draft7Validator

from .rate_limit import RateLimitConfigError, RateLimiterConfig

logger = logging.getLogger("quota-gate")

# Tier YAML files live in the quota_gate.tiers package (quota_gate/tiers/*.yaml).
TIERS_DIR = Path(__file__).parent / "tiers"
DEFAULT_TIERS_FILE = TIERS_DIR / "default.yaml"

TIERS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["tiers"],
    "properties": {
        "tiers": {
            "type": "object",
            "minProperties": 1,
            "additionalProperties": {
                "type": "object",
                "oneOf": [
                    {
                        "required": ["window_ms", "max_requests"],
                        "properties": {
                            "window_ms": {"type": "number", "exclusiveMinimum": 0},
                            "max_requests": {"type": "number", "exclusiveMinimum": 0},
                        },
                        "additionalProperties": False,
                    },
                    {
                        "required": ["rate"],
                        "properties": {"rate": {"type": "string", "pattern": r"^\s*\d+\s*/\s*[A-Za-z]+\s*$"}},
                        "additionalProperties": False,
                    },
                ],
            },
        }
    },
}

_validator = Draft7Validator(TIERS_SCHEMA)


class TierLoadError(RateLimitConfigError):
    """Raised when a tier file cannot be read or validated."""


def _read_tiers_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise TierLoadError(f"Tier file not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise TierLoadError(f"Tier file could not be read: {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise TierLoadError(f"Tier file is not valid YAML: {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise TierLoadError("Tier YAML must deserialize to a mapping")
    return data


def parse_tiers(data: Dict[str, Any]) -> Dict[str, RateLimiterConfig]:
    """Validate a ``{"tiers": {...}}`` document and build one config per class."""
    errors = sorted(_validator.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        where = "/".join(str(p) for p in first.path) or "<root>"
        raise TierLoadError(f"Invalid tier definition at {where}: {first.message}")

    tiers: Dict[str, RateLimiterConfig] = {}
    for name, raw in data["tiers"].items():
        try:
            tiers[str(name)] = RateLimiterConfig.coerce(raw)
        except RateLimitConfigError as exc:
            raise TierLoadError(f"Invalid tier '{name}': {exc}") from exc
    return tiers


def load_tiers(path: Union[str, Path, None] = None) -> Dict[str, RateLimiterConfig]:
    """Load tier configs from ``path`` (default: the packaged default.yaml)."""
    tiers_path = Path(path) if path else DEFAULT_TIERS_FILE
    tiers = parse_tiers(_read_tiers_yaml(tiers_path))
    logger.info("Loaded %d rate limit tier(s) from %s: %s", len(tiers), tiers_path, ", ".join(tiers))
    return tiers
