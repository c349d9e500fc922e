from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from bandleader.errors import ConfigError
from bandleader.model import MAX_OP_MS, MAX_OPS


@dataclass(frozen=True)
class PlayerConfig:
    # hardware limits
    max_ops: int = MAX_OPS
    max_op_ms: int = MAX_OP_MS
    # timing
    quantum_ms: int = 10
    unit: int = 40
    speed: int = 100
    warmup_s: float = 3.0
    shutdown_s: float = 3.0
    # MIDI output
    velocity: int = 100

    def replace(self, **overrides: Any) -> "PlayerConfig":
        """Copy with the non-None overrides applied, then validated."""
        vals = {k: v for k, v in overrides.items() if v is not None}
        cfg = dataclasses.replace(self, **vals)
        errors = validate_config(dataclasses.asdict(cfg))
        if errors:
            raise ConfigError("invalid configuration: " + "; ".join(errors))
        return cfg


_INT_KEYS = {
    "max_ops": 1,
    "max_op_ms": 1,
    "quantum_ms": 1,
    "unit": 1,
    "speed": 1,
    "velocity": 1,
}
_FLOAT_KEYS = ("warmup_s", "shutdown_s")


def _err(errors: List[str], path: str, msg: str) -> None:
    errors.append(f"{path}: {msg}")


def validate_config(obj: Dict[str, Any]) -> List[str]:
    """Return human-readable errors with JSON-pointer-like paths."""
    errors: List[str] = []
    if not isinstance(obj, dict):
        _err(errors, "/", "must be an object")
        return errors
    known = set(_INT_KEYS) | set(_FLOAT_KEYS)
    for key in obj:
        if key not in known:
            _err(errors, f"/{key}", "unknown setting")
    for key, minimum in _INT_KEYS.items():
        if key not in obj:
            continue
        v = obj[key]
        if isinstance(v, bool) or not isinstance(v, int):
            _err(errors, f"/{key}", "integer required")
        elif v < minimum:
            _err(errors, f"/{key}", f"must be >= {minimum}")
    if isinstance(obj.get("velocity"), int) and obj["velocity"] > 127:
        _err(errors, "/velocity", "must be in 1..127")
    for key in _FLOAT_KEYS:
        if key not in obj:
            continue
        v = obj[key]
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            _err(errors, f"/{key}", "number required")
        elif v < 0:
            _err(errors, f"/{key}", "must be non-negative")
    return errors


def load_config(path: Optional[str]) -> PlayerConfig:
    """Load settings from a JSON file; defaults when ``path`` is None."""
    if not path:
        return PlayerConfig()
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"failed to read {path}: {e}") from e
    errors = validate_config(obj)
    if errors:
        raise ConfigError(f"invalid config {path}: " + "; ".join(errors))
    vals = dict(obj)
    for key in _FLOAT_KEYS:
        if key in vals:
            vals[key] = float(vals[key])
    return PlayerConfig(**vals)
