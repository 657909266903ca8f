"""Configuration loading and merging for Lanbeacon."""

import os
from dataclasses import Field, dataclass, fields
from pathlib import Path
from typing import Mapping

import yaml


# Environment toggle carried over from the original deployment
ENV_FORWARDED = "USE_FORWARDED_FOR"

_TRUE = {"1", "t", "true", "yes", "on"}
_FALSE = {"0", "f", "false", "no", "off"}


@dataclass
class BeaconConfig:
    # "::" listens on IPv4 and IPv6 alike
    host: str = "::"
    port: int = 80

    # Derive network keys from X-Forwarded-For (only behind a trusted proxy)
    use_forwarded_for: bool = False

    # Seconds an announcement stays listed without being renewed
    lifetime: int = 3600

    # Seconds between sweeps; must be well below lifetime
    sweep_interval: int = 60


def parse_bool(value: str) -> bool:
    """Parse a boolean env value the way the original viper toggle accepted it."""
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def load_config(path: str | Path) -> BeaconConfig:
    """Load a BeaconConfig from a YAML file."""
    path = Path(path)
    with open(path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"{path}: malformed YAML: {exc}") from None

    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")

    filtered = {
        f.name: _coerce(f, data[f.name])
        for f in fields(BeaconConfig) if f.name in data
    }
    return BeaconConfig(**filtered)


def _coerce(f: Field, value):
    """Convert a YAML value to the field's declared type."""
    if f.type is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return parse_bool(value)
    elif value is not None and not isinstance(value, bool):
        try:
            return f.type(value)
        except (TypeError, ValueError):
            pass
    raise ValueError(f"Invalid value for '{f.name}': {value!r}")


def apply_env(config: BeaconConfig, environ: Mapping[str, str] = os.environ) -> BeaconConfig:
    """Overlay environment settings onto *config*."""
    raw = environ.get(ENV_FORWARDED)
    if raw is not None and raw.strip():
        config.use_forwarded_for = parse_bool(raw)
    return config


def merge_cli_args(config: BeaconConfig, args) -> BeaconConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for f in fields(BeaconConfig):
        cli_val = getattr(args, f.name, None)
        if cli_val is not None:
            setattr(config, f.name, cli_val)
    return config


def config_to_yaml(config: BeaconConfig) -> str:
    """Serialize a BeaconConfig to YAML."""
    data = {f.name: getattr(config, f.name) for f in fields(BeaconConfig)}
    return yaml.dump(data, default_flow_style=False, sort_keys=False)
