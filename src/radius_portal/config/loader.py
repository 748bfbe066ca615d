from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from radius_portal.config.schema import PortalConfig

# environment variable -> (section, field)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "RADIUS_HOST": ("radius", "host"),
    "RADIUS_PORT": ("radius", "port"),
    "RADIUS_SECRET": ("radius", "secret"),
    "RADIUS_TIMEOUT": ("radius", "timeout_seconds"),
    "NAS_IP_ADDRESS": ("radius", "nas_ip_address"),
    "NAS_PORT": ("radius", "nas_port"),
    "ALLOWED_FILTER_ID": ("access_policy", "allowed_filter_id"),
    "ACCESS_DENIED_MESSAGE": ("access_policy", "denied_message"),
    "ACCESS_GRANTED_MESSAGE": ("access_policy", "granted_message"),
}


@dataclass(frozen=True, slots=True)
class ConfigLoadError(Exception):
    message: str

    def __str__(self) -> str:  # pragma: no cover
        return self.message


def load_config(
    path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> PortalConfig:
    """
    Build the process configuration.

    The optional file is read first, then environment variables override
    individual fields. Pass environ={} to ignore the process environment.
    """
    data: dict[str, Any] = {}
    source = "<environment>"

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigLoadError(f"Config file not found: {config_path}")

        raw_text = config_path.read_text(encoding="utf-8")
        data = _parse_config_text(raw_text, config_path)
        source = str(config_path)

    if environ is None:
        environ = os.environ

    return validate_config(apply_env_overrides(data, environ), source=source)


def validate_config(data: Any, *, source: str = "<memory>") -> PortalConfig:
    try:
        return PortalConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigLoadError(format_validation_error(exc, source=source)) from exc


def apply_env_overrides(data: Mapping[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    merged: dict[str, Any] = {key: dict(value) if isinstance(value, Mapping) else value for key, value in data.items()}
    for variable, (section, field) in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value is None or value == "":
            continue
        target = merged.setdefault(section, {})
        if not isinstance(target, dict):
            raise ConfigLoadError(f"Config section '{section}' must be a mapping to apply {variable}")
        target[field] = value
    return merged


def _parse_config_text(raw_text: str, path: Path) -> dict[str, Any]:
    suffix = path.suffix.lower()

    if suffix in {".yml", ".yaml"}:
        try:
            parsed = yaml.safe_load(raw_text)
        except yaml.YAMLError as exc:
            raise ConfigLoadError(f"YAML parse error in {path}: {exc}") from exc
        if parsed is None:
            raise ConfigLoadError(f"Empty YAML document: {path}")
    elif suffix == ".json":
        try:
            parsed = json.loads(raw_text)
        except json.JSONDecodeError as exc:
            raise ConfigLoadError(f"JSON parse error in {path}: {exc}") from exc
    else:
        raise ConfigLoadError(f"Unsupported config format '{path.suffix}'. Use .yml/.yaml or .json.")

    if not isinstance(parsed, dict):
        raise ConfigLoadError(f"Top-level config in {path} must be a mapping")
    return parsed


def format_validation_error(error: ValidationError, *, source: str) -> str:
    lines: list[str] = [f"Config validation failed: {source}"]
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = item.get("msg", "invalid value")
        error_type = item.get("type", "validation_error")
        lines.append(f" - {location}: {message} ({error_type})")
    return "\n".join(lines)
