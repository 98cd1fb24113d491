"""YAML declaration file loader."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.constructor import SafeConstructor

from converge.config.schema import Config, EngineSettings
from converge.engine.errors import EngineError
from converge.engine.errors import ValidationError as DeclarationError
from converge.resources.declaration import SECTIONS, parse_declaration

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "converge.yaml"

# Top-level keys holding resource declarations rather than engine config.
_RESOURCE_KEYS = (*SECTIONS, "resources")


class ConfigError(EngineError):
    """Raised for configuration loading / validation errors."""


# Provider -> field name -> environment variable.
_PROVIDER_ENV_MAP: dict[str, dict[str, str]] = {
    "compute": {
        "endpoint": "CONVERGE_COMPUTE_ENDPOINT",
        "api_token": "CONVERGE_COMPUTE_TOKEN",
        "verify_ssl": "CONVERGE_COMPUTE_VERIFY_SSL",
    },
    "network": {
        "endpoint": "CONVERGE_NETWORK_ENDPOINT",
        "api_token": "CONVERGE_NETWORK_TOKEN",
        "verify_ssl": "CONVERGE_NETWORK_VERIFY_SSL",
    },
    "ssh": {
        "user": "CONVERGE_SSH_USER",
        "identity_file": "CONVERGE_SSH_IDENTITY_FILE",
    },
}

_PROVIDER_BOOL_FIELDS: frozenset[str] = frozenset({"verify_ssl"})


def _resolve_providers(raw_providers: Any, config_dir: Path) -> dict[str, Any]:
    """Resolve provider fields from YAML, env vars, and ``.env`` file.

    Priority (highest wins): YAML value > env var > ``.env`` file.
    """
    if raw_providers is None:
        raw_providers = {}
    if not isinstance(raw_providers, dict):
        raise ConfigError("'providers' must be a mapping")

    env_file = config_dir / ".env"
    dotenv_vals = dotenv_values(env_file, encoding="utf-8-sig") if env_file.is_file() else {}

    resolved: dict[str, Any] = {
        name: dict(value) if isinstance(value, dict) else (value or {})
        for name, value in raw_providers.items()
    }
    for name, fields in _PROVIDER_ENV_MAP.items():
        section = resolved.setdefault(name, {})
        if not isinstance(section, dict):
            raise ConfigError(f"'providers.{name}' must be a mapping")
        for field, env_key in fields.items():
            val = section.get(field)
            if val is None:
                val = os.environ.get(env_key)
            if val is None:
                val = dotenv_vals.get(env_key)
            if val is None:
                continue
            if field in _PROVIDER_BOOL_FIELDS and isinstance(val, str):
                if val.lower() not in SafeConstructor.bool_values:
                    raise ConfigError(f"Invalid boolean for {env_key}: {val!r}")
                val = SafeConstructor.bool_values[val.lower()]
            section[field] = val

    return resolved


def load_config(path: Path | str = DEFAULT_CONFIG) -> Config:
    """Load a YAML declaration file and return a ``Config`` object.

    Raises:
        ConfigError: On YAML parse errors or engine/provider settings
            validation failures.
        ValidationError: When a declared resource is malformed (see
            :func:`converge.resources.declaration.parse_declaration`).
    """
    path = Path(path)

    try:
        raw = YAML(typ="safe").load(path)
    except Exception as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")

    declaration = {key: raw.pop(key) for key in _RESOURCE_KEYS if key in raw}
    settings = raw.get("settings") or {}
    if not isinstance(settings, dict):
        raise ConfigError("'settings' must be a mapping")

    try:
        # Built explicitly so CONVERGE_* environment variables are honoured.
        raw["settings"] = EngineSettings(**settings)
        raw["providers"] = _resolve_providers(raw.get("providers"), path.parent)
        config = Config.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc

    config.config_dir = path.parent

    try:
        config._resources = parse_declaration(declaration)
    except DeclarationError as exc:
        logger.debug("Declaration in %s is invalid: %d errors", path, len(exc.errors))
        raise

    logger.info("Loaded config from %s (%d resources)", path, len(config.resources))
    return config
