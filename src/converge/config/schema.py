"""Configuration models for YAML-based convergence."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic_settings import BaseSettings, SettingsConfigDict

from converge.resources.base import Resource  # noqa: TC001 - Pydantic needs this at runtime


class EngineSettings(BaseSettings):
    """Engine tuning.

    Fields can be set under ``settings:`` in YAML (constructor kwargs) or via
    environment variables with the ``CONVERGE_`` prefix. Constructor kwargs
    take precedence.
    """

    model_config = SettingsConfigDict(env_prefix="CONVERGE_", extra="forbid")

    max_workers: int = Field(default=4, ge=1, le=64)
    max_attempts: int = Field(default=5, ge=1)
    backoff_initial: float = Field(default=1.0, gt=0)
    backoff_max: float = Field(default=30.0, gt=0)
    step_timeout: float = Field(default=60.0, gt=0)
    max_replans: int = Field(default=3, ge=0)
    interval: float = Field(default=300.0, gt=0)


class CloudProviderConfig(BaseModel):
    """REST provisioning API connection settings.

    ``api_token`` is typically provided via environment variables
    (``CONVERGE_COMPUTE_TOKEN``/``CONVERGE_NETWORK_TOKEN``) rather than YAML
    to avoid committing secrets to version control.
    """

    model_config = ConfigDict(extra="forbid")

    endpoint: str | None = None
    api_token: str | None = None
    verify_ssl: bool = True


class SSHConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    identity_file: str | None = None
    options: list[str] = Field(default_factory=lambda: ["-o", "BatchMode=yes"])
    sudo: bool = True


class ProvidersConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    compute: CloudProviderConfig = Field(default_factory=CloudProviderConfig)
    network: CloudProviderConfig = Field(default_factory=CloudProviderConfig)
    ssh: SSHConfig = Field(default_factory=SSHConfig)


class Config(BaseModel):
    """Convergence configuration, validated from the YAML mapping.

    Resource sections are parsed separately by
    :func:`converge.resources.declaration.parse_declaration`.
    """

    model_config = ConfigDict(extra="forbid")

    state_path: Path = Path(".converge-state.json")
    settings: EngineSettings = Field(default_factory=EngineSettings)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    config_dir: Path = Path()

    _resources: list[Resource] = PrivateAttr(default_factory=list)

    @property
    def resources(self) -> list[Resource]:
        """All declared resources; ordering is not significant."""
        return list(self._resources)

    @property
    def resolved_state_path(self) -> Path:
        if self.state_path.is_absolute():
            return self.state_path
        return self.config_dir / self.state_path
