"""YAML declaration loading and convenience plan/apply API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import SecretStr

from converge.config.loader import DEFAULT_CONFIG, ConfigError, load_config
from converge.config.registry import default_registry
from converge.config.schema import Config, EngineSettings
from converge.core.provider import ApiTokenAuth, CloudProvider, HostProvider
from converge.engine.adapters import AdapterContext
from converge.engine.driver import Driver
from converge.engine.retry import RetryPolicy
from converge.engine.store import StateStore

if TYPE_CHECKING:
    import threading
    from collections.abc import Iterable
    from pathlib import Path

    from converge.config.schema import CloudProviderConfig
    from converge.core.state import ResourceState
    from converge.engine.executor import ProgressCallback
    from converge.engine.types import ChangePlan, ChangeStep, RunReport

__all__ = [
    "DEFAULT_CONFIG",
    "Config",
    "ConfigError",
    "EngineSettings",
    "apply",
    "destroy",
    "drift",
    "driver_from_config",
    "load",
    "load_config",
    "mark_drifted",
    "plan",
    "refresh",
    "state_records",
]


def load(path: Path | str = DEFAULT_CONFIG) -> Config:
    """Load a YAML declaration file."""
    return load_config(path)


def _cloud_provider(cfg: CloudProviderConfig) -> CloudProvider | None:
    if not cfg.endpoint:
        return None
    auth = ApiTokenAuth(api_token=SecretStr(cfg.api_token)) if cfg.api_token else None
    return CloudProvider(endpoint=cfg.endpoint, auth=auth, verify_ssl=cfg.verify_ssl)


def _context_from_config(config: Config) -> AdapterContext:
    ssh = config.providers.ssh
    return AdapterContext(
        compute=_cloud_provider(config.providers.compute),
        network=_cloud_provider(config.providers.network),
        hosts=HostProvider(
            user=ssh.user,
            port=ssh.port,
            identity_file=ssh.identity_file,
            options=list(ssh.options),
            sudo=ssh.sudo,
        ),
        timeout=config.settings.step_timeout,
    )


def driver_from_config(config: Config, *, cancel: threading.Event | None = None) -> Driver:
    """Build a ``Driver`` from a ``Config`` instance."""
    settings = config.settings
    return Driver(
        registry=default_registry(),
        store=StateStore(config.resolved_state_path),
        ctx=_context_from_config(config),
        retry_policy=RetryPolicy(
            max_attempts=settings.max_attempts,
            backoff_initial=settings.backoff_initial,
            backoff_max=settings.backoff_max,
        ),
        max_workers=settings.max_workers,
        max_replans=settings.max_replans,
        cancel=cancel,
    )


def plan(config: Config, *, destroy: bool = False, refresh: bool = True) -> ChangePlan:
    """Plan changes for the given configuration."""
    driver = driver_from_config(config)
    if destroy:
        return driver.plan_destroy(refresh=refresh)
    return driver.plan(config.resources, refresh=refresh)


def apply(config: Config, *, progress: ProgressCallback | None = None) -> RunReport:
    """Plan and apply in one step."""
    return driver_from_config(config).converge_once(config.resources, progress=progress)


def destroy(
    config: Config,
    identities: Iterable[str] | None = None,
    *,
    progress: ProgressCallback | None = None,
) -> RunReport:
    """Destroy tracked resources (all of them when *identities* is None)."""
    return driver_from_config(config).destroy(identities, progress=progress)


def refresh(config: Config) -> list[ChangeStep]:
    """Detect drift and mark drifted records so the next apply re-converges them."""
    return driver_from_config(config).refresh(persist=True)


def drift(config: Config) -> list[ChangeStep]:
    """Detect drift between the state file and the live systems."""
    return driver_from_config(config).refresh(persist=False)


def mark_drifted(config: Config, steps: Iterable[ChangeStep]) -> None:
    """Persist the drifted status for every step returned by :func:`drift`."""
    driver = driver_from_config(config)
    for step in steps:
        driver.mark_drifted(step.identity)


def state_records(config: Config) -> list[ResourceState]:
    """All tracked resources, sorted by identity."""
    return StateStore(config.resolved_state_path).list()
