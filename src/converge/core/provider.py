"""Provider connections - the external systems adapters talk to."""

import logging
import shlex
import subprocess
from collections.abc import Sequence
from functools import cached_property
from typing import Self

import httpx
from pydantic import BaseModel, ConfigDict, Field, SecretStr

logger = logging.getLogger(__name__)

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "local"})


class ApiTokenAuth(BaseModel):
    """Bearer token authentication for a cloud API."""

    api_token: SecretStr


class CloudProvider(BaseModel):
    """Connection configuration for a REST provisioning API.

    For external use, provide endpoint and auth. For testing, use the
    `from_client` classmethod to inject a pre-built ``httpx.Client``.

    Examples:
        provider = CloudProvider(
            endpoint="https://cloud.example.com/v1",
            auth=ApiTokenAuth(api_token="..."),
        )

        transport = httpx.MockTransport(handler)
        provider = CloudProvider.from_client(httpx.Client(transport=transport))
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    endpoint: str | None = None
    auth: ApiTokenAuth | None = None
    verify_ssl: bool = True

    # Injected client (for testing)
    _injected_client: httpx.Client | None = None

    @classmethod
    def from_client(cls, client: httpx.Client) -> Self:
        """Create a provider around an existing client."""
        provider = cls.model_construct()
        provider._injected_client = client
        return provider

    @cached_property
    def client(self) -> httpx.Client:
        """Get the HTTP client."""
        if self._injected_client is not None:
            return self._injected_client

        if self.endpoint is None:
            raise ValueError("Either provide an endpoint, or use CloudProvider.from_client()")

        headers = {"Accept": "application/json"}
        if self.auth is not None:
            headers["Authorization"] = f"Bearer {self.auth.api_token.get_secret_value()}"
        return httpx.Client(
            base_url=self.endpoint.rstrip("/"),
            headers=headers,
            verify=self.verify_ssl,
        )


class HostProvider(BaseModel):
    """Runs commands on managed hosts, locally or over ``ssh``."""

    user: str | None = None
    port: int | None = None
    identity_file: str | None = None
    options: list[str] = Field(default_factory=lambda: ["-o", "BatchMode=yes"])
    sudo: bool = True

    def command(self, host: str, argv: Sequence[str]) -> list[str]:
        """Build the full argv to run *argv* on *host*."""
        remote = ["sudo", "-n", *argv] if self.sudo else list(argv)
        if host in LOCAL_HOSTS:
            return remote

        ssh = ["ssh", *self.options]
        if self.port is not None:
            ssh += ["-p", str(self.port)]
        if self.identity_file is not None:
            ssh += ["-i", self.identity_file]
        target = f"{self.user}@{host}" if self.user else host
        return [*ssh, target, "--", shlex.join(remote)]

    def run(
        self,
        host: str,
        argv: Sequence[str],
        *,
        timeout: float,
    ) -> subprocess.CompletedProcess[str]:
        """Run *argv* on *host*. Raises ``subprocess.TimeoutExpired`` past *timeout*."""
        cmd = self.command(host, argv)
        logger.debug("Running on %s: %s", host, shlex.join(cmd))
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
