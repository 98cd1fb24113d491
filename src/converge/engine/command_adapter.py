"""Shared plumbing for adapters that drive a host through shell commands."""

from __future__ import annotations

import logging
import shlex
import subprocess
from typing import TYPE_CHECKING

from converge.engine.adapters import ProviderAdapter, R
from converge.engine.errors import PermanentError, TransientError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from converge.engine.adapters import AdapterContext

logger = logging.getLogger(__name__)

# ssh exits with 255 when the connection itself fails.
SSH_CONNECTION_FAILED = 255

_TRANSIENT_MARKERS = (
    "Could not get lock",
    "Unable to acquire the dpkg frontend lock",
    "Temporary failure resolving",
    "Connection timed out",
    "Connection refused",
    "Failed to connect to bus",
)


class CommandAdapter(ProviderAdapter[R]):
    def _run(
        self,
        ctx: AdapterContext,
        host: str,
        argv: Sequence[str],
        *,
        identity: str,
        ok_codes: Sequence[int] = (0,),
    ) -> subprocess.CompletedProcess[str]:
        """Run a command, mapping failures to adapter errors.

        Exit codes listed in *ok_codes* are returned to the caller, which
        interprets them (e.g. "package not installed").
        """
        label = shlex.join(argv)
        try:
            result = ctx.hosts.run(host, argv, timeout=ctx.timeout)
        except subprocess.TimeoutExpired as exc:
            logger.warning("%s on %s timed out after %.1fs", label, host, ctx.timeout)
            raise TransientError(f"{label} on {host} timed out", identity=identity) from exc
        except FileNotFoundError as exc:
            raise PermanentError(f"Cannot execute {label}: {exc}", identity=identity) from exc

        if result.returncode in ok_codes:
            return result

        output = (result.stderr or result.stdout or "").strip()
        msg = f"{label} on {host} exited {result.returncode}: {output[:300]}"
        if result.returncode == SSH_CONNECTION_FAILED or any(
            marker in output for marker in _TRANSIENT_MARKERS
        ):
            logger.warning(msg)
            raise TransientError(msg, identity=identity, returncode=result.returncode)
        raise PermanentError(msg, identity=identity, returncode=result.returncode)
