"""Shared plumbing for adapters backed by a REST provisioning API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from converge.engine.adapters import ProviderAdapter, R
from converge.engine.errors import ConflictError, PermanentError, TransientError

if TYPE_CHECKING:
    from converge.core.provider import CloudProvider

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})
_CONFLICT_STATUS = frozenset({409, 412})


def classify_status(status_code: int) -> type[Exception] | None:
    """Map an HTTP status to the adapter error kind (None for success/404)."""
    if status_code < 400 or status_code == 404:
        return None
    if status_code in _RETRYABLE_STATUS or status_code >= 500:
        return TransientError
    if status_code in _CONFLICT_STATUS:
        return ConflictError
    return PermanentError


class RestAdapter(ProviderAdapter[R]):
    """Adapter for objects addressed as ``{collection}/{identity}``.

    ``GET`` reads, ``PUT`` creates or replaces (idempotent by construction)
    and ``DELETE`` removes.
    """

    collection: str

    def _provider(self, ctx: Any) -> CloudProvider:
        raise NotImplementedError

    def _request(
        self,
        ctx: Any,
        method: str,
        identity: str,
        *,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response | None:
        """Issue a request; return None on 404, raise adapter errors otherwise."""
        client = self._provider(ctx).client
        path = f"/{self.collection}/{identity}"
        try:
            response = client.request(
                method, path, json=json, headers=headers, timeout=ctx.timeout
            )
        except httpx.TimeoutException as exc:
            logger.warning("Timeout on %s %s after %.1fs", method, path, ctx.timeout)
            raise TransientError(f"{method} {path} timed out", identity=identity) from exc
        except httpx.TransportError as exc:
            logger.warning("Network error on %s %s: %s", method, path, exc)
            raise TransientError(f"{method} {path} failed: {exc}", identity=identity) from exc

        error_cls = classify_status(response.status_code)
        if error_cls is not None:
            msg = f"{method} {path}: HTTP {response.status_code}: {response.text[:200]}"
            logger.debug(msg)
            raise error_cls(msg, identity=identity, status_code=response.status_code)
        if response.status_code == 404:
            return None
        return response

    @staticmethod
    def _body(response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        data = response.json()
        if not isinstance(data, dict):
            raise PermanentError(f"Unexpected response body: {data!r}")
        return data

    @staticmethod
    def _fingerprint(identity: str, body: dict[str, Any], response: httpx.Response) -> str:
        object_id = str(body.get("id") or identity)
        etag = response.headers.get("etag") or body.get("etag")
        return f"{object_id}@{etag}" if etag else object_id
