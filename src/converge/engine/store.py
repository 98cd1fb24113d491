"""Durable state store keyed by resource identity."""

from __future__ import annotations

import logging
from pathlib import Path

from converge.core.state import ResourceState, StateFile
from converge.engine.lock import IdentityLock, StateLock

logger = logging.getLogger(__name__)


class StateStore:
    """Identity -> ResourceState mapping backed by a JSON state file.

    Every mutation reloads the file under the store-wide lock, applies the
    change and writes the file back atomically before returning, so no
    acknowledged write lives only in memory.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _snapshot(self) -> StateFile:
        return StateFile.load_or_create(self._path)

    def get(self, identity: str) -> ResourceState | None:
        return self._snapshot().resources.get(identity)

    def list(self) -> list[ResourceState]:
        resources = self._snapshot().resources
        return [resources[k] for k in sorted(resources)]

    def put(self, identity: str, record: ResourceState) -> None:
        if record.identity != identity:
            raise ValueError(f"Record identity mismatch: {identity} != {record.identity}")
        with StateLock(self._path):
            state = self._snapshot()
            state.resources[identity] = record
            state.serial += 1
            state.save(self._path)
        logger.debug("State put %s (status=%s)", identity, record.status.value)

    def delete(self, identity: str) -> None:
        with StateLock(self._path):
            state = self._snapshot()
            if state.resources.pop(identity, None) is None:
                return
            state.serial += 1
            state.save(self._path)
        logger.debug("State delete %s", identity)

    def lock(self, identity: str) -> IdentityLock:
        """Per-identity exclusive lock, to be used as a context manager."""
        return IdentityLock(self._path, identity)

    @property
    def serial(self) -> int:
        return self._snapshot().serial
