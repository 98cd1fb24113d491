"""State records for tracking converged resources."""

import contextlib
import hashlib
import json
import logging
import os
import tempfile
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from converge.resources.base import Kind

logger = logging.getLogger(__name__)


def _canonical_json(obj: Any) -> str:
    # Stable encoding for hashes. `default=str` keeps it robust for
    # datetimes/paths/etc while staying deterministic enough for our use.
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def compute_attributes_hash(attrs: Mapping[str, Any] | None) -> str | None:
    """Compute a stable hash for a set of attributes (``None`` when absent)."""
    if attrs is None:
        return None
    payload = _canonical_json(attrs)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _now() -> datetime:
    return datetime.now(UTC)


class ResourceStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    DRIFTED = "drifted"
    FAILED = "failed"


class ResourceState(BaseModel):
    """Last-known actual state of one resource.

    Attributes:
        identity: Stable, user-declared identity (e.g., "web1")
        kind: Resource kind
        last_applied_attributes: Attributes recorded after the last successful apply
        attributes_hash: SHA256 of ``last_applied_attributes``
        provider_fingerprint: Opaque token identifying the underlying object
        dependencies: Identities this resource depended on when applied
        status: Outcome of the last step that touched this resource
        last_converged_at: When the resource last converged successfully
        created_at: When the resource was first created
    """

    identity: str
    kind: Kind
    last_applied_attributes: dict[str, Any] = Field(default_factory=dict)
    attributes_hash: str = ""
    provider_fingerprint: str = ""
    dependencies: list[str] = Field(default_factory=list)
    status: ResourceStatus = ResourceStatus.APPLIED
    last_converged_at: datetime = Field(default_factory=_now)
    created_at: datetime = Field(default_factory=_now)


class StateFile(BaseModel):
    """On-disk layout of the state store: identity -> record.

    Attributes:
        version: State file format version
        serial: Incremented on every durable mutation
        lineage: Random id assigned when the state file is first created
        resources: Mapping of identities to records
    """

    version: int = 1
    serial: int = 0
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    resources: dict[str, ResourceState] = Field(default_factory=dict)

    def save(self, path: Path) -> None:
        """Save state to a JSON file.

        - Writes atomically (temp file + fsync + rename)
        - Writes a `.backup` copy of the previous state when overwriting
        """
        path.parent.mkdir(parents=True, exist_ok=True)

        backup_path = Path(str(path) + ".backup")
        # Avoid TOCTOU race between exists() and read_bytes().
        with contextlib.suppress(FileNotFoundError):
            backup_path.write_bytes(path.read_bytes())

        data = self.model_dump(mode="json")
        content = json.dumps(data, indent=2, sort_keys=True) + "\n"

        fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        tmp_file = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            tmp_file.replace(path)
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp_file.unlink()
        _fsync_dir(path.parent)
        logger.debug("State saved: serial=%d path=%s", self.serial, path)

    @classmethod
    def load(cls, path: Path) -> "StateFile":
        """Load state from a JSON file."""
        return cls.model_validate_json(path.read_text(encoding="utf-8"))

    @classmethod
    def load_or_create(cls, path: Path) -> "StateFile":
        """Load existing state or create a new, empty one."""
        if path.exists():
            return cls.load(path)
        logger.debug("No state at %s, starting empty", path)
        return cls()


def _fsync_dir(directory: Path) -> None:
    # Persist the rename itself. Not supported on every platform.
    with contextlib.suppress(OSError, AttributeError):
        fd = os.open(str(directory), os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
