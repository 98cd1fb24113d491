from __future__ import annotations

import json
import threading
from typing import TYPE_CHECKING

import pytest

from converge.core.state import (
    ResourceState,
    ResourceStatus,
    StateFile,
    compute_attributes_hash,
)
from converge.engine.errors import StateLockError
from converge.engine.lock import IdentityLock, StateLock
from converge.engine.store import StateStore
from converge.resources.base import Kind

if TYPE_CHECKING:
    from pathlib import Path


def _record(identity: str = "web1", **kwargs: object) -> ResourceState:
    attrs = {"size": "small"}
    return ResourceState(
        identity=identity,
        kind=Kind.COMPUTE,
        last_applied_attributes=attrs,
        attributes_hash=compute_attributes_hash(attrs) or "",
        **kwargs,  # type: ignore[arg-type]
    )


def test_attributes_hash_is_order_independent() -> None:
    assert compute_attributes_hash({"a": 1, "b": 2}) == compute_attributes_hash({"b": 2, "a": 1})
    assert compute_attributes_hash(None) is None


def test_empty_store(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.json")
    assert store.list() == []
    assert store.get("web1") is None
    assert store.serial == 0
    assert not (tmp_path / "state.json").exists()


def test_put_is_durable_and_bumps_serial(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    StateStore(path).put("web1", _record())

    # A fresh store sees the write without any in-memory handoff.
    store = StateStore(path)
    record = store.get("web1")
    assert record is not None
    assert record.last_applied_attributes == {"size": "small"}
    assert record.status == ResourceStatus.APPLIED
    assert store.serial == 1

    data = json.loads(path.read_text())
    assert data["resources"]["web1"]["kind"] == "compute"


def test_put_rejects_identity_mismatch(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.json")
    with pytest.raises(ValueError, match="mismatch"):
        store.put("web2", _record("web1"))


def test_list_is_sorted(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.json")
    for identity in ("db1", "web1", "app1"):
        store.put(identity, _record(identity))
    assert [r.identity for r in store.list()] == ["app1", "db1", "web1"]


def test_delete(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.json")
    store.put("web1", _record())
    store.delete("web1")
    assert store.get("web1") is None
    assert store.serial == 2

    store.delete("web1")  # absent: no write
    assert store.serial == 2


def test_save_writes_backup(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    store = StateStore(path)
    store.put("web1", _record())
    store.put("web2", _record("web2"))

    backup = StateFile.load(tmp_path / "state.json.backup")
    assert set(backup.resources) == {"web1"}
    assert backup.lineage == StateFile.load(path).lineage


def test_concurrent_puts_do_not_lose_writes(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.json")
    threads = [
        threading.Thread(target=store.put, args=(f"vm{i}", _record(f"vm{i}"))) for i in range(8)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(store.list()) == 8
    assert store.serial == 8


def test_identity_lock_path(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.json")
    lock = store.lock("web1")
    with lock:
        assert lock.path == tmp_path / "state.json.locks" / "web1.lock"
        assert lock.path.exists()


def test_identity_lock_times_out_while_held(tmp_path: Path) -> None:
    state_path = tmp_path / "state.json"
    with IdentityLock(state_path, "web1"):
        with pytest.raises(StateLockError, match="Timed out"):
            with IdentityLock(state_path, "web1", timeout=0.1):
                pass
        # Other identities are independent.
        with IdentityLock(state_path, "db1", timeout=0.1):
            pass


def test_state_lock_released_on_exit(tmp_path: Path) -> None:
    state_path = tmp_path / "state.json"
    with StateLock(state_path):
        pass
    with StateLock(state_path, timeout=0.1) as lock:
        assert lock.path == tmp_path / "state.json.lock"


def test_discarded_lock_file_is_removed(tmp_path: Path) -> None:
    state_path = tmp_path / "state.json"
    with IdentityLock(state_path, "web1") as lock:
        lock.discard()
        assert lock.path.exists()
    assert not lock.path.exists()


def test_waiter_relocks_after_lock_file_is_discarded(tmp_path: Path) -> None:
    state_path = tmp_path / "state.json"
    acquired = threading.Event()
    linked: list[bool] = []

    def _wait() -> None:
        with IdentityLock(state_path, "web1") as lock:
            linked.append(lock.path.exists())
            acquired.set()

    with IdentityLock(state_path, "web1") as holder:
        holder.discard()
        waiter = threading.Thread(target=_wait)
        waiter.start()
        assert not acquired.wait(0.2)
    waiter.join(timeout=5)

    assert linked == [True]
