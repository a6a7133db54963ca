from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path

import pytest

from punch_sync import QueueStorageError, QueueStore
from tests.helpers import make_item


def test_enqueue_and_list_in_timestamp_order(store: QueueStore) -> None:
    late = make_item(3)
    early = make_item(1)
    middle = make_item(2)
    for item in (late, early, middle):
        store.enqueue(item)

    assert [item.id for item in store.list_all()] == [early.id, middle.id, late.id]
    assert store.size() == 3


def test_equal_timestamps_keep_insertion_order(store: QueueStore) -> None:
    first = make_item(1, timestamp=100)
    second = make_item(2, timestamp=100)
    store.enqueue(first)
    store.enqueue(second)
    assert [item.id for item in store.list_all()] == [first.id, second.id]


def test_list_all_returns_independent_copies(store: QueueStore) -> None:
    item = make_item(1)
    store.enqueue(item)
    listed = store.list_all()
    listed.clear()
    assert store.list_all()[0] == item


def test_remove_is_idempotent(store: QueueStore) -> None:
    item = make_item(1)
    store.enqueue(item)
    assert store.remove(item.id) is True
    assert store.remove(item.id) is False
    assert store.remove("unknown") is False
    assert store.size() == 0


def test_clear_returns_discarded_count(store: QueueStore) -> None:
    for n in range(4):
        store.enqueue(make_item(n))
    assert store.clear() == 4
    assert store.list_all() == []
    assert store.clear() == 0


def test_items_survive_reopen(tmp_path: Path) -> None:
    item = make_item(1)
    QueueStore(tmp_path / "queue.db").enqueue(item)
    reopened = QueueStore(tmp_path / "queue.db")
    assert reopened.list_all() == [item]


def test_memory_store() -> None:
    store = QueueStore(":memory:")
    store.enqueue(make_item(1))
    assert store.size() == 1


def test_count_limit_evicts_oldest(tmp_path: Path) -> None:
    store = QueueStore(tmp_path / "queue.db", max_items=2)
    items = [make_item(n) for n in range(3)]
    evicted = []
    for item in items:
        evicted.extend(store.enqueue(item))

    assert evicted == [items[0].id]
    assert [item.id for item in store.list_all()] == [items[1].id, items[2].id]
    assert store.storage_warning is True


def test_byte_limit_evicts_oldest(tmp_path: Path) -> None:
    sample = make_item(0)
    store = QueueStore(tmp_path / "queue.db", max_bytes=sample.size * 2 + 10)
    first, second, third = (make_item(n) for n in range(1, 4))
    store.enqueue(first)
    store.enqueue(second)
    evicted = store.enqueue(third)

    assert evicted == [first.id]
    assert store.size() == 2


def test_item_larger_than_budget_is_refused(tmp_path: Path) -> None:
    store = QueueStore(tmp_path / "queue.db", max_bytes=64)
    with pytest.raises(QueueStorageError):
        store.enqueue(make_item(1))
    assert store.storage_warning is True
    assert store.size() == 0


def test_quota_error_evicts_once_and_retries(store: QueueStore, monkeypatch: pytest.MonkeyPatch) -> None:
    old = make_item(1)
    store.enqueue(old)
    real_insert = store._insert
    attempts = []

    def flaky_insert(conn, item, size):
        attempts.append(item.id)
        if len(attempts) == 1:
            raise sqlite3.OperationalError("database or disk is full")
        real_insert(conn, item, size)

    monkeypatch.setattr(store, "_insert", flaky_insert)
    new = make_item(2)

    assert store.enqueue(new) == [old.id]
    assert [item.id for item in store.list_all()] == [new.id]
    assert store.storage_warning is True


def test_quota_error_with_empty_queue_raises(store: QueueStore, monkeypatch: pytest.MonkeyPatch) -> None:
    def full_insert(conn, item, size):
        raise sqlite3.OperationalError("database or disk is full")

    monkeypatch.setattr(store, "_insert", full_insert)
    with pytest.raises(QueueStorageError):
        store.enqueue(make_item(1))


def test_disk_full_on_every_attempt_keeps_queued_items(store: QueueStore, monkeypatch: pytest.MonkeyPatch) -> None:
    queued = [make_item(1), make_item(2)]
    for item in queued:
        store.enqueue(item)
    attempts = []

    def full_insert(conn, item, size):
        attempts.append(item.id)
        raise sqlite3.OperationalError("database or disk is full")

    monkeypatch.setattr(store, "_insert", full_insert)
    with pytest.raises(QueueStorageError):
        store.enqueue(make_item(3))

    assert len(attempts) == 3
    assert store.list_all() == queued


def test_duplicate_id_is_rolled_back(store: QueueStore) -> None:
    item = make_item(1)
    store.enqueue(item)
    with pytest.raises(QueueStorageError):
        store.enqueue(item)
    assert store.list_all() == [item]


@pytest.mark.asyncio
async def test_concurrent_enqueues_respect_count_limit(tmp_path: Path) -> None:
    store = QueueStore(tmp_path / "queue.db", max_items=3)
    items = [make_item(n) for n in range(20)]

    await asyncio.gather(*(store.async_enqueue(item) for item in items))

    assert store.size() == 3


def test_clear_resets_storage_warning(tmp_path: Path) -> None:
    store = QueueStore(tmp_path / "queue.db", max_items=1)
    store.enqueue(make_item(1))
    store.enqueue(make_item(2))
    assert store.storage_warning
    store.clear()
    assert store.storage_warning is False


def test_portal_cache_roundtrip(store: QueueStore) -> None:
    assert store.fetch_portal_cache("/api/employee-portal/me") is None
    assert store.portal_cache_updated_at() is None

    store.update_portal_cache("/api/employee-portal/me", {"id": 1, "name": "Ana"})
    store.update_portal_cache("/api/employee-portal/me", {"id": 1, "name": "Ana Maria"})

    assert store.fetch_portal_cache("/api/employee-portal/me") == {"id": 1, "name": "Ana Maria"}
    assert store.portal_cache_updated_at() is not None


@pytest.mark.asyncio
async def test_async_helpers(store: QueueStore) -> None:
    item = make_item(1)
    await store.async_enqueue(item)
    assert await store.async_contains(item.id)
    assert await store.async_size() == 1
    assert [i.id for i in await store.async_list_all()] == [item.id]
    assert await store.async_remove(item.id)
    assert await store.async_clear() == 0
