import asyncio
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, Optional

import pytest

from keypool.config import Config
from keypool.errors import (
    InvalidArgument,
    KeyNotFound,
    PersistenceFailure,
    ServiceNotFound,
)
from keypool.key_manager import KeyManager
from keypool.storage import JsonFileStore, MemoryStore


def freeze_time(monkeypatch: pytest.MonkeyPatch, fixed_dt: datetime) -> None:
    class FrozenDateTime:
        @classmethod
        def now(cls, tz: Optional[tzinfo] = None) -> datetime:
            if tz:
                return fixed_dt.astimezone(tz)
            return fixed_dt

    import keypool.key_manager as key_manager_module

    monkeypatch.setattr(key_manager_module, "datetime", FrozenDateTime)


async def make_manager(
    document: Optional[Dict[str, Any]] = None, **config: Any
) -> KeyManager:
    manager = KeyManager(MemoryStore(document), Config(**config))
    await manager.load()
    return manager


async def make_service(manager: KeyManager, *keys: str, max_usage: int = 100, reset: str = "never") -> None:
    await manager.add_service("svc", "svc.example.com", max_usage, reset)
    for key in keys:
        await manager.add_key("svc", key)


@pytest.mark.asyncio
async def test_load_empty_store_writes_default_document():
    store = MemoryStore()
    manager = KeyManager(store, Config(default_max_usage=42))

    await manager.load()

    assert manager.pool.services == {}
    assert store.document == {
        "services": {},
        "defaultServiceConfig": {"maxUsage": 42, "resetFrequency": "never"},
    }


@pytest.mark.asyncio
async def test_load_migrates_legacy_document():
    store = MemoryStore({"keys": [{"key": "k1", "usageCount": 5}], "maxUsage": 10})
    manager = KeyManager(
        store,
        Config(legacy_service_name="svc", legacy_service_host="svc.example.com"),
    )

    await manager.load()

    service = manager.pool.services["svc"]
    assert service.max_usage == 10
    assert service.host == "svc.example.com"
    assert service.keys[0].usage_count == 5
    assert store.document is not None
    assert store.document["services"]["svc"]["keys"][0]["usageCount"] == 5


@pytest.mark.asyncio
async def test_load_rejects_malformed_document():
    manager = KeyManager(MemoryStore({"services": {"svc": {"keys": [{}]}}}))

    with pytest.raises(PersistenceFailure):
        await manager.load()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "service",
    [
        {"host": "h", "maxUsage": -3, "keys": []},
        {"host": "h", "resetFrequency": "biweekly", "keys": []},
        {"host": "h", "keys": [{"key": 12345}]},
    ],
)
async def test_load_rejects_invalid_service_settings(service):
    manager = KeyManager(MemoryStore({"services": {"svc": service}}))

    with pytest.raises(PersistenceFailure):
        await manager.load()


@pytest.mark.asyncio
async def test_load_rejects_invalid_default_config():
    document = {
        "services": {},
        "defaultServiceConfig": {"maxUsage": 10, "resetFrequency": "yearly"},
    }
    manager = KeyManager(MemoryStore(document))

    with pytest.raises(PersistenceFailure):
        await manager.load()


@pytest.mark.asyncio
async def test_add_service_creates_then_updates():
    manager = await make_manager()

    assert await manager.add_service("svc", "a.example.com", 5, "daily") is True
    await manager.add_key("svc", "k1")
    await manager.set_remaining_uses("svc", "k1", 2)

    assert await manager.add_service("svc", "b.example.com", 8, "weekly") is False

    service = manager.pool.services["svc"]
    assert service.host == "b.example.com"
    assert service.max_usage == 8
    assert service.reset_frequency == "weekly"
    assert [(k.key, k.usage_count) for k in service.keys] == [("k1", 3)]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "args",
    [
        ("svc", "h", 0, "never"),
        ("svc", "h", -3, "never"),
        ("svc", "h", 10, "yearly"),
        ("svc", "h", True, "never"),
        ("", "h", 10, "never"),
        ("svc", "", 10, "never"),
        (123, "h", 10, "never"),
        ("svc", 8080, 10, "never"),
    ],
)
async def test_add_service_rejects_invalid_arguments(args):
    manager = await make_manager()

    with pytest.raises(InvalidArgument):
        await manager.add_service(*args)

    assert manager.pool.services == {}


@pytest.mark.asyncio
async def test_add_key_is_idempotent():
    manager = await make_manager()
    await make_service(manager)

    assert await manager.add_key("svc", "k1") is True
    assert await manager.add_key("svc", "k1") is False

    assert [k.key for k in manager.pool.services["svc"].keys] == ["k1"]


@pytest.mark.asyncio
async def test_add_key_sets_timestamps(monkeypatch):
    fixed = datetime(2026, 2, 13, 10, 0, tzinfo=timezone.utc)
    freeze_time(monkeypatch, fixed)
    manager = await make_manager()
    await make_service(manager, "k1")

    key = manager.pool.services["svc"].keys[0]
    assert key.usage_count == 0
    assert key.last_reset_time == fixed
    assert key.last_used_time is None


@pytest.mark.asyncio
async def test_add_key_with_initial_remaining():
    manager = await make_manager()
    await make_service(manager, max_usage=10)

    await manager.add_key("svc", "k1", initial_remaining=4)
    await manager.add_key("svc", "k2", initial_remaining=25)

    keys = manager.pool.services["svc"].keys
    assert keys[0].usage_count == 6
    assert keys[1].usage_count == 0


@pytest.mark.asyncio
async def test_add_key_unknown_service():
    manager = await make_manager()

    with pytest.raises(ServiceNotFound):
        await manager.add_key("missing", "k1")


@pytest.mark.asyncio
async def test_add_key_rejects_negative_remaining():
    manager = await make_manager()
    await make_service(manager)

    with pytest.raises(InvalidArgument):
        await manager.add_key("svc", "k1", initial_remaining=-1)


@pytest.mark.asyncio
async def test_add_key_rejects_non_string_key():
    store = MemoryStore()
    manager = KeyManager(store)
    await manager.load()
    await make_service(manager, "k1")
    saves = store.saves

    with pytest.raises(InvalidArgument):
        await manager.add_key("svc", 12345)

    assert store.saves == saves
    stats = await manager.get_stats("svc")
    assert [k["key"] for k in stats["keys"]] == ["k1..."]


@pytest.mark.asyncio
async def test_select_key_least_used():
    manager = await make_manager()
    await make_service(manager, "k1", "k2", "k3")
    keys = manager.pool.services["svc"].keys
    keys[0].usage_count = 80
    keys[1].usage_count = 10
    keys[2].usage_count = 50

    selection = await manager.select_key("svc")

    assert selection.key == "k2"
    assert selection.host == "svc.example.com"
    assert selection.remaining == 90
    assert selection.exhausted is False


@pytest.mark.asyncio
async def test_select_key_ties_go_to_first_key():
    manager = await make_manager()
    await make_service(manager, "k1", "k2")

    selection = await manager.select_key("svc")

    assert selection.key == "k1"


@pytest.mark.asyncio
async def test_select_key_falls_back_when_all_exhausted(caplog):
    manager = await make_manager()
    await make_service(manager, "k1", "k2", max_usage=5)
    keys = manager.pool.services["svc"].keys
    keys[0].usage_count = 9
    keys[1].usage_count = 6

    selection = await manager.select_key("svc")

    assert selection.key == "k2"
    assert selection.remaining == -1
    assert selection.exhausted is True
    assert "reached maximum usage" in caplog.text


@pytest.mark.asyncio
async def test_select_key_unknown_or_empty_service():
    manager = await make_manager()
    await make_service(manager)

    with pytest.raises(ServiceNotFound):
        await manager.select_key("missing")
    with pytest.raises(ServiceNotFound):
        await manager.select_key("svc")


@pytest.mark.asyncio
async def test_select_key_resets_expired_window(monkeypatch):
    freeze_time(monkeypatch, datetime(2026, 2, 12, 23, 59, tzinfo=timezone.utc))
    store = MemoryStore()
    manager = KeyManager(store, Config())
    await manager.load()
    await make_service(manager, "k1", max_usage=2, reset="daily")
    await manager.record_use("svc", "k1")
    await manager.record_use("svc", "k1")

    freeze_time(monkeypatch, datetime(2026, 2, 13, 0, 1, tzinfo=timezone.utc))
    selection = await manager.select_key("svc")

    assert selection.remaining == 2
    assert store.document is not None
    assert store.document["services"]["svc"]["keys"][0]["usageCount"] == 0


@pytest.mark.asyncio
async def test_record_use_increments_by_one(monkeypatch):
    fixed = datetime(2026, 2, 13, 10, 0, tzinfo=timezone.utc)
    freeze_time(monkeypatch, fixed)
    manager = await make_manager()
    await make_service(manager, "k1", max_usage=10)

    first = await manager.record_use("svc", "k1")
    second = await manager.record_use("svc", "k1")

    assert first is not None and second is not None
    assert (first.usage_count, first.remaining) == (1, 9)
    assert (second.usage_count, second.remaining) == (2, 8)
    assert manager.pool.services["svc"].keys[0].last_used_time == fixed


@pytest.mark.asyncio
async def test_record_use_unknown_service_or_key_returns_none():
    store = MemoryStore()
    manager = KeyManager(store)
    await manager.load()
    await make_service(manager, "k1")
    saves = store.saves

    assert await manager.record_use("missing", "k1") is None
    assert await manager.record_use("svc", "gone") is None
    assert await manager.record_use("svc", 12345) is None
    assert store.saves == saves


@pytest.mark.asyncio
async def test_set_remaining_uses():
    manager = await make_manager()
    await make_service(manager, "k1", max_usage=10)

    assert await manager.set_remaining_uses("svc", "k1", 3) is True
    assert manager.pool.services["svc"].keys[0].usage_count == 7

    await manager.set_remaining_uses("svc", "k1", 50)
    assert manager.pool.services["svc"].keys[0].usage_count == 0


@pytest.mark.asyncio
async def test_set_remaining_uses_errors():
    manager = await make_manager()
    await make_service(manager, "k1")

    with pytest.raises(ServiceNotFound):
        await manager.set_remaining_uses("missing", "k1", 1)
    with pytest.raises(KeyNotFound):
        await manager.set_remaining_uses("svc", "gone", 1)
    with pytest.raises(InvalidArgument):
        await manager.set_remaining_uses("svc", "k1", -1)
    with pytest.raises(InvalidArgument):
        await manager.set_remaining_uses("svc", 12345, 1)


@pytest.mark.asyncio
async def test_two_key_scenario():
    manager = await make_manager()
    await make_service(manager, "A", "B", max_usage=2)

    first = await manager.select_key("svc")
    assert first.key in ("A", "B")

    await manager.record_use("svc", "A")
    await manager.record_use("svc", "A")
    assert (await manager.select_key("svc")).key == "B"

    await manager.record_use("svc", "B")
    await manager.record_use("svc", "B")
    fallback = await manager.select_key("svc")
    assert fallback.key in ("A", "B")
    assert fallback.remaining <= 0
    assert fallback.exhausted is True


@pytest.mark.asyncio
async def test_failed_save_rolls_back():
    store = MemoryStore()
    manager = KeyManager(store)
    await manager.load()
    await make_service(manager, "k1")

    store.fail_saves = True
    with pytest.raises(PersistenceFailure):
        await manager.record_use("svc", "k1")
    with pytest.raises(PersistenceFailure):
        await manager.add_key("svc", "k2")

    service = manager.pool.services["svc"]
    assert [(k.key, k.usage_count) for k in service.keys] == [("k1", 0)]


@pytest.mark.asyncio
async def test_concurrent_record_use_loses_no_updates(tmp_path):
    manager = KeyManager(JsonFileStore(tmp_path / "pool.json"))
    await manager.load()
    await make_service(manager, "k1", max_usage=1000)

    await asyncio.gather(*[manager.record_use("svc", "k1") for _ in range(60)])

    assert manager.pool.services["svc"].keys[0].usage_count == 60
    reloaded = KeyManager(JsonFileStore(tmp_path / "pool.json"))
    await reloaded.load()
    assert reloaded.pool.services["svc"].keys[0].usage_count == 60


@pytest.mark.asyncio
async def test_persistence_round_trip(tmp_path):
    path = tmp_path / "pool.json"
    manager = KeyManager(JsonFileStore(path))
    await manager.load()
    for index in range(3):
        name = f"svc{index}"
        await manager.add_service(name, f"{name}.example.com", 10, "monthly")
        for key_index in range(4):
            await manager.add_key(name, f"{name}-key{key_index}")
        await manager.record_use(name, f"{name}-key1")

    reloaded = KeyManager(JsonFileStore(path))
    await reloaded.load()

    for name, service in manager.pool.services.items():
        restored = reloaded.pool.services[name]
        assert [
            (k.key, k.usage_count, k.last_reset_time, k.last_used_time)
            for k in restored.keys
        ] == [
            (k.key, k.usage_count, k.last_reset_time, k.last_used_time)
            for k in service.keys
        ]


@pytest.mark.asyncio
async def test_get_stats_masks_keys(monkeypatch):
    fixed = datetime(2026, 2, 13, 10, 0, tzinfo=timezone.utc)
    freeze_time(monkeypatch, fixed)
    manager = await make_manager()
    await make_service(manager, "abcdefghijkl", max_usage=10)
    await manager.record_use("svc", "abcdefghijkl")

    stats = await manager.get_stats("svc")

    assert stats == {
        "host": "svc.example.com",
        "maxUsage": 10,
        "resetFrequency": "never",
        "keys": [
            {
                "key": "abcdefgh...",
                "usageCount": 1,
                "remaining": 9,
                "lastReset": fixed.isoformat(),
                "lastUsed": fixed.isoformat(),
            }
        ],
    }
    assert list(await manager.get_stats()) == ["svc"]


@pytest.mark.asyncio
async def test_get_stats_reconciles_before_reporting(monkeypatch):
    start = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)
    freeze_time(monkeypatch, start)
    manager = await make_manager()
    await make_service(manager, "k1", reset="weekly")
    await manager.set_remaining_uses("svc", "k1", 40)

    freeze_time(monkeypatch, start + timedelta(days=7))
    stats = await manager.get_stats()

    assert stats["svc"]["keys"][0]["usageCount"] == 0


@pytest.mark.asyncio
async def test_get_stats_unknown_service():
    manager = await make_manager()

    with pytest.raises(ServiceNotFound):
        await manager.get_stats("missing")


@pytest.mark.asyncio
async def test_get_status_counts():
    manager = await make_manager()
    await make_service(manager, "k1", "k2", max_usage=1)
    await manager.record_use("svc", "k1")

    status = manager.get_status()

    assert status == {"total_services": 1, "total_keys": 2, "keys_available": 1}
