import pytest

from triptrack.config import PersistenceConfig, StorageBackend
from triptrack.infrastructure.storage.kv_store import (
    JsonFileStore,
    KeyValueStore,
    MemoryStore,
    SqliteStore,
    StorageError,
    open_store,
)


@pytest.fixture(params=["memory", "sqlite", "json"])
def kv(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    if request.param == "sqlite":
        return SqliteStore(tmp_path / "db" / "trip.db")
    return JsonFileStore(tmp_path / "trip.json")


def test_set_get_delete(kv):
    assert kv.get("trip-overlay-data") is None
    kv.set("trip-overlay-data", '{"totalTraveledKm": 1.5}')
    kv.set("trip-overlay-data", '{"totalTraveledKm": 2.5}')
    assert kv.get("trip-overlay-data") == '{"totalTraveledKm": 2.5}'
    kv.delete("trip-overlay-data")
    assert kv.get("trip-overlay-data") is None


def test_backends_satisfy_protocol(kv):
    assert isinstance(kv, KeyValueStore)


def test_sqlite_persists_across_instances(tmp_path):
    path = tmp_path / "trip.db"
    SqliteStore(path).set("k", "v")
    assert SqliteStore(path).get("k") == "v"


def test_json_file_corrupt_reads_empty(tmp_path):
    path = tmp_path / "trip.json"
    path.write_text("{broken", encoding="utf-8")
    store = JsonFileStore(path)
    assert store.get("k") is None
    store.set("k", "v")
    assert JsonFileStore(path).get("k") == "v"


def test_json_file_write_error(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    store = JsonFileStore(blocker / "trip.json")
    with pytest.raises(StorageError):
        store.set("k", "v")


def test_memory_store_read_only_mode():
    store = MemoryStore()
    store.fail_writes = True
    with pytest.raises(StorageError):
        store.set("k", "v")


@pytest.mark.parametrize(
    "backend, expected",
    [
        (StorageBackend.MEMORY, MemoryStore),
        (StorageBackend.SQLITE, SqliteStore),
        (StorageBackend.JSON, JsonFileStore),
    ],
)
def test_open_store(tmp_path, backend, expected):
    cfg = PersistenceConfig(backend=backend, path=tmp_path / "trip.data")
    assert isinstance(open_store(cfg), expected)
