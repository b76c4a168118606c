from concurrent.futures import ThreadPoolExecutor

import pytest

from refinery.storage import DuplicateRecordError, JsonStore, RecordNotFoundError, StaleRecordError
from refinery.storage.vector import VectorIndex, embed


@pytest.fixture
def store(tmp_path):
    return JsonStore(tmp_path, "items", "item_id")


def test_insert_sets_version_and_rejects_duplicates(store):
    stored = store.insert({"item_id": "a", "value": 1})
    assert stored["version"] == 1
    assert store.get("a")["value"] == 1

    with pytest.raises(DuplicateRecordError):
        store.insert({"item_id": "a", "value": 2})


def test_replace_is_compare_and_swap(store):
    store.insert({"item_id": "a", "value": 1})

    updated = store.replace({"item_id": "a", "value": 2}, expected_version=1)
    assert updated["version"] == 2

    with pytest.raises(StaleRecordError):
        store.replace({"item_id": "a", "value": 3}, expected_version=1)
    assert store.get("a")["value"] == 2


def test_compare_and_set_only_once(store):
    store.insert({"item_id": "a", "status": "accepted"})

    store.compare_and_set("a", "status", "accepted", {"status": "superseded"})
    with pytest.raises(StaleRecordError):
        store.compare_and_set("a", "status", "accepted", {"status": "superseded"})

    with pytest.raises(RecordNotFoundError):
        store.compare_and_set("missing", "status", "accepted", {})


def test_concurrent_updates_are_serialised(store):
    store.insert({"item_id": "counter", "hits": 0})

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda i: store.update("counter", {f"hit_{i}": True}), range(20)))

    record = store.get("counter")
    assert record["version"] == 21
    assert all(record[f"hit_{i}"] for i in range(20))


def test_corrupt_records_are_skipped(store):
    store.insert({"item_id": "good"})
    (store.directory / "bad.json").write_text("{not json")

    assert [r["item_id"] for r in store.list()] == ["good"]


def test_ids_are_sanitised(store):
    store.insert({"item_id": "../escape", "value": 1})
    assert store.has("../escape")
    assert not (store.directory.parent / "escape.json").exists()


def test_update_and_remove_missing(store):
    assert store.update("missing", {"x": 1}) is None
    assert store.remove("missing") is False


def test_vector_search_ranks_closest_first(tmp_path):
    index = VectorIndex(JsonStore(tmp_path, "vectors", "vector_id"))
    index.index("adr-1", "decisions", "Use connection pooling for the database client")
    index.index("adr-2", "decisions", "Publish documentation for every tool")

    hits = index.search("decisions", "database connection pooling")
    assert hits[0].item_id == "adr-1"
    assert hits[0].score > hits[1].score
    assert index.stats()["by_namespace"]["decisions"] == 2

    with pytest.raises(ValueError):
        index.index("x", "unknown", "text")


def test_embed_is_unit_length():
    vector = embed("retry transient failures with backoff")
    assert sum(v * v for v in vector) == pytest.approx(1.0)
    assert embed("") == [0.0] * len(vector)
