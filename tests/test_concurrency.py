"""
Concurrency tests for the provider and stores.

Several threads (standing in for several application processes) share one
provider, or several providers share one server, and race on the same
store names, keys and indexes.
"""

import threading

from pymongo.errors import DuplicateKeyError, OperationFailure

from tagstore.provider import MongoDBProvider
from tagstore.types import StoreConfiguration, Tag

DUPLICATE = "E11000 duplicate key error collection: racing.c index: _id_ dup key"


def run_threads(target, count, *args):
    """Start count threads running target(i, *args); return any exceptions raised."""
    errors = []
    barrier = threading.Barrier(count)

    def worker(i):
        barrier.wait()
        try:
            target(i, *args)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return errors


class TestRegistry:

    def test_parallel_open_same_store(self, provider):
        """Every thread gets the same handle for one store name."""
        handles = []

        def open_it(i):
            handles.append(provider.open_store("Shared"))

        assert run_threads(open_it, 16) == []
        assert len(handles) == 16
        assert all(h is handles[0] for h in handles)
        assert len(provider.get_open_stores()) == 1

    def test_parallel_open_and_close(self, provider):
        """Opening, closing and listing stores concurrently stays consistent."""
        def churn(i):
            for n in range(50):
                store = provider.open_store(f"store{i % 4}")
                provider.get_open_stores()
                if n % 3 == 0:
                    store.close()

        assert run_threads(churn, 8) == []
        names = [s.name for s in provider.get_open_stores()]
        assert len(names) == len(set(names))


class TestWriteRace:

    def test_parallel_puts_same_key(self, mock_client):
        """Duplicate key errors from racing upserts are absorbed by retries."""
        provider = MongoDBProvider(client=mock_client, max_attempts=10, time_between_retries=0)
        store = provider.open_store("racing")
        collection = mock_client.collection("racing")
        collection.fail_on("replace_one", *[DuplicateKeyError(DUPLICATE) for _ in range(4)])

        def put(i):
            store.put("shared-key", f'"from {i}"'.encode(), [Tag("worker", str(i))])

        assert run_threads(put, 8) == []
        assert collection.calls["replace_one"] == 8 + 4

        value = store.get("shared-key")
        tags = store.get_tags("shared-key")
        assert value in {f'"from {i}"'.encode() for i in range(8)}
        # Value and tags come from the same write
        assert value == f'"from {tags[0].value}"'.encode()
        provider.close()

    def test_parallel_puts_distinct_keys(self, provider):
        store = provider.open_store("many")

        def put(i):
            for n in range(20):
                store.put(f"w{i}-{n}", b"v", [Tag("worker", str(i))])

        assert run_threads(put, 8) == []
        it = store.query("worker")
        assert it.total_items() == 160
        it.close()


class TestIndexRace:

    def test_two_providers_configure_same_store(self, mock_client):
        """Concurrent index builds converge on the same set."""
        providers = [
            MongoDBProvider(client=mock_client, max_attempts=10, time_between_retries=0)
            for _ in range(2)
        ]
        for p in providers:
            p.open_store("indexed")
        mock_client.collection("indexed").fail_on(
            "create_indexes",
            OperationFailure(
                "Existing index build in progress on the same collection. "
                "Collection is limited to a single index build at a time."
            ),
        )

        def configure(i):
            providers[i].set_store_config("indexed", StoreConfiguration(["color", "size"]))

        assert run_threads(configure, 2) == []
        assert sorted(providers[0].get_store_config("indexed").tag_names) == ["color", "size"]
        for p in providers:
            p.close()
