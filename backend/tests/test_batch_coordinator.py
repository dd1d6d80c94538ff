from __future__ import annotations

import threading
from typing import Any

import pytest

from singletable.batch.coordinator import BatchCoordinator, chunked
from singletable.db.dynamodb.errors import DdbError
from singletable.db.dynamodb.table import BatchTable
from singletable.keys.errors import InvalidFacetError, MissingFacetError, UnknownIndexError
from singletable.keys.registry import AccessPatternRegistry, IndexDefinition, KeyDefinition

TABLE = "main"


def _registry(*, with_gsi: bool = False) -> AccessPatternRegistry:
    reg = AccessPatternRegistry()
    reg.register(
        "Order",
        IndexDefinition(
            name="primary",
            pk=KeyDefinition(field="pk", facets=("tenant",), prefix="$shop"),
            sk=KeyDefinition(field="sk", facets=("orderId",), prefix="$order_1"),
            facet_types={"orderId": "number"},
        ),
    )
    if with_gsi:
        reg.register(
            "Order",
            IndexDefinition(
                name="byCustomer",
                index="gsi1",
                pk=KeyDefinition(field="gsi1pk", facets=("customer",), prefix="$shop"),
                sk=KeyDefinition(field="gsi1sk", facets=("orderId",), prefix="$order_1"),
                facet_types={"orderId": "number"},
            ),
        )
    return reg


class HalfEachCallClient:
    """Every call processes the first half (rounded up) of what it was sent."""

    def __init__(self):
        self.calls: list[list[dict[str, Any]]] = []
        self.snapshots: list[int] = []
        self._lock = threading.Lock()

    def batch_get_item(self, **kwargs: Any) -> dict[str, Any]:
        keys = kwargs["RequestItems"][TABLE]["Keys"]
        with self._lock:
            self.calls.append(keys)
        cut = (len(keys) + 1) // 2
        return {
            "Responses": {TABLE: [dict(k) for k in keys[:cut]]},
            "UnprocessedKeys": {TABLE: {"Keys": keys[cut:]}} if keys[cut:] else {},
        }

    def batch_write_item(self, **kwargs: Any) -> dict[str, Any]:
        reqs = kwargs["RequestItems"][TABLE]
        with self._lock:
            self.calls.append(reqs)
        cut = (len(reqs) + 1) // 2
        return {"UnprocessedItems": {TABLE: reqs[cut:]} if reqs[cut:] else {}}


def _coordinator(client: Any, registry: AccessPatternRegistry | None = None, **kw: Any) -> BatchCoordinator:
    kw.setdefault("sleep", None)
    return BatchCoordinator(
        table=BatchTable(client=client, table_name=TABLE),
        registry=registry or _registry(),
        entity="Order",
        identifiers={"__edb_e__": "Order", "__edb_v__": "1"},
        **kw,
    )


def _keys(n: int) -> list[dict[str, Any]]:
    return [{"tenant": "t1", "orderId": i} for i in range(n)]


def test_chunked_is_deterministic_slicing():
    assert chunked(list(range(7)), 3) == [[0, 1, 2], [3, 4, 5], [6]]
    assert chunked([], 3) == []
    with pytest.raises(ValueError):
        chunked([1], 0)


def test_reads_are_chunked_at_the_read_limit():
    client = HalfEachCallClient()
    res = _coordinator(client).batch_get(_keys(250), autoretry=0)

    assert [len(c) for c in client.calls] == [100, 100, 50]
    assert len(res.data) + len(res.unprocessed) == 250


def test_writes_are_chunked_at_the_write_limit():
    client = HalfEachCallClient()
    _coordinator(client).batch_delete(_keys(60), autoretry=0)
    assert [len(c) for c in client.calls] == [25, 25, 10]


def test_chunk_sizes_are_clamped_to_store_limits():
    c = _coordinator(HalfEachCallClient(), get_chunk_size=500, write_chunk_size=0)
    assert c.get_chunk_size == 100
    assert c.write_chunk_size == 1


def test_every_entry_is_accounted_for_at_each_attempt_boundary(monkeypatch):
    from singletable.batch.aggregator import ResponseAggregator

    client = HalfEachCallClient()
    coordinator = _coordinator(client, get_chunk_size=10)
    seen: list[int] = []
    original = ResponseAggregator.merge

    def _tracking_merge(self, attempt):
        out = original(self, attempt)
        seen.append(self.accounted())
        return out

    monkeypatch.setattr(ResponseAggregator, "merge", _tracking_merge)
    res = coordinator.batch_get(_keys(37), autoretry=10)

    # Pending per attempt: 37 (4 chunks), 18 (2), 9, 4, 2, 1. Mid-attempt totals
    # fall short; after the last chunk of each of the six attempts all 37 are
    # accounted for.
    assert seen.count(37) == 6
    assert seen[-1] == 37
    assert len(res.data) == 37
    assert res.unprocessed == []
    assert res.retry_attempts == 5


def test_retry_attempts_is_min_of_needed_and_budget():
    # Draining 37 keys one chunk at a time takes 5 retries.
    for budget, expected in [(0, 0), (2, 2), (5, 5), (50, 5)]:
        res = _coordinator(HalfEachCallClient(), get_chunk_size=100).batch_get(_keys(37), autoretry=budget)
        assert res.retry_attempts == expected


def test_parsed_facets_are_typed():
    res = _coordinator(HalfEachCallClient()).batch_get(_keys(1))
    assert res.data == [{"tenant": "t1", "orderId": 0}]


def test_chunks_of_one_attempt_can_run_concurrently():
    barrier = threading.Barrier(3, timeout=5)

    class BarrierClient(HalfEachCallClient):
        def batch_get_item(self, **kwargs: Any) -> dict[str, Any]:
            # All three chunks must be in flight at once to get past the barrier.
            barrier.wait()
            keys = kwargs["RequestItems"][TABLE]["Keys"]
            return {"Responses": {TABLE: list(keys)}}

    client = BarrierClient()
    res = _coordinator(client, get_chunk_size=2).batch_get(_keys(6), concurrency=3)
    assert len(res.data) == 6


def test_concurrent_failure_surfaces_after_all_chunks_settle():
    settled: list[int] = []

    class OneBadChunk(HalfEachCallClient):
        def batch_write_item(self, **kwargs: Any) -> dict[str, Any]:
            reqs = kwargs["RequestItems"][TABLE]
            first = reqs[0]["DeleteRequest"]["Key"]["sk"]
            settled.append(len(reqs))
            if first.endswith("orderId_2"):
                raise RuntimeError("boom")
            return {}

    with pytest.raises(DdbError, match="boom"):
        _coordinator(OneBadChunk(), write_chunk_size=2).batch_delete(_keys(6), concurrency=4)
    assert len(settled) == 3


def test_backoff_sleeps_between_attempts_only():
    slept: list[float] = []
    coordinator = _coordinator(HalfEachCallClient(), sleep=slept.append, base_delay_s=0.01, max_delay_s=0.01)
    res = coordinator.batch_get(_keys(4), autoretry=5)

    # 4 -> 2 -> 1 -> 0 pending: two retries, two sleeps.
    assert res.retry_attempts == 2
    assert len(slept) == 2
    assert all(0 <= s <= 0.01 for s in slept)


def test_put_writes_sparse_secondary_index_keys():
    client = HalfEachCallClient()
    coordinator = _coordinator(client, registry=_registry(with_gsi=True))
    coordinator.batch_put(
        [
            {"tenant": "t1", "orderId": 1, "customer": "c9"},
            {"tenant": "t1", "orderId": 2},
        ],
        autoretry=3,
    )

    first, second = (r["PutRequest"]["Item"] for r in client.calls[0])
    assert first["gsi1pk"] == "$shop#customer_c9"
    assert first["gsi1sk"] == "$order_1#orderId_1"
    assert "gsi1pk" not in second
    assert second["__edb_e__"] == "Order"


def test_composition_errors_are_raised_before_any_call():
    client = HalfEachCallClient()
    with pytest.raises(MissingFacetError):
        _coordinator(client).batch_get([{"tenant": "t1", "orderId": 1}, {"tenant": "t1"}])
    with pytest.raises(MissingFacetError):
        _coordinator(client).batch_put([{"orderId": 1}])
    with pytest.raises(InvalidFacetError):
        _coordinator(client).batch_put([{"tenant": "t1", "orderId": 1}, {"tenant": "t1", "orderId": "A-7"}])
    with pytest.raises(InvalidFacetError):
        _coordinator(client).batch_get([{"tenant": "t1", "orderId": "007"}])
    assert client.calls == []

    with pytest.raises(UnknownIndexError):
        BatchCoordinator(
            table=BatchTable(client=client, table_name=TABLE),
            registry=_registry(),
            entity="Nope",
            sleep=None,
        ).batch_get(_keys(1))


class _SerializedClient:
    """Low-level client double: AttributeValue-shaped requests and responses."""

    def __init__(self):
        self.calls: list[list[dict[str, Any]]] = []
        self._lock = threading.Lock()

    def batch_get_item(self, **kwargs: Any) -> dict[str, Any]:
        keys = kwargs["RequestItems"][TABLE]["Keys"]
        with self._lock:
            self.calls.append(keys)
        return {"Responses": {TABLE: list(keys)}}

    def batch_write_item(self, **kwargs: Any) -> dict[str, Any]:
        with self._lock:
            self.calls.append(kwargs["RequestItems"][TABLE])
        return {}


class _Meta:
    def __init__(self, client: Any):
        self.client = client


class _Resource(HalfEachCallClient):
    """Resource double that must not be shared across worker threads."""

    def __init__(self):
        super().__init__()
        self.meta = _Meta(_SerializedClient())
        self.threads: set[int] = set()

    def batch_get_item(self, **kwargs: Any) -> dict[str, Any]:
        self.threads.add(threading.get_ident())
        return super().batch_get_item(**kwargs)

    def batch_write_item(self, **kwargs: Any) -> dict[str, Any]:
        self.threads.add(threading.get_ident())
        return super().batch_write_item(**kwargs)


def test_concurrent_chunks_use_the_resources_low_level_client():
    resource = _Resource()
    res = _coordinator(resource, get_chunk_size=2).batch_get(_keys(6), autoretry=2, concurrency=3)

    assert resource.calls == []
    low_level = resource.meta.client
    assert len(low_level.calls) == 3
    assert low_level.calls[0][0]["pk"] == {"S": "$shop#tenant_t1"}
    assert sorted(d["orderId"] for d in res.data) == [0, 1, 2, 3, 4, 5]

    resource.meta.client = _SerializedClient()
    _coordinator(resource, write_chunk_size=2).batch_delete(_keys(4), concurrency=2)
    assert resource.calls == []
    sent = [r for call in resource.meta.client.calls for r in call]
    assert len(sent) == 4
    assert {"DeleteRequest": {"Key": {"pk": {"S": "$shop#tenant_t1"}, "sk": {"S": "$order_1#orderId_0"}}}} in sent


def test_sequential_chunks_call_the_injected_handle():
    resource = _Resource()
    res = _coordinator(resource, get_chunk_size=2).batch_get(_keys(4), autoretry=3)

    assert resource.meta.client.calls == []
    assert len(resource.threads) == 1
    assert len(res.data) == 4
