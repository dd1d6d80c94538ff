from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence, TypeVar

from ..db.dynamodb.table import BatchTable, delete_request, put_request
from ..keys.errors import UnknownIndexError
from ..keys.registry import AccessPatternRegistry, CompositeKey, IndexDefinition
from ..observability.logging import get_logger
from ..settings import MAX_BATCH_GET_KEYS, MAX_BATCH_WRITE_REQUESTS
from .aggregator import BatchAttempt, BatchKind, BatchResult, KeyRef, ResponseAggregator
from .backoff import BackoffPolicy, BackoffState

log = get_logger("batch_coordinator")

T = TypeVar("T")

_OPERATIONS: dict[BatchKind, str] = {
    "get": "BatchGetItem",
    "put": "BatchWriteItem",
    "delete": "BatchWriteItem",
}


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    if size <= 0:
        raise ValueError("size must be > 0")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


@dataclass(slots=True)
class RetryState:
    attempt: int
    pending: list[dict[str, Any]]
    accumulated: ResponseAggregator


class BatchCoordinator:
    """
    Runs one entity's bulk get/put/delete against a table, resubmitting the
    store's unprocessed keys/items until done or the `autoretry` budget runs out.

    Attempts are sequential; the chunks of one attempt may be sent in parallel.
    A store error on any chunk fails the whole call and drops earlier results.
    """

    def __init__(
        self,
        *,
        table: BatchTable,
        registry: AccessPatternRegistry,
        entity: str,
        identifiers: Mapping[str, Any] | None = None,
        get_chunk_size: int = MAX_BATCH_GET_KEYS,
        write_chunk_size: int = MAX_BATCH_WRITE_REQUESTS,
        concurrency: int = 1,
        base_delay_s: float = 0.05,
        max_delay_s: float = 1.5,
        sleep: Callable[[float], None] | None = time.sleep,
    ):
        self.table = table
        self.registry = registry
        self.entity = entity
        self.identifiers = dict(identifiers or {})
        self.get_chunk_size = max(1, min(MAX_BATCH_GET_KEYS, int(get_chunk_size)))
        self.write_chunk_size = max(1, min(MAX_BATCH_WRITE_REQUESTS, int(write_chunk_size)))
        self.concurrency = max(1, int(concurrency))
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.sleep = sleep

    @property
    def primary(self) -> IndexDefinition:
        for d in self.registry.indexes(self.entity):
            if d.is_primary:
                return d
        raise UnknownIndexError(
            message=f"No primary index registered for entity {self.entity!r}",
            entity=self.entity,
        )

    # --- public verbs ---

    def batch_get(
        self,
        keys: Sequence[Mapping[str, Any]],
        *,
        autoretry: Any = None,
        concurrency: Any = None,
        consistent_read: bool = False,
        raw: bool = False,
    ) -> BatchResult:
        primary = self.primary
        correlation: dict[KeyRef, Mapping[str, Any]] = {}
        physical: list[dict[str, Any]] = []
        for key in keys:
            ck = self.registry.resolve_key(self.entity, primary.name, key)
            correlation.setdefault((ck.pk, ck.sk), dict(key))
            physical.append(ck.as_key())

        def _send(table: BatchTable, chunk: list[dict[str, Any]]) -> dict[str, Any]:
            return table.batch_get(keys=chunk, consistent_read=consistent_read)

        aggregator = self._aggregator("get", primary, correlation, raw=raw)
        return self._run("get", physical, aggregator, _send, autoretry=autoretry, concurrency=concurrency)

    def batch_put(
        self,
        items: Sequence[Mapping[str, Any]],
        *,
        autoretry: Any = None,
        concurrency: Any = None,
    ) -> BatchResult:
        primary = self.primary
        correlation: dict[KeyRef, Mapping[str, Any]] = {}
        requests: list[dict[str, Any]] = []
        for item in items:
            ck, payload = self._put_payload(primary, item)
            correlation.setdefault((ck.pk, ck.sk), dict(item))
            requests.append(put_request(payload))

        aggregator = self._aggregator("put", primary, correlation)
        return self._run("put", requests, aggregator, self._send_writes, autoretry=autoretry, concurrency=concurrency)

    def batch_delete(
        self,
        keys: Sequence[Mapping[str, Any]],
        *,
        autoretry: Any = None,
        concurrency: Any = None,
    ) -> BatchResult:
        primary = self.primary
        correlation: dict[KeyRef, Mapping[str, Any]] = {}
        requests: list[dict[str, Any]] = []
        for key in keys:
            ck = self.registry.resolve_key(self.entity, primary.name, key)
            correlation.setdefault((ck.pk, ck.sk), dict(key))
            requests.append(delete_request(ck.as_key()))

        aggregator = self._aggregator("delete", primary, correlation)
        return self._run("delete", requests, aggregator, self._send_writes, autoretry=autoretry, concurrency=concurrency)

    # --- attempt loop ---

    def _run(
        self,
        kind: BatchKind,
        entries: list[dict[str, Any]],
        aggregator: ResponseAggregator,
        send: Callable[[BatchTable, list[dict[str, Any]]], dict[str, Any]],
        *,
        autoretry: Any,
        concurrency: Any,
    ) -> BatchResult:
        policy = BackoffPolicy(autoretry, base_delay_s=self.base_delay_s, max_delay_s=self.max_delay_s)
        state = RetryState(attempt=0, pending=list(entries), accumulated=aggregator)
        if not state.pending:
            return aggregator.result(0)

        chunk_size = self.get_chunk_size if kind == "get" else self.write_chunk_size
        workers = self._workers(concurrency)
        ctx = {
            "operation": _OPERATIONS[kind],
            "kind": kind,
            "entity": self.entity,
            "table": self.table.table_name,
            "requested": len(entries),
            "autoretry": policy.budget,
        }

        policy.begin()
        while True:
            chunks = chunked(state.pending, chunk_size)
            log.info("batch_attempt", attempt=state.attempt, pending=len(state.pending), chunks=len(chunks), **ctx)

            try:
                responses = self._dispatch(chunks, send, workers)
            except Exception as e:
                log.warning("batch_failed", attempt=state.attempt, error=str(e), **ctx)
                raise

            state.accumulated.begin_attempt()
            for chunk, resp in zip(chunks, responses):
                state.accumulated.merge(BatchAttempt(number=state.attempt, sent=chunk, response=resp))

            remaining = state.accumulated.unprocessed
            status = policy.observe(len(remaining))
            if status is BackoffState.COMPLETE:
                log.info("batch_complete", attempts=state.attempt + 1, retries=policy.retries, **ctx)
                break
            if status is BackoffState.EXHAUSTED:
                log.warning(
                    "batch_exhausted", attempts=state.attempt + 1, retries=policy.retries, unprocessed=len(remaining), **ctx
                )
                break

            delay = policy.delay_for(policy.retries)
            log.info("batch_retry_scheduled", retry=policy.retries, unprocessed=len(remaining), delay_s=round(delay, 4), **ctx)
            if delay > 0 and self.sleep is not None:
                self.sleep(delay)
            state = RetryState(attempt=state.attempt + 1, pending=remaining, accumulated=state.accumulated)

        return state.accumulated.result(policy.retries)

    def _dispatch(
        self,
        chunks: list[list[dict[str, Any]]],
        send: Callable[[BatchTable, list[dict[str, Any]]], dict[str, Any]],
        workers: int,
    ) -> list[dict[str, Any]]:
        if workers <= 1 or len(chunks) <= 1:
            return [send(self.table, c) for c in chunks]

        table = self.table.thread_safe()
        with ThreadPoolExecutor(max_workers=min(workers, len(chunks))) as ex:
            futures = [ex.submit(send, table, c) for c in chunks]
        # Every chunk has settled here; the first failure in chunk order wins.
        return [f.result() for f in futures]

    # --- helpers ---

    def _workers(self, concurrency: Any) -> int:
        if isinstance(concurrency, int) and not isinstance(concurrency, bool) and concurrency > 0:
            return concurrency
        return self.concurrency

    @staticmethod
    def _send_writes(table: BatchTable, chunk: list[dict[str, Any]]) -> dict[str, Any]:
        return table.batch_write(requests=chunk)

    def _aggregator(
        self,
        kind: BatchKind,
        primary: IndexDefinition,
        correlation: Mapping[KeyRef, Mapping[str, Any]],
        *,
        raw: bool = False,
    ) -> ResponseAggregator:
        return ResponseAggregator(
            kind=kind,
            table_name=self.table.table_name,
            entity=self.entity,
            registry=self.registry,
            primary=primary,
            correlation=correlation,
            identifier_fields=tuple(self.identifiers),
            raw=raw,
        )

    def _put_payload(self, primary: IndexDefinition, item: Mapping[str, Any]) -> tuple[CompositeKey, dict[str, Any]]:
        payload = dict(item)
        key = self.registry.resolve_key(self.entity, primary.name, item)
        payload.update(key.as_key())
        for d in self.registry.indexes(self.entity):
            if d.is_primary:
                continue
            # Secondary indexes are sparse: skip those whose facets are absent.
            if any(item.get(f) is None for f in d.facets):
                continue
            payload.update(self.registry.resolve_key(self.entity, d.name, item).as_key())
        payload.update(self.identifiers)
        return key, payload
