from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

from ..keys.registry import AccessPatternRegistry, IndexDefinition

BatchKind = Literal["get", "put", "delete"]

KeyRef = tuple[Any, Any]


@dataclass(frozen=True, slots=True)
class BatchAttempt:
    """One store call: attempt number (0 = initial), what was sent, what came back."""

    number: int
    sent: list[dict[str, Any]]
    response: dict[str, Any]


@dataclass(slots=True)
class BatchResult:
    data: list[dict[str, Any]] = field(default_factory=list)
    unprocessed: list[dict[str, Any]] = field(default_factory=list)
    retry_attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": list(self.data),
            "unprocessed": list(self.unprocessed),
            "retryAttempts": int(self.retry_attempts),
        }


def write_request_key(request: Mapping[str, Any]) -> Mapping[str, Any]:
    if "PutRequest" in request:
        return request["PutRequest"]["Item"]
    if "DeleteRequest" in request:
        return request["DeleteRequest"]["Key"]
    raise ValueError(f"Unsupported write request: {sorted(request)}")


class ResponseAggregator:
    """
    Accumulates processed results across attempts and tracks what is still
    unprocessed, in physical form, for the next attempt.

    `correlation` maps a physical (pk, sk) pair to the caller's logical entry;
    unprocessed keys/items are handed back to the caller through it.
    """

    def __init__(
        self,
        *,
        kind: BatchKind,
        table_name: str,
        entity: str,
        registry: AccessPatternRegistry,
        primary: IndexDefinition,
        correlation: Mapping[KeyRef, Mapping[str, Any]],
        identifier_fields: tuple[str, ...] = (),
        raw: bool = False,
    ):
        self.kind = kind
        self.table_name = table_name
        self.entity = entity
        self.registry = registry
        self.primary = primary
        self.correlation = correlation
        self.identifier_fields = identifier_fields
        self.raw = bool(raw)

        self._key_fields = {
            f for d in registry.indexes(entity) for f in (d.pk.field, d.sk.field)
        }
        self._data: list[dict[str, Any]] = []
        self._unprocessed: list[dict[str, Any]] = []

    # --- attempt bookkeeping ---

    def begin_attempt(self) -> None:
        self._unprocessed = []

    @property
    def data(self) -> list[dict[str, Any]]:
        return list(self._data)

    @property
    def unprocessed(self) -> list[dict[str, Any]]:
        return list(self._unprocessed)

    def accounted(self) -> int:
        return len(self._data) + len(self._unprocessed)

    def merge(self, attempt: BatchAttempt) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        if self.kind == "get":
            processed, unprocessed = self._merge_read(attempt)
        else:
            processed, unprocessed = self._merge_write(attempt)
        self._data.extend(processed)
        self._unprocessed.extend(unprocessed)
        return processed, unprocessed

    def result(self, retry_attempts: int) -> BatchResult:
        return BatchResult(
            data=self.data,
            unprocessed=[self._logical(entry) for entry in self._unprocessed],
            retry_attempts=int(retry_attempts),
        )

    # --- shapes ---

    def _merge_read(self, attempt: BatchAttempt):
        resp = attempt.response or {}
        items = (resp.get("Responses") or {}).get(self.table_name) or []
        remaining = ((resp.get("UnprocessedKeys") or {}).get(self.table_name) or {}).get("Keys") or []
        return [self._format_item(i) for i in items], list(remaining)

    def _merge_write(self, attempt: BatchAttempt):
        resp = attempt.response or {}
        # Writes never echo successes: whatever is not reported back went through.
        remaining = list((resp.get("UnprocessedItems") or {}).get(self.table_name) or [])
        left = Counter(self._ref(write_request_key(r)) for r in remaining)

        processed: list[dict[str, Any]] = []
        for request in attempt.sent:
            ref = self._ref(write_request_key(request))
            if left[ref] > 0:
                left[ref] -= 1
                continue
            processed.append(self._logical(request))
        return processed, remaining

    # --- correlation ---

    def _ref(self, key_item: Mapping[str, Any]) -> KeyRef:
        return (key_item.get(self.primary.pk.field), key_item.get(self.primary.sk.field))

    def _logical(self, entry: Mapping[str, Any]) -> dict[str, Any]:
        physical = write_request_key(entry) if self.kind != "get" else entry
        known = self.correlation.get(self._ref(physical))
        if known is not None:
            return dict(known)
        if self.kind == "put":
            return self._strip(physical)
        return self.registry.parse_key(self.entity, self.primary.name, physical)

    def _strip(self, item: Mapping[str, Any]) -> dict[str, Any]:
        hidden = self._key_fields | set(self.identifier_fields)
        return {k: v for k, v in item.items() if k not in hidden}

    def _format_item(self, item: Mapping[str, Any]) -> dict[str, Any]:
        if self.raw:
            return dict(item)
        out = self._strip(item)
        for name, value in self.registry.parse_key(self.entity, self.primary.name, item).items():
            out.setdefault(name, value)
        return out
