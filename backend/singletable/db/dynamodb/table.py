from __future__ import annotations

from typing import Any, Protocol

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

from .calls import ddb_call


_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def _serialize_item(item: dict[str, Any]) -> dict[str, Any]:
    # DynamoDB client expects AttributeValue shape; TypeSerializer produces {'S': '...'} etc.
    return {k: _serializer.serialize(v) for k, v in item.items()}


def _deserialize_item(item: dict[str, Any]) -> dict[str, Any]:
    return {k: _deserializer.deserialize(v) for k, v in item.items()}


class StoreClient(Protocol):
    """The part of a boto3 DynamoDB resource/client the batch core calls."""

    def batch_get_item(self, **kwargs: Any) -> dict[str, Any]: ...

    def batch_write_item(self, **kwargs: Any) -> dict[str, Any]: ...


def put_request(item: dict[str, Any]) -> dict[str, Any]:
    return {"PutRequest": {"Item": item}}


def delete_request(key: dict[str, Any]) -> dict[str, Any]:
    return {"DeleteRequest": {"Key": key}}


class BatchTable:
    """
    Table-scoped BatchGetItem / BatchWriteItem.

    `client` is injected: a boto3 service resource (native values) or, with
    `attribute_values=True`, a low-level client whose payloads are
    AttributeValue-shaped. Responses are always handed back in native form.
    """

    def __init__(self, *, client: StoreClient, table_name: str, attribute_values: bool = False):
        self.table_name = str(table_name)
        self.client = client
        self.attribute_values = bool(attribute_values)

    def thread_safe(self) -> BatchTable:
        """A table whose client can be shared by worker threads.

        boto3 service resources are not thread-safe but their low-level client
        is, so a resource is swapped for `resource.meta.client` and payloads go
        through the AttributeValue (de)serializers instead.
        """
        low_level = getattr(getattr(self.client, "meta", None), "client", None)
        if self.attribute_values or low_level is None:
            return self
        return BatchTable(client=low_level, table_name=self.table_name, attribute_values=True)

    def batch_get(self, *, keys: list[dict[str, Any]], consistent_read: bool = False) -> dict[str, Any]:
        sent = [_serialize_item(k) for k in keys] if self.attribute_values else list(keys)
        request: dict[str, Any] = {"Keys": sent}
        if consistent_read:
            request["ConsistentRead"] = True

        def _op():
            return self.client.batch_get_item(RequestItems={self.table_name: request})

        resp = ddb_call("BatchGetItem", _op, table_name=self.table_name) or {}
        if not self.attribute_values:
            return resp

        out: dict[str, Any] = dict(resp)
        responses = resp.get("Responses") or {}
        out["Responses"] = {
            t: [_deserialize_item(i) for i in (items or [])] for t, items in responses.items()
        }
        unprocessed = resp.get("UnprocessedKeys") or {}
        out["UnprocessedKeys"] = {
            t: {**(v or {}), "Keys": [_deserialize_item(k) for k in ((v or {}).get("Keys") or [])]}
            for t, v in unprocessed.items()
        }
        return out

    def batch_write(self, *, requests: list[dict[str, Any]]) -> dict[str, Any]:
        sent = [self._serialize_request(r) for r in requests] if self.attribute_values else list(requests)

        def _op():
            return self.client.batch_write_item(RequestItems={self.table_name: sent})

        resp = ddb_call("BatchWriteItem", _op, table_name=self.table_name) or {}
        if not self.attribute_values:
            return resp

        out: dict[str, Any] = dict(resp)
        unprocessed = resp.get("UnprocessedItems") or {}
        out["UnprocessedItems"] = {
            t: [self._deserialize_request(r) for r in (reqs or [])] for t, reqs in unprocessed.items()
        }
        return out

    @staticmethod
    def _serialize_request(request: dict[str, Any]) -> dict[str, Any]:
        if "PutRequest" in request:
            return put_request(_serialize_item(request["PutRequest"]["Item"]))
        if "DeleteRequest" in request:
            return delete_request(_serialize_item(request["DeleteRequest"]["Key"]))
        raise ValueError(f"Unsupported write request: {sorted(request)}")

    @staticmethod
    def _deserialize_request(request: dict[str, Any]) -> dict[str, Any]:
        if "PutRequest" in request:
            return put_request(_deserialize_item(request["PutRequest"]["Item"]))
        if "DeleteRequest" in request:
            return delete_request(_deserialize_item(request["DeleteRequest"]["Key"]))
        raise ValueError(f"Unsupported write request: {sorted(request)}")
