from __future__ import annotations

import time
from types import MappingProxyType
from typing import Any, Callable, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .batch.aggregator import BatchResult
from .batch.coordinator import BatchCoordinator
from .db.dynamodb.table import BatchTable, StoreClient
from .keys.composer import FacetType
from .keys.registry import AccessPatternRegistry, IndexDefinition, KeyDefinition
from .settings import Settings, get_settings

# Attributes stamped on every written item so rows of different entities can
# be told apart inside the shared table.
IDENTIFIER_ENTITY = "__edb_e__"
IDENTIFIER_VERSION = "__edb_v__"


class ModelInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    service: str
    entity: str
    version: str = "1"


class AttributeSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = "string"


class KeySchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    field: str
    facets: list[str] = Field(default_factory=list)
    prefix: str | None = None


class IndexSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: str | None = None
    pk: KeySchema
    sk: KeySchema


class EntitySchema(BaseModel):
    """
    Only the parts of an entity declaration the key/batch core needs.

    Attribute types are read solely to type facet values parsed back out of keys.
    """

    model_config = ConfigDict(extra="ignore")

    model: ModelInfo
    table: str | None = None
    attributes: dict[str, AttributeSchema] = Field(default_factory=dict)
    indexes: dict[str, IndexSchema]

    @model_validator(mode="after")
    def _one_primary_index(self) -> "EntitySchema":
        primaries = [name for name, ix in self.indexes.items() if ix.index is None]
        if len(primaries) != 1:
            raise ValueError(
                f"Exactly one index must omit 'index' (the table key); found {len(primaries)}"
            )
        return self

    @property
    def primary_name(self) -> str:
        return next(name for name, ix in self.indexes.items() if ix.index is None)

    def facet_types(self) -> Mapping[str, FacetType]:
        out: dict[str, FacetType] = {}
        for name, attr in self.attributes.items():
            kind = (attr.type or "").strip().lower()
            if kind in ("string", "number", "boolean"):
                out[name] = kind  # type: ignore[assignment]
        return MappingProxyType(out)

    def index_definitions(self) -> list[IndexDefinition]:
        pk_prefix = f"${self.model.service}".lower()
        sk_prefix = f"${self.model.entity}_{self.model.version}".lower()
        types = self.facet_types()
        return [
            IndexDefinition(
                name=name,
                index=ix.index,
                pk=KeyDefinition(field=ix.pk.field, facets=tuple(ix.pk.facets), prefix=ix.pk.prefix or pk_prefix),
                sk=KeyDefinition(field=ix.sk.field, facets=tuple(ix.sk.facets), prefix=ix.sk.prefix or sk_prefix),
                facet_types=types,
            )
            for name, ix in self.indexes.items()
        ]


class Entity:
    """
    One logical record type stored in a shared DynamoDB table.

    The store client is injected (a boto3 DynamoDB resource, or a low-level
    client with `attribute_values=True`). When chunks are sent from several
    threads (`BATCH_CONCURRENCY` > 1) a resource is used through its
    thread-safe low-level client. Bulk verbs return a `BatchResult`;
    `result.to_dict()` gives `{"data", "unprocessed", "retryAttempts"}`.

    Example:
        users = Entity(schema, client=dynamodb_resource())
        res = users.batch_get([{"org": "acme", "id": "u1"}], autoretry=3)
    """

    def __init__(
        self,
        schema: Mapping[str, Any] | EntitySchema,
        *,
        client: StoreClient,
        table: str | None = None,
        registry: AccessPatternRegistry | None = None,
        settings: Settings | None = None,
        attribute_values: bool = False,
        sleep: Callable[[float], None] | None = time.sleep,
    ):
        self.schema = schema if isinstance(schema, EntitySchema) else EntitySchema.model_validate(schema)
        s = settings or get_settings()

        table_name = (table or self.schema.table or s.ddb_table_name or "").strip()
        if not table_name:
            raise ValueError("No table name: pass table=, set schema 'table', or DDB_TABLE_NAME")

        self.name = self.schema.model.entity
        self.version = self.schema.model.version
        self.client = client
        self.registry = registry if registry is not None else AccessPatternRegistry()
        for d in self.schema.index_definitions():
            self.registry.register(self.name, d)

        self.table = BatchTable(client=client, table_name=table_name, attribute_values=attribute_values)
        self.coordinator = BatchCoordinator(
            table=self.table,
            registry=self.registry,
            entity=self.name,
            identifiers={IDENTIFIER_ENTITY: self.name, IDENTIFIER_VERSION: self.version},
            get_chunk_size=s.get_chunk_size,
            write_chunk_size=s.write_chunk_size,
            concurrency=s.concurrency,
            base_delay_s=s.batch_retry_base_delay_s,
            max_delay_s=s.batch_retry_max_delay_s,
            sleep=sleep,
        )

    def key(self, facets: Mapping[str, Any], *, index: str | None = None) -> dict[str, str]:
        """Physical key attributes for `facets` under an access pattern (primary by default)."""
        return self.registry.resolve_key(self.name, index or self.schema.primary_name, facets).as_key()

    def batch_get(
        self,
        keys: Sequence[Mapping[str, Any]],
        *,
        autoretry: Any = None,
        concurrency: Any = None,
        consistent_read: bool = False,
        raw: bool = False,
    ) -> BatchResult:
        return self.coordinator.batch_get(
            keys, autoretry=autoretry, concurrency=concurrency, consistent_read=consistent_read, raw=raw
        )

    def batch_put(
        self,
        items: Sequence[Mapping[str, Any]],
        *,
        autoretry: Any = None,
        concurrency: Any = None,
    ) -> BatchResult:
        return self.coordinator.batch_put(items, autoretry=autoretry, concurrency=concurrency)

    def batch_delete(
        self,
        keys: Sequence[Mapping[str, Any]],
        *,
        autoretry: Any = None,
        concurrency: Any = None,
    ) -> BatchResult:
        return self.coordinator.batch_delete(keys, autoretry=autoretry, concurrency=concurrency)
