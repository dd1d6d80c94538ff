from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from .composer import FacetType, KeyComposer
from .errors import MalformedKeyError, UnknownIndexError


@dataclass(frozen=True, slots=True)
class KeyDefinition:
    field: str
    facets: tuple[str, ...]
    prefix: str


@dataclass(frozen=True, slots=True)
class IndexDefinition:
    """One access pattern: the facets that build its partition and sort keys.

    `index` is the physical GSI/LSI name, or None for the table's own key.
    """

    name: str
    pk: KeyDefinition
    sk: KeyDefinition
    index: str | None = None
    facet_types: Mapping[str, FacetType] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "facet_types", MappingProxyType(dict(self.facet_types)))

    @property
    def is_primary(self) -> bool:
        return self.index is None

    @property
    def facets(self) -> tuple[str, ...]:
        return self.pk.facets + tuple(f for f in self.sk.facets if f not in self.pk.facets)


@dataclass(frozen=True, slots=True)
class CompositeKey:
    pk: str
    sk: str
    pk_field: str = "pk"
    sk_field: str = "sk"

    def as_key(self) -> dict[str, str]:
        return {self.pk_field: self.pk, self.sk_field: self.sk}


class AccessPatternRegistry:
    """
    Read-only store of IndexDefinitions keyed by (entity, access pattern).

    Several entities can share one registry when they live in the same table.
    A pair can be registered once; definitions are frozen afterwards.
    """

    def __init__(self):
        self._definitions: dict[tuple[str, str], IndexDefinition] = {}
        self._composers: dict[tuple[str, str], tuple[KeyComposer, KeyComposer]] = {}

    def register(self, entity: str, definition: IndexDefinition) -> None:
        ref = (str(entity), definition.name)
        if ref in self._definitions:
            raise ValueError(f"Index {definition.name!r} already registered for entity {entity!r}")
        self._definitions[ref] = definition

    @property
    def definitions(self) -> Mapping[tuple[str, str], IndexDefinition]:
        return MappingProxyType(self._definitions)

    def definition(self, entity: str, index_name: str) -> IndexDefinition:
        d = self._definitions.get((entity, index_name))
        if d is None:
            raise UnknownIndexError(
                message=f"No index {index_name!r} registered for entity {entity!r}",
                entity=entity,
                index=index_name,
            )
        return d

    def indexes(self, entity: str) -> list[IndexDefinition]:
        return [d for (e, _), d in self._definitions.items() if e == entity]

    def composers(self, entity: str, index_name: str) -> tuple[KeyComposer, KeyComposer]:
        ref = (entity, index_name)
        cached = self._composers.get(ref)
        if cached is not None:
            return cached

        d = self.definition(entity, index_name)
        pk = KeyComposer(
            d.pk.facets, prefix=d.pk.prefix, facet_types=d.facet_types, entity=entity, index=d.name
        )
        sk = KeyComposer(
            d.sk.facets, prefix=d.sk.prefix, facet_types=d.facet_types, entity=entity, index=d.name
        )
        pair = (pk, sk)
        self._composers[ref] = pair
        return pair

    def resolve_key(self, entity: str, index_name: str, facet_values: Mapping[str, Any]) -> CompositeKey:
        d = self.definition(entity, index_name)
        pk, sk = self.composers(entity, index_name)
        return CompositeKey(
            pk=pk.compose(facet_values),
            sk=sk.compose(facet_values),
            pk_field=d.pk.field,
            sk_field=d.sk.field,
        )

    def parse_key(self, entity: str, index_name: str, key_item: Mapping[str, Any]) -> dict[str, Any]:
        """Recover the facet mapping from a stored key or item."""
        d = self.definition(entity, index_name)
        pk, sk = self.composers(entity, index_name)
        if d.pk.field not in key_item or d.sk.field not in key_item:
            raise MalformedKeyError(
                message=f"Item lacks key fields {d.pk.field!r}/{d.sk.field!r}",
                entity=entity,
                index=index_name,
            )
        return {**pk.parse(key_item[d.pk.field]), **sk.parse(key_item[d.sk.field])}
