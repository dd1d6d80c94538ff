"""Single-table DynamoDB entities: composite keys and self-retrying bulk operations."""

from .batch.aggregator import BatchResult
from .batch.backoff import normalize_autoretry
from .db.dynamodb.errors import DdbError
from .entity import Entity, EntitySchema
from .keys.errors import (
    InvalidFacetError,
    KeyCompositionError,
    MalformedKeyError,
    MissingFacetError,
    UnknownIndexError,
)
from .keys.registry import AccessPatternRegistry, CompositeKey, IndexDefinition, KeyDefinition

__all__ = [
    "AccessPatternRegistry",
    "BatchResult",
    "CompositeKey",
    "DdbError",
    "Entity",
    "EntitySchema",
    "IndexDefinition",
    "InvalidFacetError",
    "KeyCompositionError",
    "KeyDefinition",
    "MalformedKeyError",
    "MissingFacetError",
    "UnknownIndexError",
    "normalize_autoretry",
]
