from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class KeyCompositionError(Exception):
    """Base error for building or reading physical keys.

    Raised before any store call is made and never retried.
    """

    message: str
    entity: str | None = None
    index: str | None = None

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class MissingFacetError(KeyCompositionError):
    facets: tuple[str, ...] = field(default_factory=tuple)


@dataclass(slots=True)
class MalformedKeyError(KeyCompositionError):
    key: str | None = None


@dataclass(slots=True)
class UnknownIndexError(KeyCompositionError):
    pass


@dataclass(slots=True)
class InvalidFacetError(KeyCompositionError):
    facet: str | None = None
