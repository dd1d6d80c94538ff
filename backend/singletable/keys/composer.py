"""
Physical key strings from ordered facet values, and back.

A key renders as::

    <prefix>#<facet1>_<value1>#<facet2>_<value2>...

`\\` and `#` inside values are backslash-escaped, so splitting on unescaped
`#` recovers exactly the tuple that was composed. The batch coordinator
depends on this to match unprocessed keys to the caller's entries.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Literal, Mapping, Sequence

from .errors import InvalidFacetError, MalformedKeyError, MissingFacetError

DELIMITER = "#"
ESCAPE = "\\"
LABEL_SEP = "_"

FacetType = Literal["string", "number", "boolean"]

_INT_RE = re.compile(r"^-?\d+$")


def render_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def escape(text: str) -> str:
    return text.replace(ESCAPE, ESCAPE + ESCAPE).replace(DELIMITER, ESCAPE + DELIMITER)


def _parse_typed(kind: str, text: str) -> Any:
    if kind == "number":
        if _INT_RE.match(text):
            return int(text)
        try:
            number = Decimal(text)
        except InvalidOperation:
            raise ValueError(text) from None
        if not number.is_finite():
            raise ValueError(text)
        return number
    if kind == "boolean":
        if text in ("true", "false"):
            return text == "true"
        raise ValueError(text)
    return text


class KeyComposer:
    """Encoder/decoder for one key part (partition or sort) of one index."""

    def __init__(
        self,
        facets: Sequence[str],
        *,
        prefix: str,
        facet_types: Mapping[str, FacetType] | None = None,
        entity: str | None = None,
        index: str | None = None,
    ):
        self.facets: tuple[str, ...] = tuple(facets)
        self.prefix = str(prefix)
        self.facet_types: dict[str, FacetType] = dict(facet_types or {})
        self.entity = entity
        self.index = index

        if DELIMITER in self.prefix or ESCAPE in self.prefix:
            raise ValueError(f"Key prefix may not contain {DELIMITER!r} or {ESCAPE!r}: {self.prefix!r}")
        if len(set(self.facets)) != len(self.facets):
            raise ValueError(f"Duplicate facet in {self.facets!r}")
        for name in self.facets:
            if not name or DELIMITER in name or ESCAPE in name:
                raise ValueError(f"Invalid facet name: {name!r}")

    def compose(self, facet_values: Mapping[str, Any]) -> str:
        missing = tuple(f for f in self.facets if facet_values.get(f) is None)
        if missing:
            raise MissingFacetError(
                message=f"Missing facets for key: {', '.join(missing)}",
                entity=self.entity,
                index=self.index,
                facets=missing,
            )

        parts = [self.prefix]
        for name in self.facets:
            text = self._render(name, facet_values[name])
            parts.append(f"{name}{LABEL_SEP}{escape(text)}")
        return DELIMITER.join(parts)

    def parse(self, physical_key: str) -> dict[str, Any]:
        if not isinstance(physical_key, str):
            raise self._malformed(physical_key, "key is not a string")

        segments = self._split(physical_key)
        if segments[0] != self.prefix:
            raise self._malformed(physical_key, f"expected prefix {self.prefix!r}")
        if len(segments) != len(self.facets) + 1:
            raise self._malformed(
                physical_key, f"expected {len(self.facets)} facet segment(s), found {len(segments) - 1}"
            )

        out: dict[str, Any] = {}
        for name, segment in zip(self.facets, segments[1:]):
            label = name + LABEL_SEP
            if not segment.startswith(label):
                raise self._malformed(physical_key, f"segment for {name!r} is unlabelled")
            out[name] = self._coerce(name, segment[len(label):], physical_key)
        return out

    # --- internals ---

    def _render(self, name: str, value: Any) -> str:
        text = render_value(value)
        if self.facet_types.get(name, "string") == "string":
            return text
        # A typed facet must read back as the same text, or parse() would
        # return a different value (or reject the stored key outright).
        kind = self.facet_types[name]
        try:
            canonical = render_value(_parse_typed(kind, text)) == text
        except ValueError:
            canonical = False
        if not canonical:
            raise InvalidFacetError(
                message=f"Facet {name!r} value {value!r} is not a canonical {kind}",
                entity=self.entity,
                index=self.index,
                facet=name,
            )
        return text

    def _split(self, physical_key: str) -> list[str]:
        segments: list[str] = []
        buf: list[str] = []
        chars = iter(physical_key)
        for ch in chars:
            if ch == ESCAPE:
                nxt = next(chars, None)
                if nxt not in (ESCAPE, DELIMITER):
                    raise self._malformed(physical_key, "invalid escape sequence")
                buf.append(nxt)
            elif ch == DELIMITER:
                segments.append("".join(buf))
                buf = []
            else:
                buf.append(ch)
        segments.append("".join(buf))
        return segments

    def _coerce(self, name: str, text: str, physical_key: str) -> Any:
        kind = self.facet_types.get(name, "string")
        try:
            return _parse_typed(kind, text)
        except ValueError:
            raise self._malformed(physical_key, f"facet {name!r} is not a {kind}") from None

    def _malformed(self, physical_key: Any, reason: str) -> MalformedKeyError:
        return MalformedKeyError(
            message=f"Malformed key {physical_key!r}: {reason}",
            entity=self.entity,
            index=self.index,
            key=physical_key if isinstance(physical_key, str) else None,
        )
