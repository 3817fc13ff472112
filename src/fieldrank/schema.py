"""
Field schema and ranking configuration.

The schema is loaded once at start-up and never mutated; changing field
weights or the field set requires rebuilding the index.
"""

from __future__ import annotations

import json
import logging
import math
import os
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np

from fieldrank.errors import SchemaError, UnknownFieldError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Parameters
# -----------------------------------------------------------------------------


class Config:
    k1: float = float(os.environ.get("FIELDRANK_K1", 1.2))  # TF saturation
    b: float = float(os.environ.get("FIELDRANK_B", 0.75))  # length normalization
    default_top_k: int = int(os.environ.get("FIELDRANK_TOP_K", 20))
    schema_path: str | None = os.environ.get("FIELDRANK_SCHEMA")


DEFAULT_FIELDS: dict[str, float] = {
    "name": 3.0,
    "extension": 1.5,
    "content": 1.0,
    "metadata": 1.2,
}


def validate_b(value: float, what: str = "b") -> float:
    value = float(value)
    if not 0.0 <= value <= 1.0:
        raise SchemaError(f"{what} must be within [0, 1], got {value}")
    return value


@dataclass(frozen=True)
class FieldSpec:
    """
    A searchable field.

    Attributes:
        name: Field name as supplied by callers.
        boost: Positive weight of the field in the BM25F pseudo-frequency.
        b: Length normalization strength for the field, in [0, 1].
    """

    name: str
    boost: float = 1.0
    b: float = Config.b

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise SchemaError(f"field name must be a non-empty string, got {self.name!r}")
        boost = float(self.boost)
        if not (math.isfinite(boost) and boost > 0.0):
            raise SchemaError(f"boost of field {self.name!r} must be positive and finite, got {self.boost}")
        object.__setattr__(self, "boost", boost)
        object.__setattr__(self, "b", validate_b(self.b, f"b of field {self.name!r}"))


class FieldSchema(Mapping[str, FieldSpec]):
    """
    Immutable, ordered mapping of field name to FieldSpec.

    Field order is fixed at construction and defines the layout of the
    per-field count vectors stored in the index.
    """

    def __init__(self, specs: list[FieldSpec] | tuple[FieldSpec, ...]):
        if not specs:
            raise SchemaError("schema must define at least one field")
        specs = tuple(specs)
        names = [spec.name for spec in specs]
        if len(set(names)) != len(names):
            raise SchemaError(f"duplicate field names in schema: {names}")
        self._specs = specs
        self._positions = {name: i for i, name in enumerate(names)}
        self._boosts = np.array([s.boost for s in specs], dtype=np.float64)
        self._b_values = np.array([s.b for s in specs], dtype=np.float64)
        self._boosts.setflags(write=False)
        self._b_values.setflags(write=False)

    @classmethod
    def default(cls) -> FieldSchema:
        return cls([FieldSpec(name, boost) for name, boost in DEFAULT_FIELDS.items()])

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> FieldSchema:
        """
        Builds a schema from ``{"fields": {name: {"boost": x, "b": y}}}``.

        A bare ``{name: {...}}`` mapping is accepted as well; a number in place
        of the per-field mapping is read as the boost.
        """
        fields = data.get("fields", data) if isinstance(data, Mapping) else None
        if not isinstance(fields, Mapping):
            raise SchemaError("schema must be a mapping of field names")
        specs = []
        for name, options in fields.items():
            if isinstance(options, (int, float)):
                options = {"boost": options}
            if not isinstance(options, Mapping):
                raise SchemaError(f"invalid options for field {name!r}: {options!r}")
            try:
                specs.append(FieldSpec(name, options.get("boost", 1.0), options.get("b", Config.b)))
            except (TypeError, ValueError) as exc:
                raise SchemaError(f"invalid options for field {name!r}: {exc}") from exc
        return cls(specs)

    @classmethod
    def from_json(cls, path: str | os.PathLike) -> FieldSchema:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise SchemaError(f"could not load schema from {path}: {exc}") from exc
        schema = cls.from_mapping(data)
        logger.info("Loaded field schema from %s: %s", path, ", ".join(schema.names))
        return schema

    @classmethod
    def configured(cls) -> FieldSchema:
        """Schema from FIELDRANK_SCHEMA when set, the default schema otherwise."""
        if Config.schema_path:
            return cls.from_json(Config.schema_path)
        return cls.default()

    def to_dict(self) -> dict[str, Any]:
        return {"fields": {s.name: {"boost": s.boost, "b": s.b} for s in self._specs}}

    # Mapping interface

    def __getitem__(self, field: str) -> FieldSpec:
        return self._specs[self.position(field)]

    def __iter__(self) -> Iterator[str]:
        return iter(self.names)

    def __len__(self) -> int:
        return len(self._specs)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FieldSchema):
            return NotImplemented
        return self._specs == other._specs

    def __hash__(self) -> int:
        return hash(self._specs)

    def __repr__(self) -> str:
        inner = ", ".join(f"{s.name}={s.boost:g}/b{s.b:g}" for s in self._specs)
        return f"FieldSchema({inner})"

    # Lookups

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(s.name for s in self._specs)

    @property
    def boosts(self) -> NDArray[np.float64]:
        """Boost weights in field order (read-only)."""
        return self._boosts

    @property
    def b_values(self) -> NDArray[np.float64]:
        """Length normalization factors in field order (read-only)."""
        return self._b_values

    def fields(self) -> frozenset[str]:
        return frozenset(self._positions)

    def position(self, field: str) -> int:
        try:
            return self._positions[field]
        except (KeyError, TypeError):
            raise UnknownFieldError(field) from None

    def boost(self, field: str) -> float:
        return self[field].boost

    def b_param(self, field: str) -> float:
        return self[field].b
