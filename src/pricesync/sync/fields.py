"""Field mapping between Source catalog columns and Remote record fields.

Single source of truth for which pricing fields exist, what they are
called on each side, how values are converted, and which direction each
field may travel. Customer prices are bidirectional; vendor costs are
owned by Remote purchasing and only ever flow Remote -> Source.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
MAX_PRICE = Decimal("999999.99")


class FieldKey(str, Enum):
    """Logical pricing fields shared by both systems."""

    PRICE_CUT = "price_cut"
    PRICE_ROLL = "price_roll"
    COST_CUT = "cost_cut"
    COST_ROLL = "cost_roll"


class SyncDirection(str, Enum):
    BIDIRECTIONAL = "bidirectional"
    REMOTE_TO_SOURCE = "remote_to_source"


# ── Value transforms ─────────────────────────────────────────────────────────


def parse_money(raw: Any) -> Decimal:
    """Parse a Remote money value into a cent-quantized Decimal.

    Blank, non-numeric and negative inputs become 0.00, matching how the
    Remote reports cleared price levels.
    """
    if raw is None or isinstance(raw, bool):
        return Decimal("0.00")
    text = str(raw).strip().replace(",", "").lstrip("$")
    if not text:
        return Decimal("0.00")
    try:
        value = Decimal(text)
    except InvalidOperation:
        return Decimal("0.00")
    if not value.is_finite() or value < 0:
        return Decimal("0.00")
    return to_cents(value)


def to_cents(value: Any) -> Decimal:
    """Quantize to cents. Values above MAX_PRICE are kept as-is for validate() to reject."""
    value = Decimal(value)
    if value.is_finite() and abs(value) > MAX_PRICE:
        return value
    return value.quantize(CENT)


def render_money(value: Decimal) -> float:
    """Render a Source value for the Remote payload (two decimals)."""
    return float(Decimal(value).quantize(CENT))


# ── Mapping table ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FieldMapping:
    """One logical field and its names and direction on both sides."""

    key: FieldKey
    source_field: str
    remote_field: str
    direction: SyncDirection
    label: str

    @property
    def pushable(self) -> bool:
        """Whether Source may push this field to the Remote."""
        return self.direction == SyncDirection.BIDIRECTIONAL


FIELD_MAPPINGS: tuple[FieldMapping, ...] = (
    FieldMapping(FieldKey.PRICE_CUT, "price_cut", "price_1_", SyncDirection.BIDIRECTIONAL, "Cut price"),
    FieldMapping(FieldKey.PRICE_ROLL, "price_roll", "price_1_5", SyncDirection.BIDIRECTIONAL, "Roll price"),
    FieldMapping(FieldKey.COST_CUT, "cost_cut", "cost", SyncDirection.REMOTE_TO_SOURCE, "Cut cost"),
    FieldMapping(
        FieldKey.COST_ROLL, "cost_roll", "custitem_f3_rollprice", SyncDirection.REMOTE_TO_SOURCE, "Roll cost"
    ),
)


# ── FieldSet ─────────────────────────────────────────────────────────────────


class FieldSet(Mapping[FieldKey, Decimal]):
    """Immutable mapping of recognized pricing fields to values."""

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[FieldKey, Any] | None = None) -> None:
        self._values: dict[FieldKey, Decimal] = {
            FieldKey(k): to_cents(v) for k, v in (values or {}).items()
        }

    def __getitem__(self, key: FieldKey) -> Decimal:
        return self._values[FieldKey(key)]

    def __iter__(self) -> Iterator[FieldKey]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"FieldSet({self.to_json()})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, FieldSet):
            return self._values == other._values
        return super().__eq__(other)

    __hash__ = None  # type: ignore[assignment]

    def to_json(self) -> dict[str, str]:
        """JSON-safe rendering (keys are field names, values decimal strings)."""
        return {k.value: str(v) for k, v in self._values.items()}

    @classmethod
    def from_json(cls, data: Mapping[str, Any] | None) -> FieldSet:
        return cls({FieldKey(k): Decimal(str(v)) for k, v in (data or {}).items()})


@dataclass(frozen=True)
class ClassifiedFields:
    """Result of splitting a raw Remote payload into recognized and ignored fields."""

    fields: FieldSet
    ignored: list[str]


# ── Mapper ───────────────────────────────────────────────────────────────────


class FieldMapper:
    """Stateless translator between Source columns, FieldSets and Remote payloads."""

    def __init__(self, mappings: tuple[FieldMapping, ...] = FIELD_MAPPINGS) -> None:
        self._mappings = mappings
        self._by_key = {m.key: m for m in mappings}
        self._by_remote = {m.remote_field: m for m in mappings}

    @property
    def mappings(self) -> tuple[FieldMapping, ...]:
        return self._mappings

    def mapping_for(self, key: FieldKey) -> FieldMapping:
        return self._by_key[FieldKey(key)]

    def pushable_keys(self) -> list[FieldKey]:
        return [m.key for m in self._mappings if m.pushable]

    def classify(self, raw: Mapping[str, Any], reserved: frozenset[str] = frozenset()) -> ClassifiedFields:
        """Split a raw Remote record into recognized pricing fields and ignored keys.

        Only fields present in ``raw`` are recognized; absent fields are left
        untouched downstream. ``reserved`` names envelope keys (ids, flags)
        that are neither recognized nor reported as ignored.
        """
        values: dict[FieldKey, Decimal] = {}
        ignored: list[str] = []
        for name, value in raw.items():
            mapping = self._by_remote.get(name)
            if mapping is not None:
                values[mapping.key] = parse_money(value)
            elif name not in reserved:
                ignored.append(name)
        return ClassifiedFields(fields=FieldSet(values), ignored=sorted(ignored))

    def validate(self, fields: FieldSet) -> list[str]:
        """Return validation errors for out-of-range values (empty when valid).

        Also logs a warning for each sell price at or below its cost when
        both are present in the same update.
        """
        errors: list[str] = []
        for key, value in fields.items():
            if value > MAX_PRICE:
                label = self._by_key[key].label
                errors.append(f"{label} {value} exceeds maximum {MAX_PRICE}")
        for price_key, cost_key in (
            (FieldKey.PRICE_CUT, FieldKey.COST_CUT),
            (FieldKey.PRICE_ROLL, FieldKey.COST_ROLL),
        ):
            price, cost = fields.get(price_key), fields.get(cost_key)
            if price and cost and price <= cost:
                logger.warning(
                    "fields.price_not_above_cost",
                    price_field=price_key.value,
                    price=str(price),
                    cost=str(cost),
                )
        return errors

    def to_source(self, fields: FieldSet) -> dict[str, Decimal]:
        """Map a FieldSet to Source column names."""
        return {self._by_key[k].source_field: v for k, v in fields.items()}

    def from_source(self, row: Mapping[str, Any] | Any) -> FieldSet:
        """Build a FieldSet from a Source row (mapping or attribute access).

        NULL columns are omitted rather than treated as zero.
        """
        values: dict[FieldKey, Decimal] = {}
        for m in self._mappings:
            if isinstance(row, Mapping):
                value = row.get(m.source_field)
            else:
                value = getattr(row, m.source_field, None)
            if value is not None:
                values[m.key] = Decimal(value)
        return FieldSet(values)

    def to_remote(self, fields: FieldSet) -> dict[str, float]:
        """Map a FieldSet to a Remote payload, dropping Remote-owned fields."""
        return {
            self._by_key[k].remote_field: render_money(v)
            for k, v in fields.items()
            if self._by_key[k].pushable
        }
