"""Unit tests for the field mapper.

Tests cover:
- Money parsing (blank, negative, formatted, non-numeric)
- Classification of raw Remote records into recognized and ignored fields
- Value validation and the price-at-or-below-cost warning
- Source and Remote conversions, including direction filtering
"""

from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

import pytest

from src.pricesync.sync.fields import (
    FIELD_MAPPINGS,
    FieldKey,
    FieldMapper,
    FieldSet,
    SyncDirection,
    parse_money,
    render_money,
)


@pytest.fixture
def mapper() -> FieldMapper:
    return FieldMapper()


# ── parse_money ──────────────────────────────────────────────────────────────


class TestParseMoney:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("89.99", Decimal("89.99")),
            (89.5, Decimal("89.50")),
            (12, Decimal("12.00")),
            ("1,234.5", Decimal("1234.50")),
            ("$10", Decimal("10.00")),
            ("10.005", Decimal("10.00")),
        ],
    )
    def test_numeric_values(self, raw, expected):
        assert parse_money(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "   ", "abc", "-5", -1, True, "NaN"])
    def test_blank_invalid_and_negative_become_zero(self, raw):
        assert parse_money(raw) == Decimal("0.00")

    def test_render_money_two_decimals(self):
        assert render_money(Decimal("89.9")) == 89.9
        assert render_money(Decimal("75")) == 75.0


# ── Mapping table ────────────────────────────────────────────────────────────


class TestMappingTable:
    def test_prices_are_bidirectional(self, mapper):
        assert mapper.mapping_for(FieldKey.PRICE_CUT).direction == SyncDirection.BIDIRECTIONAL
        assert mapper.mapping_for(FieldKey.PRICE_ROLL).direction == SyncDirection.BIDIRECTIONAL

    def test_costs_only_flow_from_remote(self, mapper):
        assert mapper.mapping_for(FieldKey.COST_CUT).direction == SyncDirection.REMOTE_TO_SOURCE
        assert mapper.mapping_for(FieldKey.COST_ROLL).direction == SyncDirection.REMOTE_TO_SOURCE

    def test_pushable_keys(self, mapper):
        assert mapper.pushable_keys() == [FieldKey.PRICE_CUT, FieldKey.PRICE_ROLL]

    def test_remote_names(self):
        names = {m.key: m.remote_field for m in FIELD_MAPPINGS}
        assert names == {
            FieldKey.PRICE_CUT: "price_1_",
            FieldKey.PRICE_ROLL: "price_1_5",
            FieldKey.COST_CUT: "cost",
            FieldKey.COST_ROLL: "custitem_f3_rollprice",
        }


# ── classify ─────────────────────────────────────────────────────────────────


class TestClassify:
    def test_recognized_and_ignored(self, mapper):
        raw = {
            "itemid": "OAK-A",
            "internalid": "1011",
            "price_1_": "89.99",
            "cost": "41",
            "displayname": "Oak A",
        }
        result = mapper.classify(raw, reserved=frozenset({"itemid", "internalid"}))
        assert result.fields == FieldSet({FieldKey.PRICE_CUT: "89.99", FieldKey.COST_CUT: "41"})
        assert result.ignored == ["displayname"]

    def test_absent_fields_are_not_recognized(self, mapper):
        result = mapper.classify({"price_1_5": ""})
        assert list(result.fields) == [FieldKey.PRICE_ROLL]
        assert result.fields[FieldKey.PRICE_ROLL] == Decimal("0.00")

    def test_no_pricing_fields(self, mapper):
        result = mapper.classify({"memo": "x"})
        assert len(result.fields) == 0
        assert result.ignored == ["memo"]


# ── validate ─────────────────────────────────────────────────────────────────


class TestValidate:
    def test_valid_values(self, mapper):
        assert mapper.validate(FieldSet({FieldKey.PRICE_CUT: "999999.99"})) == []

    def test_value_over_maximum(self, mapper):
        errors = mapper.validate(FieldSet({FieldKey.PRICE_ROLL: "1000000"}))
        assert len(errors) == 1
        assert "Roll price" in errors[0]

    def test_huge_value_is_reported_not_raised(self, mapper):
        fields = mapper.classify({"price_1_": "1e30"}).fields
        errors = mapper.validate(fields)
        assert len(errors) == 1
        assert "exceeds maximum" in errors[0]

    def test_price_below_cost_is_only_a_warning(self, mapper):
        fields = FieldSet({FieldKey.PRICE_CUT: "10", FieldKey.COST_CUT: "20"})
        assert mapper.validate(fields) == []


# ── Conversions ──────────────────────────────────────────────────────────────


class TestConversions:
    def test_to_source_uses_column_names(self, mapper):
        fields = FieldSet({FieldKey.PRICE_CUT: "89.99", FieldKey.COST_ROLL: "30"})
        assert mapper.to_source(fields) == {
            "price_cut": Decimal("89.99"),
            "cost_roll": Decimal("30.00"),
        }

    def test_from_source_omits_null_columns(self, mapper):
        row = SimpleNamespace(price_cut=Decimal("75.00"), price_roll=None, cost_cut=None, cost_roll=None)
        assert mapper.from_source(row) == FieldSet({FieldKey.PRICE_CUT: "75.00"})

    def test_from_source_accepts_mappings(self, mapper):
        fields = mapper.from_source({"price_roll": Decimal("60"), "cost_cut": Decimal("40")})
        assert fields == FieldSet({FieldKey.PRICE_ROLL: "60", FieldKey.COST_CUT: "40"})

    def test_to_remote_never_contains_costs(self, mapper):
        fields = FieldSet(
            {
                FieldKey.PRICE_CUT: "75.00",
                FieldKey.PRICE_ROLL: "60.00",
                FieldKey.COST_CUT: "40.00",
                FieldKey.COST_ROLL: "30.00",
            }
        )
        assert mapper.to_remote(fields) == {"price_1_": 75.0, "price_1_5": 60.0}


# ── FieldSet ─────────────────────────────────────────────────────────────────


class TestFieldSet:
    def test_json_form(self):
        fields = FieldSet({FieldKey.PRICE_CUT: Decimal("89.9")})
        assert fields.to_json() == {"price_cut": "89.90"}
        assert FieldSet.from_json(fields.to_json()) == fields

    def test_string_keys_are_accepted(self):
        assert FieldSet({"price_roll": "1"})[FieldKey.PRICE_ROLL] == Decimal("1.00")

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError):
            FieldSet({"price_bulk": "1"})
