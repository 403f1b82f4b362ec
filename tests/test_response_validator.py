"""
Tests for the Response Validator

Tests cover:
1. Cleaning completion text (fences, quotes, surrounding prose)
2. Schema validation and defaults
3. SchemaError diagnostics
"""

import pytest

from conftest import client_group, line_item, to_json
from magic_order.error_handler import SchemaError
from magic_order.models import ItemStatus, MatchConfidence
from magic_order.response_validator import extract_json_text, validate_response


# ============================================
# EXTRACTION TESTS
# ============================================

class TestExtractJsonText:
    """Tests for extract_json_text"""

    def test_bare_array_untouched(self):
        assert extract_json_text('[{"a": 1}]') == '[{"a": 1}]'

    def test_strips_json_fence(self):
        text = '```json\n[{"a": 1}]\n```'
        assert extract_json_text(text) == '[{"a": 1}]'

    def test_strips_plain_fence(self):
        text = '```\n[{"a": 1}]\n```'
        assert extract_json_text(text) == '[{"a": 1}]'

    def test_unclosed_fence_marker_removed(self):
        assert extract_json_text('```json [{"a": 1}]') == '[{"a": 1}]'

    def test_extracts_array_from_prose(self):
        text = 'Here are the orders: [ {"a": 1}, {"b": 2} ] Let me know!'
        assert extract_json_text(text) == '[ {"a": 1}, {"b": 2} ]'

    def test_normalizes_typographic_quotes(self):
        text = "[{“name”: “Juan’s”}]"
        assert extract_json_text(text) == "[{\"name\": \"Juan's\"}]"

    def test_collapses_newlines_when_unparsable(self):
        assert extract_json_text('[{"a": "x\ny"}]') == '[{"a": "x y"}]'

    def test_valid_json_kept_verbatim(self):
        text = '[\n{"notes": "dijo “grande”"}\n]'
        assert extract_json_text(text) == text

    def test_fenced_valid_json_keeps_curly_quotes(self):
        text = '```json\n[{"notes": "talle “G”"}]\n```'
        assert extract_json_text(text) == '[{"notes": "talle “G”"}]'


# ============================================
# VALIDATION TESTS
# ============================================

class TestValidateResponse:
    """Tests for validate_response"""

    def test_valid_response(self, juan_response):
        results = validate_response(juan_response)

        assert len(results) == 1
        assert results[0].client.id == "c1"
        assert results[0].client.match_confidence == MatchConfidence.HIGH
        item = results[0].items[0]
        assert item.product.id == "p1"
        assert item.quantity == 3
        assert item.status == ItemStatus.CONFIRMED

    def test_empty_array_is_valid(self):
        assert validate_response("[]") == []

    def test_fenced_response(self, juan_response):
        results = validate_response(f"```json\n{juan_response}\n```")
        assert results[0].client.name == "Juan Perez"

    def test_defaults_applied(self):
        raw = '[{"client": {"name": "Eli"}, "items": [{"product": {"name": "Pollo"}, "quantity": 2}]}]'
        result = validate_response(raw)[0]

        assert result.client.id is None
        assert result.client.match_confidence == MatchConfidence.UNKNOWN
        assert result.items[0].status == ItemStatus.CONFIRMED
        assert result.items[0].alternatives == []
        assert result.items[0].variant is None

    def test_spanish_enum_spellings(self):
        raw = to_json([
            client_group("Eli", "c2", "alto", [line_item("Pollo", 1, "p3", status="duda")]),
            client_group("Xyz", None, "desconocido", [line_item("Leche", 1, "p1", status="confirmado")]),
        ])
        results = validate_response(raw)

        assert results[0].client.match_confidence == MatchConfidence.HIGH
        assert results[0].items[0].status == ItemStatus.AMBIGUOUS
        assert results[1].client.match_confidence == MatchConfidence.UNKNOWN
        assert results[1].items[0].status == ItemStatus.CONFIRMED

    def test_textual_null_ids(self):
        raw = to_json([client_group("Xyz", "null", "low", [line_item("Cosa", 1, "None")])])
        result = validate_response(raw)[0]

        assert result.client.id is None
        assert result.items[0].product.id is None

    def test_numeric_ids_become_strings(self):
        raw = to_json([client_group("Juan", 17, "high", [line_item("Leche", 1, 4)])])
        result = validate_response(raw)[0]

        assert result.client.id == "17"
        assert result.items[0].product.id == "4"

    def test_empty_variant_dropped(self):
        raw = to_json([client_group("Juan", "c1", "high", [
            line_item("Leche", 1, "p1", variant={"id": None, "name": ""}),
        ])])
        assert validate_response(raw)[0].items[0].variant is None

    def test_null_items_treated_as_empty(self):
        raw = '[{"client": {"name": "Juan"}, "items": null}]'
        assert validate_response(raw)[0].items == []

    def test_missing_items_treated_as_empty(self):
        raw = '[{"client": {"name": "Juan"}}]'
        assert validate_response(raw)[0].items == []

    def test_unmatched_text_kept(self):
        raw = to_json([client_group("Juan", "c1", "high", [], unmatched="y algo mas")])
        assert validate_response(raw)[0].unmatched_text == "y algo mas"

    def test_curly_quotes_inside_values_preserved(self):
        raw = to_json([client_group("Juan", "c1", "high", [
            line_item("Leche", 3, "p1", notes="dijo “grande”"),
        ])])
        assert validate_response(raw)[0].items[0].notes == "dijo “grande”"


# ============================================
# SCHEMA ERROR TESTS
# ============================================

class TestSchemaErrors:
    """Every violation is a SchemaError carrying the raw text"""

    @pytest.mark.parametrize("raw", [
        "",
        "not json at all",
        '[{"client": {"name": "Juan"}, "items": [}]',
        '{"client": {"name": "Juan"}, "items": []}',
        '"just a string"',
    ])
    def test_unparsable_or_not_array(self, raw):
        with pytest.raises(SchemaError):
            validate_response(raw)

    @pytest.mark.parametrize("item", [
        {"product": {"name": "Leche"}, "quantity": 0},
        {"product": {"name": "Leche"}, "quantity": -2},
        {"product": {"name": "Leche"}, "quantity": True},
        {"product": {"name": "Leche"}, "quantity": None},
        {"product": {"name": "Leche"}},
        {"product": {"id": "p1"}, "quantity": 1},
        {"quantity": 1},
        {"product": {"name": "Leche"}, "quantity": 1, "status": "maybe"},
    ])
    def test_invalid_items(self, item):
        raw = to_json([{"client": {"name": "Juan"}, "items": [item]}])
        with pytest.raises(SchemaError):
            validate_response(raw)

    def test_client_name_required(self):
        with pytest.raises(SchemaError):
            validate_response('[{"client": {"id": "c1"}, "items": []}]')

    def test_items_must_be_array(self):
        with pytest.raises(SchemaError):
            validate_response('[{"client": {"name": "Juan"}, "items": "3 leches"}]')

    def test_error_carries_raw_text(self):
        raw = "Sorry, I cannot help with that"
        with pytest.raises(SchemaError) as exc_info:
            validate_response(raw)

        assert exc_info.value.raw_text == raw
        assert exc_info.value.details["raw_json_response"] == raw
