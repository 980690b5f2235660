"""
Unit tests for model-output JSON extraction.
"""

import pytest

from ai_usage_gateway.core.errors import ParseError
from ai_usage_gateway.core.parsing import (
    ParseStrategy,
    fenced_block_strip,
    manual_field_extract,
    parse_model_json,
    parse_model_json_strict,
    regex_extract,
)

CATEGORY_FIELDS = ("category", "region", "confidence")
CATEGORY_DEFAULT = {"category": "general", "region": None, "confidence": 0.3}


class TestParseChain:
    """Test strategy ordering and defaults."""

    def test_direct_json(self):
        outcome = parse_model_json('{"category": "salud", "confidence": 0.8}', required=("category",))
        assert outcome.strategy == ParseStrategy.DIRECT
        assert outcome.value == {"category": "salud", "confidence": 0.8}

    def test_fenced_block_with_prose(self):
        """Fenced JSON surrounded by prose is recovered."""
        text = 'Here:\n```json\n{"category":"Economía","region":null,"confidence":0.9}\n```\nThanks'
        outcome = parse_model_json(text, required=("category",), fields=CATEGORY_FIELDS, default=CATEGORY_DEFAULT)

        assert outcome.strategy == ParseStrategy.FENCED_BLOCK
        assert outcome.value == {"category": "Economía", "region": None, "confidence": 0.9}
        assert outcome.recovered

    def test_no_json_returns_default(self):
        outcome = parse_model_json(
            "I cannot help with that.", required=("category",), fields=CATEGORY_FIELDS, default=CATEGORY_DEFAULT
        )
        assert outcome.strategy == ParseStrategy.DEFAULT
        assert outcome.value == CATEGORY_DEFAULT
        assert not outcome.recovered

    def test_prose_without_required_keys_returns_default(self):
        """Text with no JSON at all is never accepted as an empty object."""
        outcome = parse_model_json("plain prose", default={"titulo": "Original"})
        assert outcome.strategy == ParseStrategy.DEFAULT
        assert outcome.value == {"titulo": "Original"}
        assert not outcome.recovered

    def test_default_is_a_copy(self):
        outcome = parse_model_json("", default=CATEGORY_DEFAULT)
        outcome.value["category"] = "changed"
        assert CATEGORY_DEFAULT["category"] == "general"

    def test_missing_required_key_falls_through(self):
        """A JSON object without the required key is not accepted."""
        outcome = parse_model_json('{"region": "Biobío"}', required=("category",), default=CATEGORY_DEFAULT)
        assert outcome.strategy == ParseStrategy.DEFAULT

    def test_raw_newlines_inside_strings(self):
        text = '{"titulo": "Nuevo", "contenido": "Uno.\n\nDos."}'
        outcome = parse_model_json(text, required=("titulo",))
        assert outcome.value["contenido"] == "Uno.\n\nDos."


class TestStrategies:
    """Test the individual strategies."""

    def test_fenced_block_strip_without_braces(self):
        assert fenced_block_strip("```json\nnot json\n```", (), ()) is None

    def test_regex_finds_object_among_several(self):
        text = 'first {"other": 1} then {"category": "deportes"} end'
        assert regex_extract(text, ("category",), ()) == {"category": "deportes"}

    def test_manual_fields_from_broken_json(self):
        """Scalar fields are recovered from output that is not valid JSON."""
        text = '{"category": "tecnología", "region": null, "confidence": 0.85, }} trailing'
        value = manual_field_extract(text, ("category",), CATEGORY_FIELDS)
        assert value == {"category": "tecnología", "region": None, "confidence": 0.85}

    def test_manual_fields_picked_by_chain(self):
        text = 'category is "category": "salud" and "confidence": 1'
        outcome = parse_model_json(text, required=("category",), fields=CATEGORY_FIELDS)
        assert outcome.strategy == ParseStrategy.MANUAL_FIELDS
        assert outcome.value == {"category": "salud", "confidence": 1}


class TestStrictParsing:
    """Test the raising variant."""

    def test_strict_returns_value(self):
        assert parse_model_json_strict('{"a": 1}', required=("a",)) == {"a": 1}

    def test_strict_raises(self):
        with pytest.raises(ParseError) as exc_info:
            parse_model_json_strict("nope", required=("a",))
        assert exc_info.value.raw_text == "nope"

    def test_strict_raises_without_required_keys(self):
        with pytest.raises(ParseError):
            parse_model_json_strict("no json at all")

    def test_manual_fields_nothing_matched(self):
        assert manual_field_extract("plain prose", (), CATEGORY_FIELDS) is None
