"""
Answer payload parsing and serialization.

Each item type accepts its own payload shape; anything else is a
ValidationError before a response is ever written.
"""

import json
from datetime import date

import pytest

from app.core.exceptions import ValidationError
from app.services.answer_types import (
    NOT_APPLICABLE,
    ChoiceAnswer,
    DateAnswer,
    FieldSelectorAnswer,
    FileAnswer,
    MultiChoiceAnswer,
    NotApplicable,
    PropertyMapAnswer,
    TextAnswer,
    is_not_applicable,
    parse_answer,
    serialize_answer,
)
from app.services.checklist_types import ItemSnapshot


def _item(type_="TEXT", **kw):
    return ItemSnapshot(id="item-1", name="Evidence", type=type_, **kw)


class TestParseAnswer:

    def test_text_is_stripped(self):
        assert parse_answer(_item(), "  Registered in 2019 ") == TextAnswer("Registered in 2019")

    def test_numbers_are_accepted_as_text(self):
        assert parse_answer(_item("LONG_TEXT"), 42) == TextAnswer("42")

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_empty_answer_rejected(self, raw):
        with pytest.raises(ValidationError) as exc:
            parse_answer(_item(), raw)
        assert exc.value.details["item_id"] == "item-1"

    def test_date_parses_iso(self):
        assert parse_answer(_item("DATE"), "2025-03-01T10:00:00") == DateAnswer(date(2025, 3, 1))

    def test_date_rejects_garbage(self):
        with pytest.raises(ValidationError):
            parse_answer(_item("DATE"), "March first")

    def test_single_choice_checks_options(self):
        item = _item("SINGLE_CHOICE", options=("Yes", "No"))
        assert parse_answer(item, "Yes") == ChoiceAnswer("Yes")
        with pytest.raises(ValidationError):
            parse_answer(item, "Maybe")

    def test_dropdown_without_options_accepts_any_value(self):
        assert parse_answer(_item("DROPDOWN_SELECT"), "Soy") == ChoiceAnswer("Soy")

    def test_multiple_choice_accepts_json_list(self):
        item = _item("MULTIPLE_CHOICE", options=("A", "B", "C"))
        assert parse_answer(item, '["B", "A"]') == MultiChoiceAnswer(frozenset({"A", "B"}))

    def test_multiple_choice_requires_a_value(self):
        with pytest.raises(ValidationError):
            parse_answer(_item("MULTIPLE_CHOICE"), [])

    def test_file_accepts_key_or_object(self):
        assert parse_answer(_item("FILE"), "abc_report.pdf") == FileAnswer(key="abc_report.pdf")
        parsed = parse_answer(_item("FILE"), {"key": "k1", "url": "/x"})
        assert parsed == FileAnswer(key="k1", url="/x")

    def test_file_object_without_key_rejected(self):
        with pytest.raises(ValidationError):
            parse_answer(_item("FILE"), {"url": "/x"})

    def test_property_map_requires_object(self):
        assert parse_answer(_item("PROPERTY_MAP"), '{"lat": 1}') == PropertyMapAnswer({"lat": 1})
        with pytest.raises(ValidationError):
            parse_answer(_item("PROPERTY_MAP"), "[1, 2]")

    def test_field_selector_keeps_order(self):
        assert parse_answer(_item("FIELD_SELECTOR"), ["plot-b", "plot-a"]) == FieldSelectorAnswer(
            ("plot-b", "plot-a"),
        )

    def test_not_applicable_only_when_allowed(self):
        assert parse_answer(_item(allow_na=True), NOT_APPLICABLE) == NotApplicable()
        assert parse_answer(_item(), NOT_APPLICABLE) == TextAnswer(NOT_APPLICABLE)

    def test_unknown_item_type_rejected(self):
        with pytest.raises(ValidationError):
            parse_answer(_item("SIGNATURE"), "x")


class TestSerializeAnswer:

    def test_multi_choice_is_sorted_json(self):
        assert json.loads(serialize_answer(MultiChoiceAnswer(frozenset({"b", "a"})))) == ["a", "b"]

    def test_date_is_iso(self):
        assert serialize_answer(DateAnswer(date(2024, 12, 31))) == "2024-12-31"

    def test_not_applicable_marker(self):
        assert serialize_answer(NotApplicable()) == NOT_APPLICABLE

    def test_is_not_applicable(self):
        assert is_not_applicable(_item(allow_na=True), "N/A") is True
        assert is_not_applicable(_item(allow_na=False), "N/A") is False
        assert is_not_applicable(_item(allow_na=True), None) is False
