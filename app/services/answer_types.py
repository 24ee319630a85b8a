"""
Answer payloads — a closed tagged union keyed by item type.

Raw answers arrive from the HTTP boundary as JSON (strings, lists, objects).
``parse_answer`` turns them into one of the typed payloads below or raises
ValidationError; nothing untyped flows past it.  ``serialize_answer`` produces
the text form persisted on ChecklistResponse.answer.

    TEXT, LONG_TEXT           -> TextAnswer
    DATE                      -> DateAnswer
    SINGLE_CHOICE, DROPDOWN_SELECT -> ChoiceAnswer
    MULTIPLE_CHOICE           -> MultiChoiceAnswer
    FILE                      -> FileAnswer
    PROPERTY_MAP              -> PropertyMapAnswer
    FIELD_SELECTOR            -> FieldSelectorAnswer
    "N/A" on allow_na items   -> NotApplicable
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date
from typing import Any, Union

from app.core.exceptions import ValidationError
from app.services.checklist_types import ItemSnapshot

NOT_APPLICABLE = "N/A"


@dataclass(frozen=True)
class TextAnswer:
    value: str


@dataclass(frozen=True)
class DateAnswer:
    value: date


@dataclass(frozen=True)
class ChoiceAnswer:
    value: str


@dataclass(frozen=True)
class MultiChoiceAnswer:
    values: frozenset[str]


@dataclass(frozen=True)
class FileAnswer:
    key: str
    url: str | None = None


@dataclass(frozen=True)
class PropertyMapAnswer:
    data: dict


@dataclass(frozen=True)
class FieldSelectorAnswer:
    field_ids: tuple[str, ...]


@dataclass(frozen=True)
class NotApplicable:
    pass


Answer = Union[
    TextAnswer, DateAnswer, ChoiceAnswer, MultiChoiceAnswer,
    FileAnswer, PropertyMapAnswer, FieldSelectorAnswer, NotApplicable,
]


def _fail(item: ItemSnapshot, message: str) -> ValidationError:
    return ValidationError(message, details={"item_id": item.id, "type": item.type})


def _as_list(item: ItemSnapshot, raw: Any) -> list[str]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raw = [raw]
    if not isinstance(raw, (list, tuple, set, frozenset)):
        raise _fail(item, f"'{item.name}' expects a list of values")
    values = [str(v).strip() for v in raw if v is not None and str(v).strip()]
    if not values:
        raise _fail(item, f"'{item.name}' requires at least one value")
    return values


def _check_options(item: ItemSnapshot, values: list[str]) -> None:
    # Items fed by a database source have no manual options to check against.
    if not item.options:
        return
    unknown = [v for v in values if v not in item.options]
    if unknown:
        raise _fail(item, f"'{item.name}' has no option(s) {', '.join(unknown)}")


def parse_answer(item: ItemSnapshot, raw: Any) -> Answer:
    """Validate ``raw`` against the item's type and return a typed payload.

    Raises:
        ValidationError: empty answer, payload shape mismatch, unknown option,
            or an unknown item type.
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise _fail(item, f"'{item.name}' requires a non-empty answer")

    if item.allow_na and isinstance(raw, str) and raw.strip() == NOT_APPLICABLE:
        return NotApplicable()

    match item.type:
        case "TEXT" | "LONG_TEXT":
            if not isinstance(raw, (str, int, float)) or isinstance(raw, bool):
                raise _fail(item, f"'{item.name}' expects text")
            return TextAnswer(str(raw).strip())
        case "DATE":
            if isinstance(raw, date):
                return DateAnswer(raw)
            try:
                return DateAnswer(date.fromisoformat(str(raw).strip()[:10]))
            except ValueError:
                raise _fail(item, f"'{item.name}' expects an ISO date (YYYY-MM-DD)")
        case "SINGLE_CHOICE" | "DROPDOWN_SELECT":
            if not isinstance(raw, str):
                raise _fail(item, f"'{item.name}' expects a single option")
            value = raw.strip()
            _check_options(item, [value])
            return ChoiceAnswer(value)
        case "MULTIPLE_CHOICE":
            values = _as_list(item, raw)
            _check_options(item, values)
            return MultiChoiceAnswer(frozenset(values))
        case "FILE":
            if isinstance(raw, dict):
                key = str(raw.get("key") or "").strip()
                if not key:
                    raise _fail(item, f"'{item.name}' expects a file key")
                return FileAnswer(key=key, url=raw.get("url"))
            if isinstance(raw, str):
                return FileAnswer(key=raw.strip())
            raise _fail(item, f"'{item.name}' expects a file reference")
        case "PROPERTY_MAP":
            if isinstance(raw, str):
                try:
                    raw = json.loads(raw)
                except ValueError:
                    raise _fail(item, f"'{item.name}' expects a property map object")
            if not isinstance(raw, dict):
                raise _fail(item, f"'{item.name}' expects a property map object")
            return PropertyMapAnswer(dict(raw))
        case "FIELD_SELECTOR":
            return FieldSelectorAnswer(tuple(_as_list(item, raw)))
        case _:
            raise _fail(item, f"Unknown item type '{item.type}'")


def serialize_answer(answer: Answer) -> str:
    """Text form stored on the response row."""
    match answer:
        case NotApplicable():
            return NOT_APPLICABLE
        case TextAnswer(value=value) | ChoiceAnswer(value=value):
            return value
        case DateAnswer(value=value):
            return value.isoformat()
        case MultiChoiceAnswer(values=values):
            return json.dumps(sorted(values))
        case FileAnswer(key=key):
            return key
        case PropertyMapAnswer(data=data):
            return json.dumps(data, sort_keys=True)
        case FieldSelectorAnswer(field_ids=field_ids):
            return json.dumps(list(field_ids))
        case _:
            raise TypeError(f"Unsupported answer payload: {answer!r}")


def is_not_applicable(item: ItemSnapshot, stored_answer: str | None) -> bool:
    """True when an allow_na item was answered N/A."""
    return bool(item.allow_na and stored_answer and stored_answer.strip() == NOT_APPLICABLE)
