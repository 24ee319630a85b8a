"""
Shared pytest fixtures for the Checklist Audit Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - template_payload: Level-based, continuous template definition
    - farm_template / item_ids: that template persisted, and its item ids by name
    - producer: Producer with two property fields (plot-a, plot-b)
"""

import copy

import pytest

from app import create_app
from app.models import db as _db
from app.services import composition_cache, entity_source, template_service


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # Checklist ids are random but cached views outlive the tables.
        composition_cache.clear_all()
        yield
        composition_cache.clear_all()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Domain fixtures ──────────────────────────────────────────────────────

_TEMPLATE_PAYLOAD = {
    "name": "Farm Compliance",
    "folder": "Agriculture",
    "is_continuous": True,
    "is_level_based": True,
    "level_accumulative": True,
    "levels": [
        {"name": "Basic", "order": 1},
        {"name": "Advanced", "order": 2},
    ],
    "classifications": [
        {"name": "Mandatory", "code": "MAND", "required_percentage": 100},
        {"name": "Recommended", "code": "REC", "required_percentage": 50},
    ],
    "scope_fields": [
        {"name": "Number of employees", "type": "NUMBER"},
        {"name": "Irrigated", "type": "YES_NO", "options": ["Yes", "No"]},
    ],
    "sections": [
        {
            "name": "General",
            "items": [
                {"name": "Company registration", "classification_index": 0},
                {
                    "name": "Employee contracts",
                    "classification_index": 0,
                    "conditions": [
                        {"scope_field_index": 0, "operator": "LT", "value": "1", "action": "REMOVE"},
                    ],
                },
            ],
        },
        {
            "name": "Basic practices",
            "level_index": 0,
            "items": [
                {"name": "Waste disposal plan", "type": "FILE", "classification_index": 0},
                {"name": "Training records", "classification_index": 1},
                {
                    "name": "Water usage log",
                    "classification_index": 1,
                    "conditions": [
                        {"scope_field_index": 1, "operator": "EQ", "value": "No", "action": "OPTIONAL"},
                    ],
                },
            ],
        },
        {
            "name": "Plot inspection",
            "level_index": 0,
            "iterate_over_fields": True,
            "items": [
                {"name": "Pesticide record", "classification_index": 0, "allow_na": True},
            ],
        },
        {
            "name": "Advanced practices",
            "level_index": 1,
            "items": [
                {
                    "name": "Carbon footprint report",
                    "classification_index": 0,
                    "blocks_advancement_to_level_index": 1,
                },
            ],
        },
    ],
}


@pytest.fixture()
def template_payload():
    """Fresh copy of the farm compliance template definition."""
    return copy.deepcopy(_TEMPLATE_PAYLOAD)


@pytest.fixture()
def farm_template(template_payload):
    return template_service.create_template(template_payload, created_by="auditor@example.com")


@pytest.fixture()
def item_ids(farm_template):
    """Item id by item name."""
    return {i.name: i.id for s in farm_template.sections for i in s.items}


@pytest.fixture()
def levels(farm_template):
    """Level id by level name."""
    return {lv.name: lv.id for lv in farm_template.levels}


@pytest.fixture()
def scope_fields(farm_template):
    """Scope field id by scope field name."""
    return {sf.name: sf.id for sf in farm_template.scope_fields}


@pytest.fixture()
def producer():
    return entity_source.create_producer({
        "name": "Green Acres",
        "identifier": "12.345.678/0001-90",
        "fields": [
            {"id": "plot-a", "name": "North Plot", "area": "12 ha"},
            {"id": "plot-b", "name": "South Plot", "area": "4 ha"},
        ],
    })
