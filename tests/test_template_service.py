"""
Tests — Template Service (index resolution, validation, snapshot, versioning).
"""

import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.models.audit import AuditLog
from app.models.template import Template
from app.services import template_service


class TestCreateTemplate:

    def test_index_references_resolve_to_ids(self, farm_template, levels, scope_fields):
        sections = {s.name: s for s in farm_template.sections}
        assert sections["General"].level_id is None
        assert sections["Basic practices"].level_id == levels["Basic"]
        assert sections["Advanced practices"].level_id == levels["Advanced"]

        carbon = sections["Advanced practices"].items[0]
        assert carbon.blocks_advancement_to_level_id == levels["Advanced"]
        assert carbon.classification_id == farm_template.classifications[0].id

        contracts = sections["General"].items[1]
        assert contracts.conditions[0].scope_field_id == scope_fields["Number of employees"]

    def test_children_keep_submitted_order(self, farm_template):
        assert [s.name for s in farm_template.sections] == [
            "General", "Basic practices", "Plot inspection", "Advanced practices",
        ]
        assert [lv.name for lv in farm_template.levels] == ["Basic", "Advanced"]

    def test_audit_row_written(self, farm_template):
        row = AuditLog.query.filter_by(action="template.create").one()
        assert row.entity_id == farm_template.id
        assert row.actor == "auditor@example.com"

    def test_out_of_range_index_rejected(self, template_payload):
        template_payload["sections"][1]["level_index"] = 5
        with pytest.raises(ValidationError) as exc:
            template_service.create_template(template_payload)
        assert "sections[1].level_index" in exc.value.details
        assert Template.query.count() == 0

    def test_boolean_index_rejected(self, template_payload):
        template_payload["sections"][0]["items"][0]["classification_index"] = True
        with pytest.raises(ValidationError):
            template_service.create_template(template_payload)

    def test_condition_without_scope_fields_rejected(self, template_payload):
        template_payload["scope_fields"] = []
        with pytest.raises(ValidationError) as exc:
            template_service.create_template(template_payload)
        assert "no scope fields defined" in str(exc.value.details)

    @pytest.mark.parametrize("path,value", [
        (("sections", 0, "items", 0, "type"), "SIGNATURE"),
        (("sections", 0, "items", 1, "conditions", 0, "operator"), "CONTAINS"),
        (("sections", 0, "items", 1, "conditions", 0, "action"), "HIDE"),
        (("scope_fields", 0, "type"), "DATE"),
        (("classifications", 0, "required_percentage"), 120),
    ])
    def test_invalid_enum_or_range(self, template_payload, path, value):
        target = template_payload
        for key in path[:-1]:
            target = target[key]
        target[path[-1]] = value
        with pytest.raises(ValidationError):
            template_service.create_template(template_payload)

    def test_database_source_and_options_are_exclusive(self, template_payload):
        template_payload["sections"][0]["items"][0].update(
            {"type": "DROPDOWN_SELECT", "options": ["A"], "database_source": "crops"},
        )
        with pytest.raises(ValidationError):
            template_service.create_template(template_payload)

    def test_name_required(self, template_payload):
        template_payload["name"] = "  "
        with pytest.raises(ValidationError):
            template_service.create_template(template_payload)


class TestReadAndUpdate:

    def test_get_missing_template(self):
        with pytest.raises(NotFoundError):
            template_service.get_template("missing")

    def test_list_filters_by_folder(self, farm_template, template_payload):
        template_payload.update({"name": "Warehouse", "folder": "Logistics"})
        template_service.create_template(template_payload)
        assert [t.name for t in template_service.list_templates("Agriculture")] == ["Farm Compliance"]
        assert len(template_service.list_templates()) == 2

    def test_structural_change_bumps_version(self, farm_template):
        updated = template_service.update_template(farm_template.id, {"level_accumulative": False})
        assert updated.version == 2

    def test_cosmetic_change_keeps_version(self, farm_template):
        updated = template_service.update_template(farm_template.id, {"name": "Farm Compliance 2025"})
        assert updated.name == "Farm Compliance 2025"
        assert updated.version == 1


class TestSnapshot:

    def test_snapshot_mirrors_template(self, farm_template, item_ids):
        snap = template_service.to_snapshot(farm_template)
        assert snap.is_level_based and snap.level_accumulative and snap.is_continuous
        assert [lv.order for lv in snap.levels] == [1, 2]
        pesticide = snap.item(item_ids["Pesticide record"])
        assert pesticide.allow_na is True
        assert snap.sections[2].iterate_over_fields is True
        assert snap.item("missing") is None

    def test_snapshot_is_immutable(self, farm_template):
        snap = template_service.to_snapshot(farm_template)
        with pytest.raises(AttributeError):
            snap.name = "changed"
