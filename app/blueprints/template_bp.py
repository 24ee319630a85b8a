"""
Template blueprint — checklist templates and producers.

Endpoints:
    POST /api/v1/templates                  — create (index-based references)
    GET  /api/v1/templates                  — list (?folder=)
    GET  /api/v1/templates/<template_id>    — detail with levels, sections, items
    PUT  /api/v1/templates/<template_id>    — update top-level attributes
    POST /api/v1/producers                  — create producer with property fields
    GET  /api/v1/producers/<producer_id>    — producer detail

Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import paginate_query
from app.core.exceptions import NotFoundError, ValidationError
from app.services import entity_source, template_service

logger = logging.getLogger(__name__)

template_bp = Blueprint("template_bp", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@template_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return jsonify({"error": str(error)}), 404


@template_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return jsonify({"error": str(error), "details": error.details}), 422


# ═════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════


@template_bp.route("/templates", methods=["POST"])
def create_template():
    """Create a template.

    Body: {
        name, folder?, is_continuous?, is_level_based?, level_accumulative?,
        action_plan_prompt?, levels[], classifications[], scope_fields[],
        sections[{name, level_index?, iterate_over_fields?, items[...]}]
    }
    Returns: template dict with children (201).
    """
    data = request.get_json(silent=True) or {}
    template = template_service.create_template(data, created_by=data.get("created_by"))
    return jsonify(template.to_dict(include_children=True)), 201


@template_bp.route("/templates", methods=["GET"])
def list_templates():
    templates, total = paginate_query(template_service.templates_query(request.args.get("folder")))
    return jsonify({"items": [t.to_dict() for t in templates], "total": total}), 200


@template_bp.route("/templates/<template_id>", methods=["GET"])
def get_template(template_id):
    template = template_service.get_template(template_id)
    return jsonify(template.to_dict(include_children=True)), 200


@template_bp.route("/templates/<template_id>", methods=["PUT"])
def update_template(template_id):
    data = request.get_json(silent=True) or {}
    template = template_service.update_template(template_id, data)
    return jsonify(template.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Producers
# ═════════════════════════════════════════════════════════════════════════


@template_bp.route("/producers", methods=["POST"])
def create_producer():
    """Body: {name, identifier?, fields[{id?, name, area?}]}"""
    data = request.get_json(silent=True) or {}
    producer = entity_source.create_producer(data)
    return jsonify(producer.to_dict()), 201


@template_bp.route("/producers/<producer_id>", methods=["GET"])
def get_producer(producer_id):
    return jsonify(entity_source.get_producer(producer_id).to_dict()), 200
