"""
Checklist blueprint — checklist instances, responses and finalize workflow.

Endpoints:
    CHECKLISTS   /api/v1/checklists                                   GET, POST
                 /api/v1/checklists/<id>                              GET
    VIEWS        /api/v1/checklists/<id>/sections                     GET
                 /api/v1/checklists/<id>/level-achievement            GET
    SCOPE        /api/v1/checklists/<id>/scope-answers                GET, PUT
    RESPONSES    /api/v1/checklists/<id>/responses/<item_id>/<action> POST
                   action: submit | approve | reject | internal_fill | accept_ai_suggestion
    AI           /api/v1/checklists/<id>/ai/analyze                   POST (rate limited)
                 /api/v1/checklists/<id>/ai/action-plan               POST (rate limited)
    FINALIZE     /api/v1/checklists/<id>/finalize                     POST
                 /api/v1/checklists/<id>/partial-finalize             POST
    ATTACHMENTS  /api/v1/checklists/<id>/attachments                  POST (multipart)
                 /api/v1/attachments/<key>                            GET  (local backend)

Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request, send_from_directory

from app.ai.assistants import ActionPlanGenerator, ItemAnalyst
from app.ai.gateway import LLMGateway
from app.ai.prompt_registry import PromptRegistry
from app.blueprints import paginate_query
from app.core.exceptions import (
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    OpenChildrenError,
    ValidationError,
)
from app.integrations.attachment_store import LocalAttachmentStore, get_attachment_store
from app.services import checklist_finalize, checklist_service
from app.services.checklist_types import GLOBAL_FIELD_ID

logger = logging.getLogger(__name__)

checklist_bp = Blueprint("checklist_bp", __name__, url_prefix="/api/v1")

# ── Rate limiting ─────────────────────────────────────────────────────────
from app import limiter  # noqa: E402

_ai_limit = limiter.shared_limit(
    lambda: current_app.config.get("AI_ANALYZE_RATE_LIMIT", "30 per minute"), scope="ai_checklist",
)

# Request body keys forwarded to each response action.
_ACTION_PARAMS = {
    "submit": ("answer", "observation", "quantity", "file_url", "validity"),
    "approve": (),
    "reject": ("rejection_reason",),
    "internal_fill": ("answer", "status", "rejection_reason", "observation"),
    "accept_ai_suggestion": (),
}


# ── Lazy singletons stored on Flask app (test-isolation safe) ───────────────

def _get_gateway():
    if not hasattr(current_app, "_ai_gateway"):
        current_app._ai_gateway = LLMGateway()
    return current_app._ai_gateway


def _get_prompt_registry():
    if not hasattr(current_app, "_ai_prompt_registry"):
        current_app._ai_prompt_registry = PromptRegistry()
    return current_app._ai_prompt_registry


def _get_item_analyst():
    if not hasattr(current_app, "_ai_item_analyst"):
        current_app._ai_item_analyst = ItemAnalyst(
            gateway=_get_gateway(), prompt_registry=_get_prompt_registry(),
        )
    return current_app._ai_item_analyst


def _get_action_plan_generator():
    if not hasattr(current_app, "_ai_action_plan_generator"):
        current_app._ai_action_plan_generator = ActionPlanGenerator(
            gateway=_get_gateway(), prompt_registry=_get_prompt_registry(),
        )
    return current_app._ai_action_plan_generator


def _get_attachment_store():
    if not hasattr(current_app, "_attachment_store"):
        current_app._attachment_store = get_attachment_store(current_app.config)
    return current_app._attachment_store


def _actor(data: dict) -> str:
    return data.get("actor") or request.headers.get("X-Actor") or "system"


# ── Error handlers ────────────────────────────────────────────────────────────


@checklist_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return jsonify({"error": str(error)}), 404


@checklist_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return jsonify({"error": str(error), "details": error.details}), 422


@checklist_bp.errorhandler(OpenChildrenError)
def _handle_open_children(error: OpenChildrenError):
    return jsonify({"error": str(error), "open_child_ids": error.open_child_ids}), 409


@checklist_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return jsonify({"error": str(error)}), 409


@checklist_bp.errorhandler(ExternalServiceError)
def _handle_external(error: ExternalServiceError):
    logger.error("External service failure in checklist_bp endpoint=%s: %s", request.endpoint, error)
    return jsonify({"error": str(error), "service": error.service}), 502


# ═════════════════════════════════════════════════════════════════════════
# Checklists
# ═════════════════════════════════════════════════════════════════════════


@checklist_bp.route("/checklists", methods=["POST"])
def create_checklist():
    """Create an ORIGINAL checklist.

    Body: { template_id, producer_id?, target_level_id?, created_by? }
    Returns: checklist dict (201).
    """
    data = request.get_json(silent=True) or {}
    if not data.get("template_id"):
        return jsonify({"error": "template_id is required"}), 400
    checklist = checklist_service.create_checklist(
        data["template_id"],
        data.get("producer_id"),
        target_level_id=data.get("target_level_id"),
        created_by=data.get("created_by") or _actor(data),
    )
    return jsonify(checklist.to_dict()), 201


@checklist_bp.route("/checklists", methods=["GET"])
def list_checklists():
    """Query params: template_id, producer_id, parent_id, status, limit, offset."""
    rows, total = paginate_query(checklist_service.checklists_query(
        template_id=request.args.get("template_id"),
        producer_id=request.args.get("producer_id"),
        parent_id=request.args.get("parent_id"),
        status=request.args.get("status"),
    ))
    return jsonify({"items": [c.to_dict() for c in rows], "total": total}), 200


@checklist_bp.route("/checklists/<checklist_id>", methods=["GET"])
def get_checklist(checklist_id):
    include = request.args.get("include_responses", "").lower() in ("1", "true", "yes")
    checklist = checklist_service.load_checklist(checklist_id)
    return jsonify(checklist.to_dict(include_responses=include)), 200


@checklist_bp.route("/checklists/<checklist_id>/sections", methods=["GET"])
def get_sections(checklist_id):
    """Composed sections visible for the checklist's scope and target level."""
    return jsonify({"checklist_id": checklist_id, "sections": checklist_service.composed_view(checklist_id)}), 200


@checklist_bp.route("/checklists/<checklist_id>/level-achievement", methods=["GET"])
def get_level_achievement(checklist_id):
    return jsonify(checklist_service.level_achievement_view(checklist_id)), 200


# ── Scope answers ─────────────────────────────────────────────────────────────


@checklist_bp.route("/checklists/<checklist_id>/scope-answers", methods=["GET"])
def get_scope_answers(checklist_id):
    checklist = checklist_service.load_checklist(checklist_id)
    return jsonify({
        "checklist_id": checklist.id,
        "inherited_from": checklist_service.root_checklist(checklist).id if checklist.is_child else None,
        "answers": checklist_service.get_scope_answers(checklist),
    }), 200


@checklist_bp.route("/checklists/<checklist_id>/scope-answers", methods=["PUT"])
def put_scope_answers(checklist_id):
    """Body: { answers: {scope_field_id: value} }. An empty value deletes that answer."""
    data = request.get_json(silent=True) or {}
    answers = data.get("answers")
    if not isinstance(answers, dict):
        return jsonify({"error": "answers must be an object"}), 400
    result = checklist_service.set_scope_answers(checklist_id, answers, actor=_actor(data))
    return jsonify({"checklist_id": checklist_id, "answers": result}), 200


# ═════════════════════════════════════════════════════════════════════════
# Responses
# ═════════════════════════════════════════════════════════════════════════


@checklist_bp.route("/checklists/<checklist_id>/responses/<item_id>/<action>", methods=["POST"])
def response_action(checklist_id, item_id, action):
    """Run one response transition.

    Body: { field_id?, actor?, ...action parameters }
      submit:        answer, observation?, quantity?, file_url?, validity?
      reject:        rejection_reason
      internal_fill: answer, status?, rejection_reason?, observation?
    Returns: response dict (200).
    """
    if action not in _ACTION_PARAMS:
        return jsonify({"error": f"Unknown action: {action}", "allowed": sorted(_ACTION_PARAMS)}), 400
    data = request.get_json(silent=True) or {}
    field_id = data.get("field_id") or request.args.get("field_id") or GLOBAL_FIELD_ID
    kwargs = {k: data[k] for k in _ACTION_PARAMS[action] if k in data}

    row = checklist_service.apply_response_action(
        checklist_id, item_id, field_id, action, actor=_actor(data), **kwargs,
    )
    return jsonify(row.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# AI
# ═════════════════════════════════════════════════════════════════════════


@checklist_bp.route("/checklists/<checklist_id>/ai/analyze", methods=["POST"])
@_ai_limit
def analyze_response(checklist_id):
    """Ask the AI for a verdict on one answer; the suggestion is attached, never applied.

    Body: { item_id, field_id?, answer?, observation? }
    Returns: { status, reason, confidence, error }; error is set when the AI is unavailable.
    """
    data = request.get_json(silent=True) or {}
    if not data.get("item_id"):
        return jsonify({"error": "item_id is required"}), 400
    result = _get_item_analyst().analyze_response(
        checklist_id,
        data["item_id"],
        data.get("field_id") or GLOBAL_FIELD_ID,
        answer=data.get("answer"),
        observation=data.get("observation"),
    )
    return jsonify(result), 200


@checklist_bp.route("/checklists/<checklist_id>/ai/action-plan", methods=["POST"])
@_ai_limit
def generate_action_plan(checklist_id):
    data = request.get_json(silent=True) or {}
    plan = _get_action_plan_generator().generate(checklist_id, actor=_actor(data))
    return jsonify(plan.to_dict()), 201


# ═════════════════════════════════════════════════════════════════════════
# Finalize
# ═════════════════════════════════════════════════════════════════════════


@checklist_bp.route("/checklists/<checklist_id>/finalize", methods=["POST"])
def finalize(checklist_id):
    data = request.get_json(silent=True) or {}
    checklist = checklist_finalize.finalize(checklist_id, actor=_actor(data))
    return jsonify(checklist.to_dict()), 200


@checklist_bp.route("/checklists/<checklist_id>/partial-finalize", methods=["POST"])
def partial_finalize(checklist_id):
    """Body: { create_correction, create_completion, generate_action_plan, completion_target_level_id? }"""
    data = request.get_json(silent=True) or {}
    generate = bool(data.get("generate_action_plan", False))
    result = checklist_finalize.partial_finalize(
        checklist_id,
        create_correction=bool(data.get("create_correction", True)),
        create_completion=bool(data.get("create_completion", True)),
        generate_action_plan=generate,
        completion_target_level_id=data.get("completion_target_level_id"),
        actor=_actor(data),
        action_plan_generator=_get_action_plan_generator() if generate else None,
    )
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Attachments
# ═════════════════════════════════════════════════════════════════════════


@checklist_bp.route("/checklists/<checklist_id>/attachments", methods=["POST"])
def upload_attachment(checklist_id):
    """Multipart upload; the returned key goes into a response's file_url."""
    checklist_service.load_checklist(checklist_id)
    upload = request.files.get("file")
    if upload is None:
        return jsonify({"error": "file is required"}), 400
    store = _get_attachment_store()
    key = store.upload(upload.stream, upload.filename, upload.mimetype)
    logger.info(
        "Attachment uploaded: %s", key,
        extra={"checklist_id": checklist_id, "event_type": "attachment.upload"},
    )
    return jsonify({"key": key, "url": store.resolve(key)}), 201


@checklist_bp.route("/attachments/<key>", methods=["GET"])
def download_attachment(key):
    store = _get_attachment_store()
    if not isinstance(store, LocalAttachmentStore):
        return jsonify({"url": store.resolve(key)}), 200
    store.resolve(key)
    return send_from_directory(store.root_dir, key, as_attachment=True)
