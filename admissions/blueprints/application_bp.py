"""
Application blueprint — starting applications and moving them through stages.

Endpoints:
    POST /api/v1/applications
         Body: { "application_type": "undergraduate", "applicant_ref": "...", "facts": {...} }
         Returns: 201 with the application and the history entries appended.

    GET  /api/v1/applications/<id>
    GET  /api/v1/applications/<id>/next-steps   — legal transitions for the X-User actor
    POST /api/v1/applications/<id>/advance
         Body: { "transition_id": "..." }
         Returns: 200 with entries appended (manual + chained automatic).
    POST /api/v1/applications/<id>/tick         — apply eligible automatic transitions
    PUT  /api/v1/applications/<id>/facts        — Body: { "facts": {...} }
    GET  /api/v1/applications/<id>/history
    GET  /api/v1/applications/<id>/notifications
    POST /api/v1/notifications/<id>/read

The acting user comes from the ``X-User`` header.
"""

import logging

from flask import Blueprint, jsonify, request

from admissions.blueprints import bool_arg, current_actor, int_arg, service_error
from admissions.services.notification import NotificationService
from admissions.services.workflow_service import get_workflow_service
from admissions.utils.errors import E, api_error

logger = logging.getLogger(__name__)

application_bp = Blueprint("application", __name__, url_prefix="/api/v1")


@application_bp.route("/applications", methods=["POST"])
def start_application():
    data = request.get_json(silent=True) or {}
    result, err = get_workflow_service().start_application(
        application_type=data.get("application_type"),
        applicant_ref=data.get("applicant_ref"),
        facts=data.get("facts"),
        actor_id=current_actor(),
    )
    if err:
        return service_error(err)
    return jsonify(result), 201


@application_bp.route("/applications/<int:application_id>", methods=["GET"])
def get_application(application_id):
    result, err = get_workflow_service().get_application(application_id)
    if err:
        return service_error(err)
    return jsonify(result), 200


@application_bp.route("/applications/<int:application_id>/next-steps", methods=["GET"])
def next_steps(application_id):
    result, err = get_workflow_service().get_legal_next_steps(application_id, actor_id=current_actor())
    if err:
        return service_error(err)
    return jsonify(result), 200


@application_bp.route("/applications/<int:application_id>/advance", methods=["POST"])
def advance_application(application_id):
    data = request.get_json(silent=True) or {}
    result, err = get_workflow_service().advance_application(
        application_id,
        transition_id=data.get("transition_id"),
        actor_id=current_actor(),
    )
    if err:
        return service_error(err)
    return jsonify(result), 200


@application_bp.route("/applications/<int:application_id>/tick", methods=["POST"])
def tick_application(application_id):
    result, err = get_workflow_service().tick_automatic(application_id)
    if err:
        return service_error(err)
    return jsonify(result), 200


@application_bp.route("/applications/<int:application_id>/facts", methods=["PUT"])
def update_facts(application_id):
    data = request.get_json(silent=True) or {}
    if "facts" not in data:
        return api_error(E.VALIDATION_REQUIRED, "Field 'facts' is required.", details={"field": "facts"})
    result, err = get_workflow_service().update_facts(application_id, data["facts"], actor_id=current_actor())
    if err:
        return service_error(err)
    return jsonify(result), 200


@application_bp.route("/applications/<int:application_id>/history", methods=["GET"])
def status_history(application_id):
    result, err = get_workflow_service().get_status_history(application_id)
    if err:
        return service_error(err)
    return jsonify(result), 200


# ── Notifications ──────────────────────────────────────────────────────────────


@application_bp.route("/applications/<int:application_id>/notifications", methods=["GET"])
def list_notifications(application_id):
    _, err = get_workflow_service().get_application(application_id)
    if err:
        return service_error(err)
    limit = min(max(int_arg("limit", 50), 1), 200)
    offset = max(int_arg("offset", 0), 0)
    items, total = NotificationService.list_for_entity(
        "application", application_id,
        unread_only=bool(bool_arg("unread_only")), limit=limit, offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total}), 200


@application_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
def mark_notification_read(notification_id):
    notif = NotificationService.mark_read(notification_id)
    if notif is None:
        return api_error(E.NOT_FOUND, "Notification not found", details={"id": notification_id})
    return jsonify(notif.to_dict()), 200
