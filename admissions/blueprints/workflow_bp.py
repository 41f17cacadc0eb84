"""
Workflow definition blueprint.

Endpoints:
    GET    /api/v1/workflows                      — list (filters: application_type, is_active, q)
    POST   /api/v1/workflows                      — create from a full stage/transition graph
    POST   /api/v1/workflows/validate             — dry-run validation, nothing persisted
    GET    /api/v1/workflows/<id>                 — definition with live stages and transitions
    PUT    /api/v1/workflows/<id>                 — replace the graph (retires history-referenced rows)
    DELETE /api/v1/workflows/<id>                 — inactive workflows without applications only
    POST   /api/v1/workflows/<id>/activate
    POST   /api/v1/workflows/<id>/deactivate
    POST   /api/v1/workflows/<id>/duplicate       — Body: { "name": "..." } (optional)

Layer contract:
    - Blueprint: parse input, call WorkflowService, return JSON.
    - NO db.session calls here.
"""

import logging

from flask import Blueprint, jsonify, request

from admissions.blueprints import bool_arg, current_actor, int_arg, service_error
from admissions.services.workflow_service import get_workflow_service

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")


@workflow_bp.route("/workflows", methods=["GET"])
def list_workflows():
    result, err = get_workflow_service().list_workflows(
        application_type=request.args.get("application_type"),
        is_active=bool_arg("is_active"),
        search=request.args.get("q"),
        page=int_arg("page", 1),
        per_page=int_arg("per_page", 20),
    )
    if err:
        return service_error(err)
    return jsonify(result), 200


@workflow_bp.route("/workflows", methods=["POST"])
def create_workflow():
    data = request.get_json(silent=True) or {}
    result, err = get_workflow_service().define_workflow(data, actor_id=current_actor())
    if err:
        return service_error(err)
    return jsonify(result), 201


@workflow_bp.route("/workflows/validate", methods=["POST"])
def validate_workflow():
    """Validate a graph without saving it. Always 200; check ``ok``."""
    data = request.get_json(silent=True) or {}
    result, err = get_workflow_service().validate_payload(data)
    if err:
        return service_error(err)
    return jsonify(result), 200


@workflow_bp.route("/workflows/<int:workflow_id>", methods=["GET"])
def get_workflow(workflow_id):
    result, err = get_workflow_service().get_workflow(workflow_id)
    if err:
        return service_error(err)
    return jsonify(result), 200


@workflow_bp.route("/workflows/<int:workflow_id>", methods=["PUT"])
def update_workflow(workflow_id):
    data = request.get_json(silent=True) or {}
    result, err = get_workflow_service().update_workflow(workflow_id, data, actor_id=current_actor())
    if err:
        return service_error(err)
    return jsonify(result), 200


@workflow_bp.route("/workflows/<int:workflow_id>", methods=["DELETE"])
def delete_workflow(workflow_id):
    result, err = get_workflow_service().delete_workflow(workflow_id, actor_id=current_actor())
    if err:
        return service_error(err)
    return jsonify(result), 200


@workflow_bp.route("/workflows/<int:workflow_id>/activate", methods=["POST"])
def activate_workflow(workflow_id):
    result, err = get_workflow_service().activate_workflow(workflow_id, actor_id=current_actor())
    if err:
        return service_error(err)
    return jsonify(result), 200


@workflow_bp.route("/workflows/<int:workflow_id>/deactivate", methods=["POST"])
def deactivate_workflow(workflow_id):
    result, err = get_workflow_service().deactivate_workflow(workflow_id, actor_id=current_actor())
    if err:
        return service_error(err)
    return jsonify(result), 200


@workflow_bp.route("/workflows/<int:workflow_id>/duplicate", methods=["POST"])
def duplicate_workflow(workflow_id):
    data = request.get_json(silent=True) or {}
    result, err = get_workflow_service().duplicate_workflow(
        workflow_id, new_name=data.get("name"), actor_id=current_actor(),
    )
    if err:
        return service_error(err)
    return jsonify(result), 201
