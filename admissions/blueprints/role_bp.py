"""
Role blueprint — capability tags granted to actors.

Endpoints:
    GET  /api/v1/roles
    POST /api/v1/roles                  Body: { "name", "description", "permissions": [...] }
    POST /api/v1/roles/<id>/assign      Body: { "actor_id": "..." }
"""

from flask import Blueprint, jsonify, request

from admissions.blueprints import current_actor
from admissions.services import permission_service

role_bp = Blueprint("role", __name__, url_prefix="/api/v1")


@role_bp.route("/roles", methods=["GET"])
def list_roles():
    return jsonify({"items": permission_service.list_roles()}), 200


@role_bp.route("/roles", methods=["POST"])
def create_role():
    data = request.get_json(silent=True) or {}
    result, err = permission_service.create_role(
        name=data.get("name"),
        permissions=data.get("permissions"),
        description=data.get("description"),
        actor_id=current_actor(),
    )
    if err:
        return jsonify({"error": err["error"], "field": err.get("field")}), err["status"]
    return jsonify(result), 201


@role_bp.route("/roles/<int:role_id>/assign", methods=["POST"])
def assign_role(role_id):
    data = request.get_json(silent=True) or {}
    result, err = permission_service.assign_role(
        role_id, data.get("actor_id"), assigned_by=current_actor(),
    )
    if err:
        return jsonify({"error": err["error"], "field": err.get("field")}), err["status"]
    return jsonify(result), 200
