"""
Clients Blueprint.

Routes:
  GET    /api/v1/clients          – list (?q=&include_inactive=true)
  POST   /api/v1/clients          – create
  GET    /api/v1/clients/<id>     – detail
  PATCH  /api/v1/clients/<id>     – update (existing commitment snapshots untouched)
  DELETE /api/v1/clients/<id>     – delete (commitments keep their snapshot)
"""

from flask import Blueprint, jsonify, request

from app.auth import current_auth, require_auth
from app.services import client_service
from app.utils.errors import register_error_handlers

clients_bp = Blueprint("clients", __name__, url_prefix="/api/v1/clients")
register_error_handlers(clients_bp)


@clients_bp.route("", methods=["GET"])
@require_auth
def list_clients():
    clients = client_service.list_clients(
        current_auth(),
        q=request.args.get("q"),
        include_inactive=request.args.get("include_inactive") == "true",
    )
    return jsonify({"items": [c.to_dict() for c in clients]})


@clients_bp.route("", methods=["POST"])
@require_auth
def create_client():
    client = client_service.create_client(current_auth(), request.get_json(silent=True) or {})
    return jsonify({"client": client.to_dict()}), 201


@clients_bp.route("/<int:client_id>", methods=["GET"])
@require_auth
def get_client(client_id):
    return jsonify({"client": client_service.get_client(current_auth(), client_id).to_dict()})


@clients_bp.route("/<int:client_id>", methods=["PATCH"])
@require_auth
def update_client(client_id):
    client = client_service.update_client(
        current_auth(), client_id, request.get_json(silent=True) or {},
    )
    return jsonify({"client": client.to_dict()})


@clients_bp.route("/<int:client_id>", methods=["DELETE"])
@require_auth
def delete_client(client_id):
    client_service.delete_client(current_auth(), client_id)
    return "", 204
