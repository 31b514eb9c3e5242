# backend/app/routes/users.py
from flask import Blueprint, jsonify

from backend.app.extensions import db
from backend.app.middleware.auth_middleware import require_role
from backend.app.services import auth_service

users_bp = Blueprint("users", __name__)


@users_bp.route("/<string:user_id>", methods=["GET"])
@require_role("admin")
def get_user(user_id: str, principal):
    # Admin-only profile lookup; other roles get 403 FORBIDDEN from the guard.
    result = auth_service.get_current_user(user_id=user_id, session=db.session)
    return jsonify({"data": result, "warnings": []}), 200
