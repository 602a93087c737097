# routes/auth.py
from __future__ import annotations

from flask import Blueprint, request, jsonify, g, current_app
from sqlalchemy.exc import OperationalError

from db import db
from models.user import User
from auth_guard import issue_token, require_role

__all__ = ["auth_bp"]
auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.after_request
def add_no_store(resp):
    resp.headers["Cache-Control"] = "no-store"
    return resp


@auth_bp.route("/login", methods=["POST"])
def login():
    """
    Sign in a staff user and return a JWT.
    Body: { email, password }
    """
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        return jsonify(error="Invalid login data"), 400

    # One-time retry if DB connection dropped
    try:
        user = User.query.filter_by(email=email).first()
    except OperationalError as e:
        current_app.logger.warning("[auth] DB connection dropped; retrying once… %s", e)
        db.session.remove()
        db.engine.dispose()
        user = User.query.filter_by(email=email).first()

    if not (user and user.check_password(password)):
        return jsonify(error="Invalid email or password"), 401
    if not user.is_active:
        return jsonify(error="Account is disabled"), 401

    current_app.logger.info("[auth] login uid=%s role=%s", user.id, user.role)
    return jsonify(token=issue_token(user), user=user.to_dict()), 200


@auth_bp.route("/me", methods=["GET"])
@require_role()
def me():
    return jsonify(g.user.to_dict()), 200
