# routes/otp.py
from __future__ import annotations

from flask import Blueprint, request, jsonify, current_app

from auth_guard import require_permission
from services.otp_service import get_otp_service
from utils.identifiers import Channel

__all__ = ["otp_bp"]
otp_bp = Blueprint("otp", __name__, url_prefix="/api/otp")

_CHANNELS = {c.value for c in Channel}


def _fields(*names: str) -> dict | None:
    """Required non-empty string fields from the JSON body, or None if any is missing."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None
    out = {}
    for name in names:
        value = data.get(name)
        if not isinstance(value, str) or not value.strip():
            return None
        out[name] = value.strip()
    if out.get("type") not in _CHANNELS:
        return None
    return out


def _respond(result):
    return jsonify(result.to_payload()), (200 if result.success else 400)


@otp_bp.route("/request", methods=["POST"])
def request_code():
    """Body: { identifier, type: 'sms'|'email' }"""
    body = _fields("identifier", "type")
    if body is None:
        return jsonify(success=False, error="Invalid OTP request data"), 400

    result = get_otp_service().request_otp(body["identifier"], body["type"])
    return _respond(result)


@otp_bp.route("/verify", methods=["POST"])
def verify_code():
    """Body: { identifier, code, type: 'sms'|'email' }"""
    body = _fields("identifier", "code", "type")
    if body is None:
        return jsonify(success=False, error="Invalid OTP verification data"), 400

    result = get_otp_service().verify_otp(body["identifier"], body["code"], body["type"])
    return _respond(result)


@otp_bp.route("/stats", methods=["GET"])
@require_permission("view_analytics")
def stats():
    try:
        return jsonify(get_otp_service().get_otp_stats()), 200
    except Exception:
        current_app.logger.exception("[otp] stats endpoint failed")
        return jsonify(error="Failed to fetch OTP statistics"), 500
