# app.py
from __future__ import annotations

import os
from datetime import datetime, timezone

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from flask_cors import CORS
from sqlalchemy import event

from config import CONFIGS, Config
from db import db, migrate

# Ensure models are imported so Flask-Migrate sees them
from models.user import User
from models.otp_verification import OtpVerification
from models.request_counter import RequestCounter

# Blueprints
from routes.auth import auth_bp
from routes.otp import otp_bp

from services.dispatch import build_dispatchers
from tasks.cleanup_otps import cleanup_otps
from utils.throttle import install_throttle


def create_app(config_object=None) -> Flask:
    app = Flask(__name__)

    # Respect reverse proxy headers (scheme / host) for correct URL generation
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)  # type: ignore[arg-type]

    # CORS (open for now; tighten origins for production)
    CORS(app, resources={r"/api/*": {"origins": "*"}})

    # Load config + init extensions
    if config_object is None:
        config_object = CONFIGS.get(os.environ.get("APP_ENV", "").lower(), Config)
    app.config.from_object(config_object)
    db.init_app(app)
    migrate.init_app(app, db)

    # Providers are built once; a channel without credentials answers "not configured"
    app.extensions["otp_dispatchers"] = build_dispatchers(app.config)

    with app.app_context():
        # Timestamps are written as naive UTC; keep MySQL's NOW() on the same clock
        if db.engine.dialect.name == "mysql":
            @event.listens_for(db.engine, "connect")
            def _set_utc_timezone(dbapi_conn, _):
                cur = dbapi_conn.cursor()
                try:
                    cur.execute("SET time_zone = '+00:00'")
                finally:
                    cur.close()

        # Touch models so Alembic/Flask-Migrate registers them
        _ = (User, OtpVerification, RequestCounter)

    install_throttle(app)

    @app.route("/api/healthz")
    def healthz():
        return jsonify(
            status="healthy",
            timestamp=datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
        ), 200

    @app.errorhandler(404)
    def handle_404(e):
        return jsonify(error="Not Found", path=request.path), 404

    # Global error handler
    @app.errorhandler(Exception)
    def handle_any_error(e: Exception):
        if isinstance(e, HTTPException):
            return jsonify(error=e.description), e.code
        db.session.rollback()
        app.logger.exception("[app] unhandled error on %s %s", request.method, request.path)
        return jsonify(error="Internal server error"), 500

    # --- Debug: list routes ---
    if app.config.get("DEBUG"):
        @app.route("/__routes")
        def __routes():
            from flask import Response
            lines = []
            for rule in app.url_map.iter_rules():
                methods = ",".join(sorted(m for m in rule.methods if m not in {"HEAD", "OPTIONS"}))
                lines.append(f"{methods:10s} {rule.rule}")
            lines.sort()
            return Response("\n".join(lines), mimetype="text/plain")

    # Register blueprints
    app.register_blueprint(auth_bp)
    app.register_blueprint(otp_bp)

    # CLI: sweep expired OTPs and closed throttle windows (run from cron / a scheduler)
    @app.cli.command("cleanup-otps")
    def cleanup_otps_cmd():
        expired, exhausted, counters = cleanup_otps()
        print(f"Removed {expired} expired and {exhausted} exhausted codes, {counters} throttle windows.")

    return app


# Optional local entrypoint (useful for quick dev runs)
if __name__ == "__main__":
    app = create_app()
    app.run(
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "5000")),
        debug=bool(os.environ.get("FLASK_DEBUG", "")),
    )
