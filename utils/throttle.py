# utils/throttle.py
"""
App-wide request throttle for /api/*, keyed by client address.

Counts live in the ``request_counters`` table rather than process memory so
they survive restarts and are shared between workers.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from flask import Flask, request, jsonify, current_app
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from db import db
from models.request_counter import RequestCounter
from utils.clock import utcnow

__all__ = ["hit", "purge_stale", "install_throttle"]


def hit(key: str, *, limit: int, window_sec: int, now: datetime | None = None) -> bool:
    """Count one request for `key`; False when the current window is already full."""
    now = now or utcnow()
    row = db.session.get(RequestCounter, key)

    if row is None:
        db.session.add(RequestCounter(key=key, window_start=now, count=1))
        try:
            db.session.commit()
        except IntegrityError:
            # another worker created the row first; count against it
            db.session.rollback()
            return hit(key, limit=limit, window_sec=window_sec, now=now)
        return True

    if now - row.window_start >= timedelta(seconds=window_sec):
        row.window_start = now
        row.count = 1
        db.session.commit()
        return True

    if row.count >= limit:
        return False

    db.session.execute(
        update(RequestCounter)
        .where(RequestCounter.key == key)
        .values(count=RequestCounter.count + 1)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return True


def purge_stale(window_sec: int, now: datetime | None = None) -> int:
    cutoff = (now or utcnow()) - timedelta(seconds=window_sec)
    res = db.session.execute(
        delete(RequestCounter)
        .where(RequestCounter.window_start < cutoff)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return res.rowcount


def install_throttle(app: Flask) -> None:
    @app.before_request
    def _throttle_api():
        limit = int(current_app.config.get("API_RATE_LIMIT") or 0)
        if limit <= 0 or not request.path.startswith("/api/"):
            return None

        key = f"ip:{request.remote_addr or 'unknown'}"
        window = int(current_app.config.get("API_RATE_WINDOW_SEC") or 900)
        try:
            allowed = hit(key, limit=limit, window_sec=window)
        except SQLAlchemyError:
            # throttle storage down: let the request through rather than fail it
            db.session.rollback()
            current_app.logger.exception("[throttle] counter update failed key=%s", key)
            return None

        if not allowed:
            current_app.logger.warning("[throttle] limit hit key=%s path=%s", key, request.path)
            return jsonify(error="Too many requests"), 429
        return None
