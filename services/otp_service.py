# services/otp_service.py
"""
OTP issuance and verification.

Issuance:     validate → rate-limit → sweep expired → generate/hash → store
              → dispatch → (dispatch failed) delete the new record.
Verification: latest unused record → expired? → exhausted?
              → compare → mark used | bump attempts.

All failures come back as ``OtpResult(success=False, error=...)``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from db import db
from services.dispatch import build_dispatchers
from services.errors import (
    CodeAlreadyUsed,
    CodeExpired,
    CodeNotFound,
    InvalidCode,
    OtpError,
    RateLimited,
    TooManyAttempts,
)
from services.otp_codes import StorageMode, generate_code, hash_code
from services.otp_store import OtpStore
from utils.clock import utcnow
from utils.identifiers import Channel, mask_identifier, validate_identifier

__all__ = ["OtpResult", "OtpSettings", "OtpService", "get_otp_service", "utcnow", "isoformat"]

EMPTY_STATS = {"totalSent": 0, "totalVerified": 0, "successRate": 0, "recentRequests": 0}


def isoformat(dt: datetime) -> str:
    """Naive UTC → '2026-10-18T09:30:00.000Z'."""
    return dt.isoformat(timespec="milliseconds") + "Z"


@dataclass
class OtpResult:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    category: Optional[str] = None
    data: dict = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, data: dict) -> "OtpResult":
        return cls(True, message=message, data=data)

    @classmethod
    def fail(cls, error: str, category: str = "otp_error") -> "OtpResult":
        return cls(False, error=error, category=category)

    @classmethod
    def from_error(cls, err: OtpError) -> "OtpResult":
        return cls.fail(err.message, err.category)

    def to_payload(self) -> dict:
        if self.success:
            return {"success": True, "message": self.message, "data": self.data}
        return {"success": False, "error": self.error}


@dataclass(frozen=True)
class OtpSettings:
    ttl_minutes: int = 5
    max_attempts: int = 3
    rate_window_sec: int = 60
    rate_max_requests: int = 3
    cleanup_on_request: bool = True
    storage_mode: StorageMode = StorageMode.DIGEST_ONLY

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "OtpSettings":
        return cls(
            ttl_minutes=int(cfg.get("OTP_TTL_MINUTES", 5)),
            max_attempts=int(cfg.get("OTP_MAX_ATTEMPTS", 3)),
            rate_window_sec=int(cfg.get("OTP_RATE_LIMIT_WINDOW_SEC", 60)),
            rate_max_requests=int(cfg.get("OTP_RATE_LIMIT_MAX_REQUESTS", 3)),
            cleanup_on_request=bool(cfg.get("OTP_CLEANUP_ON_REQUEST", True)),
            storage_mode=StorageMode.from_config(cfg.get("OTP_STORAGE_MODE")),
        )


class OtpService:
    def __init__(self, store: OtpStore, dispatchers: Mapping[Channel, Any],
                 settings: OtpSettings | None = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.dispatchers = dispatchers
        self.settings = settings or OtpSettings()
        self.clock = clock

    # ── helpers ─────────────────────────────────────────────────────────────
    def _check_rate_limit(self, identifier: str, channel: Channel) -> None:
        since = self.clock() - timedelta(seconds=self.settings.rate_window_sec)
        recent = self.store.count_created_since(identifier, channel.value, since)
        if recent >= self.settings.rate_max_requests:
            raise RateLimited(
                f"Too many requests. Please wait {self.settings.rate_window_sec} seconds "
                f"before requesting another code."
            )

    def _discard(self, otp_id: str) -> None:
        """Best-effort removal of a record whose code never reached the user."""
        try:
            self.store.delete(otp_id)
        except SQLAlchemyError:
            self.store.session.rollback()
            current_app.logger.exception("[otp] rollback of undelivered code %s failed", otp_id)

    # ── issuance ────────────────────────────────────────────────────────────
    def request_otp(self, identifier: str, channel: Channel | str) -> OtpResult:
        channel = Channel(channel)
        log = current_app.logger
        masked = mask_identifier(identifier)

        try:
            validate_identifier(identifier, channel)
            self._check_rate_limit(identifier, channel)

            now = self.clock()
            if self.settings.cleanup_on_request:
                self.store.delete_expired(now)

            code = generate_code()
            expires_at = now + timedelta(minutes=self.settings.ttl_minutes)
            rec = self.store.create(
                identifier=identifier,
                channel=channel.value,
                code=self.settings.storage_mode.stored_plaintext(code),
                hashed_code=hash_code(code),
                expires_at=expires_at,
                created_at=now,
            )
            otp_id = rec.id
        except OtpError as e:
            log.info("[otp] request rejected type=%s to=%s reason=%s", channel.value, masked, e.category)
            return OtpResult.from_error(e)
        except SQLAlchemyError:
            self.store.session.rollback()
            log.exception("[otp] could not create verification type=%s to=%s", channel.value, masked)
            return OtpResult.fail("Failed to process OTP request. Please try again.")

        try:
            sent = self.dispatchers[channel].send(identifier, code, self.settings.ttl_minutes)
        except Exception:
            log.exception("[otp] dispatcher raised type=%s to=%s", channel.value, masked)
            self._discard(otp_id)
            return OtpResult.fail(
                f"Failed to send {channel.label} verification code. Please try again.", "delivery_failed"
            )

        if not sent.success:
            log.warning("[otp] dispatch failed type=%s to=%s category=%s",
                        channel.value, masked, sent.category)
            self._discard(otp_id)
            return OtpResult.fail(sent.error, sent.category or "delivery_failed")

        log.info("[otp] code issued id=%s type=%s to=%s", otp_id, channel.value, masked)
        return OtpResult.ok(
            f"Verification code sent successfully via {channel.label}",
            {
                "expiresAt": isoformat(expires_at),
                "expiresInMinutes": self.settings.ttl_minutes,
            },
        )

    # ── verification ────────────────────────────────────────────────────────
    def _lost_race(self, otp_id: str) -> None:
        """
        A conditional update matched nothing: another request consumed the
        record, filled its attempt counter, or deleted it after our read.
        """
        current = self.store.get(otp_id)
        if current is None:
            raise CodeNotFound("No verification code found. Please request a new code.")
        if current.attempts < self.settings.max_attempts or current.is_used:
            raise CodeAlreadyUsed("Verification code has already been used. Please request a new code.")
        self.store.delete(otp_id)
        raise TooManyAttempts("Too many failed attempts. Please request a new verification code.")

    def _verify(self, identifier: str, code: str, channel: Channel) -> datetime:
        rec = self.store.find_latest_active(identifier, channel.value)
        if rec is None:
            # no pending code; tell a replayed code apart from a missing one
            last = self.store.find_latest(identifier, channel.value)
            if last is not None and last.is_used:
                raise CodeAlreadyUsed("Verification code has already been used. Please request a new code.")
            raise CodeNotFound("No verification code found. Please request a new code.")

        now = self.clock()
        if rec.is_expired(now):
            self.store.delete(rec.id)
            raise CodeExpired("Verification code has expired. Please request a new code.")

        if rec.attempts >= self.settings.max_attempts:
            self.store.delete(rec.id)
            raise TooManyAttempts("Too many failed attempts. Please request a new verification code.")

        otp_id = rec.id
        max_attempts = self.settings.max_attempts
        if not self.settings.storage_mode.matches(rec, code):
            attempts = self.store.increment_attempts(otp_id, max_attempts)
            if attempts is None:
                self._lost_race(otp_id)
            raise InvalidCode(max(max_attempts - attempts, 0))

        if not self.store.mark_used(otp_id, max_attempts):
            self._lost_race(otp_id)
        return now

    def verify_otp(self, identifier: str, code: str, channel: Channel | str) -> OtpResult:
        channel = Channel(channel)
        log = current_app.logger
        masked = mask_identifier(identifier)

        try:
            verified_at = self._verify(identifier, code, channel)
        except OtpError as e:
            log.info("[otp] verify failed type=%s to=%s reason=%s", channel.value, masked, e.category)
            return OtpResult.from_error(e)
        except SQLAlchemyError:
            self.store.session.rollback()
            log.exception("[otp] verify error type=%s to=%s", channel.value, masked)
            return OtpResult.fail("Failed to verify code. Please try again.")

        log.info("[otp] verified type=%s to=%s", channel.value, masked)
        return OtpResult.ok(
            "Verification successful",
            {
                "identifier": identifier,
                "type": channel.value,
                "verifiedAt": isoformat(verified_at),
            },
        )

    # ── monitoring / housekeeping ───────────────────────────────────────────
    def get_otp_stats(self) -> dict:
        try:
            return self.store.stats(self.clock())
        except SQLAlchemyError:
            self.store.session.rollback()
            current_app.logger.exception("[otp] stats query failed")
            return dict(EMPTY_STATS)

    def cleanup_expired(self) -> int:
        return self.store.delete_expired(self.clock())

    def cleanup_exhausted(self) -> int:
        return self.store.delete_exhausted(self.settings.max_attempts)


def get_otp_service() -> OtpService:
    """Service bound to the current request's session and the app's dispatchers."""
    cfg = current_app.config
    dispatchers = current_app.extensions.get("otp_dispatchers") or build_dispatchers(cfg)
    return OtpService(OtpStore(db.session), dispatchers, OtpSettings.from_config(cfg))
