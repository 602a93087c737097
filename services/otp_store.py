# services/otp_store.py
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from models.otp_verification import OtpVerification

__all__ = ["OtpStore"]


class OtpStore:
    """
    Persistence for OTP verification records.

    Every mutation commits immediately; state transitions that two requests
    could race on (mark used, attempt counter) are single conditional UPDATE
    statements so the database, not this process, decides the winner.
    """

    def __init__(self, session: Session):
        self.session = session

    # ── writes ──────────────────────────────────────────────────────────────
    def create(self, *, identifier: str, channel: str, hashed_code: str,
               expires_at: datetime, code: str | None = None,
               created_at: datetime | None = None) -> OtpVerification:
        rec = OtpVerification(
            identifier=identifier,
            type=channel,
            code=code,
            hashed_code=hashed_code,
            attempts=0,
            is_used=False,
            expires_at=expires_at,
        )
        if created_at is not None:
            rec.created_at = created_at
        self.session.add(rec)
        self.session.commit()
        return rec

    def mark_used(self, otp_id: str, max_attempts: int | None = None) -> bool:
        """
        Flip is_used false → true. Returns False if another request got there
        first, or if the counter reached `max_attempts` since the caller read it.
        """
        stmt = update(OtpVerification).where(
            OtpVerification.id == otp_id, OtpVerification.is_used.is_(False)
        )
        if max_attempts is not None:
            stmt = stmt.where(OtpVerification.attempts < max_attempts)
        res = self.session.execute(
            stmt.values(is_used=True).execution_options(synchronize_session=False)
        )
        self.session.commit()
        return res.rowcount == 1

    def increment_attempts(self, otp_id: str, max_attempts: int) -> int | None:
        """
        Bump the failed-attempt counter, never past `max_attempts`.
        Returns the new value, or None when the counter was already full.
        """
        res = self.session.execute(
            update(OtpVerification)
            .where(OtpVerification.id == otp_id, OtpVerification.attempts < max_attempts)
            .values(attempts=OtpVerification.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        if res.rowcount != 1:
            return None
        attempts = self.session.execute(
            select(OtpVerification.attempts).where(OtpVerification.id == otp_id)
        ).scalar()
        return int(attempts or 0)

    def delete(self, otp_id: str) -> int:
        res = self.session.execute(
            delete(OtpVerification)
            .where(OtpVerification.id == otp_id)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return res.rowcount

    def delete_for(self, identifier: str, channel: str) -> int:
        res = self.session.execute(
            delete(OtpVerification)
            .where(OtpVerification.identifier == identifier, OtpVerification.type == channel)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return res.rowcount

    def delete_expired(self, now: datetime) -> int:
        res = self.session.execute(
            delete(OtpVerification)
            .where(OtpVerification.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return res.rowcount

    def delete_exhausted(self, max_attempts: int) -> int:
        res = self.session.execute(
            delete(OtpVerification)
            .where(OtpVerification.is_used.is_(False), OtpVerification.attempts >= max_attempts)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return res.rowcount

    # ── reads ───────────────────────────────────────────────────────────────
    def get(self, otp_id: str) -> OtpVerification | None:
        """Current database state of one record, bypassing the identity map."""
        return self.session.execute(
            select(OtpVerification)
            .where(OtpVerification.id == otp_id)
            .execution_options(populate_existing=True)
        ).scalars().first()

    def find_latest_active(self, identifier: str, channel: str) -> OtpVerification | None:
        """Newest unused record; the caller still checks expiry."""
        return self.session.execute(
            select(OtpVerification)
            .where(
                OtpVerification.identifier == identifier,
                OtpVerification.type == channel,
                OtpVerification.is_used.is_(False),
            )
            .order_by(OtpVerification.created_at.desc())
            .limit(1)
        ).scalars().first()

    def find_latest(self, identifier: str, channel: str) -> OtpVerification | None:
        """Newest record of any state."""
        return self.session.execute(
            select(OtpVerification)
            .where(OtpVerification.identifier == identifier, OtpVerification.type == channel)
            .order_by(OtpVerification.created_at.desc())
            .limit(1)
        ).scalars().first()

    def count_created_since(self, identifier: str, channel: str, since: datetime) -> int:
        return self.session.execute(
            select(func.count(OtpVerification.id)).where(
                OtpVerification.identifier == identifier,
                OtpVerification.type == channel,
                OtpVerification.created_at >= since,
            )
        ).scalar_one()

    def stats(self, now: datetime) -> dict:
        total_sent = self.session.execute(
            select(func.count(OtpVerification.id))
        ).scalar_one()
        total_verified = self.session.execute(
            select(func.count(OtpVerification.id)).where(OtpVerification.is_used.is_(True))
        ).scalar_one()
        recent = self.session.execute(
            select(func.count(OtpVerification.id)).where(
                OtpVerification.created_at >= now - timedelta(hours=24)
            )
        ).scalar_one()

        # half-up, so 12.5 reports as 13
        success_rate = int(total_verified * 100 / total_sent + 0.5) if total_sent else 0
        return {
            "totalSent": total_sent,
            "totalVerified": total_verified,
            "successRate": success_rate,
            "recentRequests": recent,
        }
