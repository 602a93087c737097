# models/otp_verification.py
from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy.dialects import mysql

from db import db
from utils.clock import utcnow


class OtpVerification(db.Model):
    __tablename__ = "otp_verifications"
    __table_args__ = (
        db.Index("ix_otp_identifier_type_created", "identifier", "type", "created_at"),
    )

    id          = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    identifier  = db.Column(db.String(254), nullable=False)         # +27821234567 | a@b.co
    type        = db.Column(db.String(10), nullable=False)          # 'sms' | 'email'
    code        = db.Column(db.String(6), nullable=True)            # plaintext, dev storage mode only
    hashed_code = db.Column(db.String(64), nullable=False)          # sha256 hex string
    attempts    = db.Column(db.Integer, nullable=False, default=0)
    is_used     = db.Column(db.Boolean, nullable=False, default=False)
    expires_at  = db.Column(db.DateTime, nullable=False, index=True)
    # microsecond precision on MySQL so "latest" is unambiguous within a second
    created_at  = db.Column(db.DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql"),
                            nullable=False, default=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def __repr__(self) -> str:
        return f"<OtpVerification {self.id} type={self.type} used={self.is_used} attempts={self.attempts}>"
