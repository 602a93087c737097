# models/user.py
from __future__ import annotations
from db import db
from sqlalchemy.sql import func
from sqlalchemy.dialects.mysql import BIGINT
from werkzeug.security import generate_password_hash, check_password_hash

ROLES = ("SuperAdmin", "Admin", "Analyst", "Moderator", "DeptOfficer", "Citizen")


class User(db.Model):
    __tablename__ = "users"

    # Match MySQL: BIGINT(20) UNSIGNED (plain INTEGER on SQLite so rowid autoincrement works)
    id            = db.Column(BIGINT(unsigned=True).with_variant(db.Integer, "sqlite"),
                              primary_key=True, autoincrement=True)
    email         = db.Column(db.String(254), nullable=False, unique=True, index=True)
    name          = db.Column(db.String(160), nullable=False)
    role          = db.Column(db.String(32), nullable=False, default="Citizen", index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    is_active     = db.Column(db.Boolean, nullable=False, default=True)

    created_at    = db.Column(db.DateTime, server_default=func.now(), nullable=False)
    updated_at    = db.Column(db.DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    # ── Helpers ─────────────────────────────────────────────────────────────
    def set_password(self, raw: str) -> None:
        self.password_hash = generate_password_hash(raw)

    def check_password(self, raw: str) -> bool:
        return check_password_hash(self.password_hash or "", raw or "")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
        }
