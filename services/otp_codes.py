# services/otp_codes.py
from __future__ import annotations

import hashlib
import secrets
from enum import Enum

__all__ = ["generate_code", "hash_code", "StorageMode"]

_CODE_MIN = 100_000
_CODE_MAX = 999_999


def generate_code() -> str:
    """Uniform 6-digit code in [100000, 999999]; never has a leading zero."""
    return str(_CODE_MIN + secrets.randbelow(_CODE_MAX - _CODE_MIN + 1))


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


class StorageMode(str, Enum):
    DIGEST_ONLY = "digest_only"
    PLAINTEXT_AND_DIGEST = "plaintext_and_digest"

    @classmethod
    def from_config(cls, value: str | None) -> "StorageMode":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.DIGEST_ONLY

    def stored_plaintext(self, code: str) -> str | None:
        return code if self is StorageMode.PLAINTEXT_AND_DIGEST else None

    def matches(self, record, submitted: str) -> bool:
        """
        Constant-time comparison of a submitted code against a stored record.
        The digest is always written, so rows created under either mode
        verify under either mode.
        """
        submitted = submitted or ""
        if self is StorageMode.PLAINTEXT_AND_DIGEST and record.code:
            return secrets.compare_digest(record.code, submitted)
        return secrets.compare_digest(record.hashed_code, hash_code(submitted))
