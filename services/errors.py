# services/errors.py
"""
Failures raised inside the OTP subsystem.

Every subclass carries the user-facing message; the service boundary turns
them into ``OtpResult(success=False, error=message)`` so none of them reach
the HTTP layer as an unhandled fault.
"""


class OtpError(Exception):
    category = "otp_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ── issuance ────────────────────────────────────────────────────────────────
class InvalidIdentifier(OtpError):
    category = "validation"


class RateLimited(OtpError):
    category = "rate_limited"


# ── verification ────────────────────────────────────────────────────────────
class CodeNotFound(OtpError):
    category = "not_found"


class CodeAlreadyUsed(OtpError):
    category = "already_used"


class CodeExpired(OtpError):
    category = "expired"


class TooManyAttempts(OtpError):
    category = "too_many_attempts"


class InvalidCode(OtpError):
    category = "mismatch"

    def __init__(self, remaining: int):
        noun = "attempt" if remaining == 1 else "attempts"
        super().__init__(f"Invalid verification code. {remaining} {noun} remaining.")
        self.remaining = remaining
