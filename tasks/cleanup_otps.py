from flask import current_app

from services.otp_service import get_otp_service
from utils.throttle import purge_stale


def cleanup_otps():
    """
    Sweep rows nothing can use any more: expired or attempt-exhausted OTP
    records, and throttle windows that have already closed.
    Returns (expired, exhausted, counters).
    """
    svc = get_otp_service()
    expired = svc.cleanup_expired()
    exhausted = svc.cleanup_exhausted()
    counters = purge_stale(int(current_app.config.get("API_RATE_WINDOW_SEC") or 900))

    current_app.logger.info(
        "[cleanup] otp expired=%d exhausted=%d, throttle windows=%d", expired, exhausted, counters
    )
    return expired, exhausted, counters
