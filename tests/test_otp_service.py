"""
Issuance and verification through OtpService against a real (SQLite) store.
"""
from datetime import timedelta

import pytest

from conftest import FakeDispatcher
from models.otp_verification import OtpVerification
from services.otp_codes import StorageMode, hash_code
from services.otp_service import OtpService, OtpSettings, get_otp_service, utcnow
from services.otp_store import OtpStore
from utils.identifiers import Channel

PHONE = "+27821234567"
EMAIL = "citizen@example.org"


@pytest.fixture
def svc(app):
    return get_otp_service()


def _records(identifier=PHONE, channel="sms"):
    return OtpVerification.query.filter_by(identifier=identifier, type=channel).all()


# ── issuance ────────────────────────────────────────────────────────────────
def test_request_creates_pending_record_and_sends_code(svc, dispatchers):
    result = svc.request_otp(PHONE, "sms")

    assert result.success
    assert result.message == "Verification code sent successfully via SMS"
    assert result.data["expiresInMinutes"] == 5
    assert result.data["expiresAt"].endswith("Z")

    rows = _records()
    assert len(rows) == 1
    rec = rows[0]
    code = dispatchers[Channel.SMS].last_code
    assert rec.hashed_code == hash_code(code)
    assert rec.code == code          # plaintext kept under the testing storage mode
    assert rec.attempts == 0 and rec.is_used is False
    assert timedelta(minutes=4) < rec.expires_at - rec.created_at <= timedelta(minutes=5)


def test_email_request_message(svc, dispatchers):
    result = svc.request_otp(EMAIL, Channel.EMAIL)
    assert result.success
    assert result.message == "Verification code sent successfully via email"
    assert dispatchers[Channel.EMAIL].sent[0][0] == EMAIL


def test_invalid_phone_is_rejected_without_touching_the_store(svc, dispatchers):
    result = svc.request_otp("0821234567", "sms")

    assert not result.success
    assert result.error.startswith("Invalid phone number format")
    assert OtpVerification.query.count() == 0
    assert dispatchers[Channel.SMS].sent == []


def test_fourth_request_within_window_is_rate_limited(svc):
    for _ in range(3):
        assert svc.request_otp(PHONE, "sms").success

    result = svc.request_otp(PHONE, "sms")
    assert not result.success
    assert result.error == "Too many requests. Please wait 60 seconds before requesting another code."
    assert len(_records()) == 3


def test_rate_limit_is_per_identifier_and_channel(svc):
    for _ in range(3):
        svc.request_otp(PHONE, "sms")

    assert svc.request_otp("+27829999999", "sms").success
    assert svc.request_otp(EMAIL, "email").success


def test_rate_limit_window_slides(app, db, dispatchers):
    now = [utcnow()]
    svc = OtpService(OtpStore(db.session), dispatchers,
                     OtpSettings.from_config(app.config), clock=lambda: now[0])
    for _ in range(3):
        assert svc.request_otp(PHONE, "sms").success
    assert {r.created_at for r in _records()} == {now[0]}

    now[0] += timedelta(seconds=59)
    assert not svc.request_otp(PHONE, "sms").success

    now[0] += timedelta(seconds=2)
    assert svc.request_otp(PHONE, "sms").success


def test_failed_dispatch_rolls_back_the_record(app, db):
    failing = {
        Channel.SMS: FakeDispatcher(
            fail_with="SMS service not configured. Please contact administrator.",
            category="not_configured",
        ),
    }
    svc = OtpService(OtpStore(db.session), failing, OtpSettings.from_config(app.config))

    result = svc.request_otp(PHONE, "sms")
    assert not result.success
    assert result.error == "SMS service not configured. Please contact administrator."
    assert OtpVerification.query.count() == 0


class ExplodingDispatcher:
    def send(self, identifier, code, expiry_minutes):
        raise UnicodeError("encoding with 'idna' codec failed (label empty or too long)")


def test_dispatcher_exception_rolls_back_the_record(app, db):
    svc = OtpService(OtpStore(db.session), {Channel.EMAIL: ExplodingDispatcher()},
                     OtpSettings.from_config(app.config))

    result = svc.request_otp(EMAIL, "email")
    assert not result.success
    assert result.error == "Failed to send email verification code. Please try again."
    assert OtpVerification.query.count() == 0


def test_request_sweeps_expired_records(svc, db):
    stale = OtpStore(db.session).create(
        identifier="+27820000000", channel="sms", hashed_code=hash_code("111111"),
        expires_at=utcnow() - timedelta(minutes=1),
    )
    stale_id = stale.id

    svc.request_otp(PHONE, "sms")
    assert db.session.get(OtpVerification, stale_id) is None


def test_digest_only_mode_stores_no_plaintext_and_still_verifies(app, db, dispatchers):
    settings = OtpSettings(storage_mode=StorageMode.DIGEST_ONLY)
    svc = OtpService(OtpStore(db.session), dispatchers, settings)

    assert svc.request_otp(PHONE, "sms").success
    assert _records()[0].code is None

    result = svc.verify_otp(PHONE, dispatchers[Channel.SMS].last_code, "sms")
    assert result.success


# ── verification ────────────────────────────────────────────────────────────
def test_code_verifies_exactly_once(svc, dispatchers):
    svc.request_otp(PHONE, "sms")
    code = dispatchers[Channel.SMS].last_code

    first = svc.verify_otp(PHONE, code, "sms")
    assert first.success
    assert first.message == "Verification successful"
    assert first.data["identifier"] == PHONE
    assert first.data["type"] == "sms"
    assert first.data["verifiedAt"].endswith("Z")
    assert _records()[0].is_used is True

    second = svc.verify_otp(PHONE, code, "sms")
    assert not second.success
    assert second.error == "Verification code has already been used. Please request a new code."


def test_verify_without_any_code(svc):
    result = svc.verify_otp(PHONE, "123456", "sms")
    assert not result.success
    assert result.error == "No verification code found. Please request a new code."


def test_wrong_code_reports_remaining_attempts(svc, dispatchers):
    svc.request_otp(PHONE, "sms")
    code = dispatchers[Channel.SMS].last_code
    wrong = "100000" if code != "100000" else "100001"

    errors = [svc.verify_otp(PHONE, wrong, "sms").error for _ in range(3)]
    assert errors == [
        "Invalid verification code. 2 attempts remaining.",
        "Invalid verification code. 1 attempt remaining.",
        "Invalid verification code. 0 attempts remaining.",
    ]
    assert _records()[0].attempts == 3

    # the right code no longer helps, and the record is gone afterwards
    fourth = svc.verify_otp(PHONE, code, "sms")
    assert fourth.error == "Too many failed attempts. Please request a new verification code."
    assert _records() == []


def test_expired_code_is_rejected_and_deleted(svc, db, dispatchers):
    svc.request_otp(PHONE, "sms")
    code = dispatchers[Channel.SMS].last_code
    rec = _records()[0]
    rec.expires_at = utcnow() - timedelta(seconds=1)
    db.session.commit()

    result = svc.verify_otp(PHONE, code, "sms")
    assert result.error == "Verification code has expired. Please request a new code."
    assert _records() == []


def test_latest_code_is_authoritative(svc, dispatchers):
    svc.request_otp(PHONE, "sms")
    old = dispatchers[Channel.SMS].last_code
    svc.request_otp(PHONE, "sms")
    new = dispatchers[Channel.SMS].last_code

    if old != new:
        assert not svc.verify_otp(PHONE, old, "sms").success
    assert svc.verify_otp(PHONE, new, "sms").success


def test_losing_the_mark_used_race_reports_already_used(svc, dispatchers, monkeypatch):
    svc.request_otp(PHONE, "sms")
    monkeypatch.setattr(svc.store, "mark_used", lambda otp_id, max_attempts=None: False)

    result = svc.verify_otp(PHONE, dispatchers[Channel.SMS].last_code, "sms")
    assert result.error == "Verification code has already been used. Please request a new code."


def test_mark_used_is_conditional(svc, db):
    store = svc.store
    rec = store.create(identifier=PHONE, channel="sms", hashed_code=hash_code("123456"),
                       expires_at=utcnow() + timedelta(minutes=5))
    otp_id = rec.id
    assert store.mark_used(otp_id) is True
    assert store.mark_used(otp_id) is False
    assert db.session.get(OtpVerification, otp_id).is_used is True


def test_attempt_counter_stops_at_max(svc, db):
    store = svc.store
    rec = store.create(identifier=PHONE, channel="sms", hashed_code=hash_code("123456"),
                       expires_at=utcnow() + timedelta(minutes=5))
    otp_id = rec.id

    assert [store.increment_attempts(otp_id, 3) for _ in range(4)] == [1, 2, 3, None]
    assert store.get(otp_id).attempts == 3
    assert store.mark_used(otp_id, 3) is False
    assert store.get(otp_id).is_used is False


def _stale_snapshot(svc, db, dispatchers, monkeypatch, db_attempts):
    """Issue a code, then make every verify see it as it was at attempts=2."""
    svc.request_otp(PHONE, "sms")
    code = dispatchers[Channel.SMS].last_code
    rec = _records()[0]
    rec.attempts = db_attempts
    db.session.commit()

    snapshot = OtpVerification(
        id=rec.id, identifier=PHONE, type="sms", code=rec.code, hashed_code=rec.hashed_code,
        attempts=2, is_used=False, expires_at=rec.expires_at,
    )
    monkeypatch.setattr(svc.store, "find_latest_active", lambda identifier, channel: snapshot)
    return code


def test_concurrent_wrong_guesses_cannot_overrun_the_counter(svc, db, dispatchers, monkeypatch):
    code = _stale_snapshot(svc, db, dispatchers, monkeypatch, db_attempts=2)
    wrong = "100000" if code != "100000" else "100001"

    first = svc.verify_otp(PHONE, wrong, "sms")
    second = svc.verify_otp(PHONE, wrong, "sms")

    assert first.error == "Invalid verification code. 0 attempts remaining."
    assert second.error == "Too many failed attempts. Please request a new verification code."
    assert _records() == []


def test_correct_code_on_stale_read_of_exhausted_record_fails(svc, db, dispatchers, monkeypatch):
    code = _stale_snapshot(svc, db, dispatchers, monkeypatch, db_attempts=3)

    result = svc.verify_otp(PHONE, code, "sms")
    assert result.error == "Too many failed attempts. Please request a new verification code."
    assert _records() == []


# ── stats ───────────────────────────────────────────────────────────────────
def test_stats_on_empty_store(svc):
    assert svc.get_otp_stats() == {
        "totalSent": 0, "totalVerified": 0, "successRate": 0, "recentRequests": 0,
    }


def test_stats_after_two_issued_one_verified(svc, dispatchers):
    svc.request_otp(PHONE, "sms")
    svc.request_otp(EMAIL, "email")
    assert svc.verify_otp(PHONE, dispatchers[Channel.SMS].last_code, "sms").success

    assert svc.get_otp_stats() == {
        "totalSent": 2, "totalVerified": 1, "successRate": 50, "recentRequests": 2,
    }


def test_stats_rounds_half_up_and_windows_recent(svc, db):
    store = svc.store
    old = utcnow() - timedelta(days=2)
    for i in range(8):
        rec = OtpVerification(identifier=f"+2782000000{i}", type="sms",
                              hashed_code=hash_code("123456"), is_used=(i == 0),
                              expires_at=old + timedelta(minutes=5), created_at=old)
        db.session.add(rec)
    db.session.commit()

    stats = store.stats(utcnow())
    assert stats["successRate"] == 13      # 12.5 rounds up
    assert stats["recentRequests"] == 0


def test_delete_for_clears_every_record_of_the_pair(svc):
    svc.request_otp(PHONE, "sms")
    svc.request_otp(PHONE, "sms")
    svc.request_otp(EMAIL, "email")

    assert svc.store.delete_for(PHONE, "sms") == 2
    assert _records() == []
    assert len(_records(EMAIL, "email")) == 1
