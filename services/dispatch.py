# services/dispatch.py
"""
Delivery of OTP codes over SMS (Twilio) and email (SMTP relay).

Dispatchers never raise: every outcome comes back as a ``DispatchResult``
whose ``error`` is already the user-facing text. A channel whose credentials
are missing stays constructible and simply answers "not configured".
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from flask import current_app
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from utils.identifiers import Channel, mask_identifier
from utils.mail import MailDeliveryError, MailNotConfigured, MailSenderMissing, send_email

__all__ = ["DispatchResult", "SmsDispatcher", "EmailDispatcher", "build_dispatchers"]

# Twilio REST error codes we translate for the user
TWILIO_INVALID_TO_NUMBER = 21211
TWILIO_UNVERIFIED_NUMBER = 21608


@dataclass
class DispatchResult:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    category: Optional[str] = None      # 'not_configured' | 'invalid_recipient' | 'unverified_sender' | 'failed'
    provider_id: Optional[str] = None

    @classmethod
    def ok(cls, message: str, provider_id: str | None = None) -> "DispatchResult":
        return cls(True, message=message, provider_id=provider_id)

    @classmethod
    def fail(cls, error: str, category: str = "failed") -> "DispatchResult":
        return cls(False, error=error, category=category)


class SmsDispatcher:
    channel = Channel.SMS

    def __init__(self, *, account_sid: str | None, auth_token: str | None,
                 from_number: str | None = None, messaging_sid: str | None = None,
                 app_name: str = "National Dialogue ZA", client: Client | None = None):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.messaging_sid = messaging_sid
        self.app_name = app_name
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._client or (self.account_sid and self.auth_token))

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    def send(self, identifier: str, code: str, expiry_minutes: int) -> DispatchResult:
        log = current_app.logger
        if not self.configured:
            return DispatchResult.fail(
                "SMS service not configured. Please contact administrator.", "not_configured"
            )
        if not (self.from_number or self.messaging_sid):
            return DispatchResult.fail("SMS sending phone number not configured", "not_configured")

        params = {
            "to": identifier,
            "body": (
                f"Your {self.app_name} verification code: {code}. "
                f"Valid for {expiry_minutes} minutes. Do not share this code."
            ),
        }
        if self.messaging_sid:
            params["messaging_service_sid"] = self.messaging_sid
        else:
            params["from_"] = self.from_number

        try:
            message = self.client.messages.create(**params)
        except TwilioRestException as e:
            log.warning("[sms] twilio error code=%s status=%s to=%s",
                        e.code, e.status, mask_identifier(identifier))
            if e.code == TWILIO_INVALID_TO_NUMBER:
                return DispatchResult.fail(
                    "Invalid phone number format. Please include country code.", "invalid_recipient"
                )
            if e.code == TWILIO_UNVERIFIED_NUMBER:
                return DispatchResult.fail(
                    "Phone number is not verified for this account.", "unverified_sender"
                )
            return DispatchResult.fail("Failed to send SMS verification code. Please try again.")
        except Exception:
            log.exception("[sms] send failed to=%s", mask_identifier(identifier))
            return DispatchResult.fail("Failed to send SMS verification code. Please try again.")

        log.info("[sms] OTP sent to=%s sid=%s", mask_identifier(identifier), message.sid)
        return DispatchResult.ok("SMS verification code sent successfully", provider_id=message.sid)


class EmailDispatcher:
    channel = Channel.EMAIL

    def __init__(self, config: Mapping, app_name: str = "National Dialogue ZA"):
        self.config = config
        self.app_name = app_name

    def _render(self, code: str, expiry_minutes: int) -> tuple[str, str]:
        html = f"""
          <div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;padding:20px">
            <div style="text-align:center;margin-bottom:30px">
              <h1 style="color:#1976d2;margin:0">{self.app_name}</h1>
              <p style="color:#666;margin:5px 0">Verification Code</p>
            </div>
            <div style="background:#f5f5f5;padding:30px;border-radius:8px;text-align:center">
              <h2 style="margin:0;color:#333">Your Verification Code</h2>
              <div style="font-size:32px;font-weight:700;color:#1976d2;letter-spacing:8px;margin:20px 0;font-family:'Courier New',monospace">{code}</div>
              <p style="color:#666;margin:0">This code expires in {expiry_minutes} minutes</p>
            </div>
            <div style="background:#fff3cd;border:1px solid #ffeaa7;padding:15px;border-radius:4px;margin:20px 0">
              <p style="margin:0;color:#856404">
                <strong>Security Notice:</strong> Never share this code with anyone.
                {self.app_name} staff will never ask for this code.
              </p>
            </div>
            <div style="text-align:center;color:#666;font-size:12px">
              <p>If you didn't request this verification code, please ignore this email.</p>
            </div>
          </div>
        """
        text = (
            f"Your {self.app_name} verification code is {code}. "
            f"It expires in {expiry_minutes} minutes. Never share this code with anyone."
        )
        return html, text

    def send(self, identifier: str, code: str, expiry_minutes: int) -> DispatchResult:
        html, text = self._render(code, expiry_minutes)
        try:
            send_email(
                to=identifier,
                subject=f"Your Verification Code - {self.app_name}",
                html=html,
                text=text,
                config=self.config,
            )
        except MailNotConfigured:
            return DispatchResult.fail(
                "Email service not configured. Please contact administrator.", "not_configured"
            )
        except MailSenderMissing:
            return DispatchResult.fail("Email sender not configured", "not_configured")
        except MailDeliveryError as e:
            if e.recipient_refused:
                return DispatchResult.fail("Invalid email address format", "invalid_recipient")
            current_app.logger.error("[mail] OTP delivery failed to=%s: %s",
                                     mask_identifier(identifier), e)
            return DispatchResult.fail("Failed to send email verification code. Please try again.")
        except Exception:
            current_app.logger.exception("[mail] OTP send failed to=%s", mask_identifier(identifier))
            return DispatchResult.fail("Failed to send email verification code. Please try again.")

        return DispatchResult.ok("Email verification code sent successfully")


def build_dispatchers(config: Mapping) -> dict:
    app_name = config.get("APP_NAME") or "National Dialogue ZA"
    return {
        Channel.SMS: SmsDispatcher(
            account_sid=config.get("TWILIO_ACCOUNT_SID"),
            auth_token=config.get("TWILIO_AUTH_TOKEN"),
            from_number=config.get("TWILIO_PHONE_NUMBER"),
            messaging_sid=config.get("TWILIO_MESSAGING_SID"),
            app_name=app_name,
        ),
        Channel.EMAIL: EmailDispatcher(config, app_name=app_name),
    }
