# utils/mail.py
import smtplib
import ssl
import socket
from email.message import EmailMessage
from email.utils import formataddr
from typing import Optional

from flask import current_app

from utils.identifiers import mask_identifier

__all__ = ["send_email", "MailNotConfigured", "MailSenderMissing", "MailDeliveryError"]

_PORT_PLAN = [("STARTTLS", 587), ("STARTTLS", 2525), ("SSL", 465)]


class MailNotConfigured(RuntimeError):
    """Relay credentials are absent; the email channel is disabled."""


class MailSenderMissing(RuntimeError):
    """MAIL_FROM is absent."""


class MailDeliveryError(RuntimeError):
    def __init__(self, message: str, *, recipient_refused: bool = False):
        super().__init__(message)
        self.recipient_refused = recipient_refused


def send_email(*, to: str, subject: str, html: str = "", text: str = "",
               config: Optional[dict] = None) -> None:
    """
    Sends an email via the SMTP relay (Brevo/Sendinblue by default).
    Reads from the app config:
      - MAIL_LOGIN, MAIL_PASSWORD   relay credentials
      - MAIL_FROM, MAIL_FROM_NAME   sender
    Optional:
      - MAIL_HOST (default: smtp-relay.brevo.com), MAIL_TIMEOUT
    Tries STARTTLS on 587/2525, then implicit TLS on 465.
    """
    cfg = config if config is not None else current_app.config
    log = current_app.logger

    host      = cfg.get("MAIL_HOST") or "smtp-relay.brevo.com"
    login     = cfg.get("MAIL_LOGIN")
    password  = cfg.get("MAIL_PASSWORD")
    mail_from = cfg.get("MAIL_FROM")
    timeout   = cfg.get("MAIL_TIMEOUT") or 20

    if not login or not password:
        raise MailNotConfigured("MAIL_LOGIN / MAIL_PASSWORD are not set.")
    if not mail_from:
        raise MailSenderMissing("MAIL_FROM is not set.")

    msg = EmailMessage()
    msg["From"] = formataddr((cfg.get("MAIL_FROM_NAME") or "", mail_from))
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(text or "")
    if html:
        msg.add_alternative(html, subtype="html")

    last_err: Optional[Exception] = None

    for mode, port in _PORT_PLAN:
        try:
            ctx = ssl.create_default_context()
            if mode == "SSL":
                with smtplib.SMTP_SSL(host, port, context=ctx, timeout=timeout) as s:
                    s.login(login, password)
                    s.send_message(msg, to_addrs=[to])
            else:
                with smtplib.SMTP(host, port, timeout=timeout) as s:
                    s.ehlo()
                    s.starttls(context=ctx)
                    s.ehlo()
                    s.login(login, password)
                    s.send_message(msg, to_addrs=[to])

            log.info("[mail] sent via %s:%s to %s", host, port, mask_identifier(to))
            return
        except smtplib.SMTPRecipientsRefused as e:
            # the relay answered; another port will say the same
            log.warning("[mail] recipient refused by %s:%s: %r", host, port, e.recipients)
            raise MailDeliveryError("Recipient refused", recipient_refused=True) from e
        except (smtplib.SMTPException, OSError, socket.error) as e:
            last_err = e
            log.warning("[mail] attempt %s %s:%s failed: %r", mode, host, port, e)

    raise MailDeliveryError(f"All SMTP attempts failed; last error: {last_err!r}")
