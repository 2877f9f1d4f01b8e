from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Optional, Protocol, Set

from identityd.logging import get_logger, redact_email

logger = get_logger(__name__)


class EmailDispatcher(Protocol):
    def send_verification_email(self, address: str, token: str) -> bool: ...

    def send_two_factor_code(self, address: str, code: str) -> bool: ...


class EmailService:
    """SMTP dispatcher for verification links and second-factor codes.

    When no SMTP host is configured the message is logged instead of sent,
    which is the normal mode for local development and tests.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "IdentityService",
        base_url: Optional[str] = None,
        verification_ttl_hours: int = 24,
        code_ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.verification_ttl_hours = verification_ttl_hours
        self.code_ttl_minutes = code_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _open_connection(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
            try:
                server.starttls(context=context)
            except (smtplib.SMTPException, ssl.SSLError, OSError):
                server.close()
                raise
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            )
        return server

    def _send_email(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> bool:
        """Deliver one message; False when the SMTP exchange failed."""
        if not self.is_configured:
            logger.info("email_dev_mode", to=redact_email(to_email), subject=subject)
            return True

        msg = self._build_message(to_email, subject, html_body, text_body)
        try:
            with self._open_connection() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_delivery_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_verification_email(self, address: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        subject = "Verify your email address"
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; line-height: 1.6;">
    <h1>Confirm your email</h1>
    <p>Finish creating your account by confirming this address:</p>
    <p><a href="{verify_url}">Verify email</a></p>
    <p>The link is valid for {self.verification_ttl_hours} hours.</p>
    <p style="font-size: 12px;">{self.from_name}</p>
</body>
</html>
"""
        text_body = f"""Confirm your email

Finish creating your account by opening the link below:

{verify_url}

The link is valid for {self.verification_ttl_hours} hours.

---
{self.from_name}
"""
        return self._send_email(address, subject, html_body, text_body)

    def send_two_factor_code(self, address: str, code: str) -> bool:
        subject = "Your sign-in code"
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; line-height: 1.6;">
    <h1>Sign-in code</h1>
    <p style="font-size: 28px; letter-spacing: 4px;"><strong>{code}</strong></p>
    <p>The code expires in {self.code_ttl_minutes} minutes and can be used once.</p>
    <p>If you did not try to sign in, change your password.</p>
    <p style="font-size: 12px;">{self.from_name}</p>
</body>
</html>
"""
        text_body = f"""Your sign-in code: {code}

The code expires in {self.code_ttl_minutes} minutes and can be used once.
If you did not try to sign in, change your password.

---
{self.from_name}
"""
        return self._send_email(address, subject, html_body, text_body)


class BackgroundEmailDispatch:
    """Runs blocking email sends off the event loop without awaiting them.

    Failures are logged and never reach the operation that queued the send.
    Task references are kept until completion so they are not collected early.
    """

    def __init__(self, dispatcher: EmailDispatcher) -> None:
        self.dispatcher = dispatcher
        self._pending: Set[asyncio.Task] = set()

    def send_verification_email(self, address: str, token: str) -> None:
        self._spawn("verification", self.dispatcher.send_verification_email, address, token)

    def send_two_factor_code(self, address: str, code: str) -> None:
        self._spawn("two_factor_code", self.dispatcher.send_two_factor_code, address, code)

    def _spawn(self, kind: str, send: Callable[..., Any], address: str, value: str) -> None:
        task = asyncio.create_task(asyncio.to_thread(send, address, value))
        self._pending.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._pending.discard(finished)
            if finished.cancelled():
                logger.warning("email_dispatch_cancelled", kind=kind)
                return
            exc = finished.exception()
            if exc is not None:
                logger.error(
                    "email_dispatch_failed",
                    kind=kind,
                    to=redact_email(address),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            elif finished.result() is False:
                logger.warning("email_dispatch_rejected", kind=kind, to=redact_email(address))

        task.add_done_callback(_done)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def wait_for_pending(self) -> None:
        """Wait for queued sends; used at shutdown and by tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
