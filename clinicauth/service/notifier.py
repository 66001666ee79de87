from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.text import MIMEText
from typing import Optional

import httpx

from clinicauth.config import Settings
from clinicauth.logging import get_logger, mask_identifier
from clinicauth.service.errors import DeliveryError
from clinicauth.service.otp import channel_for
from clinicauth.storage.models import OtpPurpose

logger = get_logger(__name__)

_SUBJECTS = {
    OtpPurpose.LOGIN: "Your login code",
    OtpPurpose.PASSWORD_RESET: "Your password reset code",
}


class Notifier:
    """Delivers OTP codes by email (SMTP) or SMS (HTTP gateway).

    When a transport is not configured the message is logged instead (dev mode).
    Delivery failures raise :class:`DeliveryError`.
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
        from_name: str = "Clinic",
        sms_gateway_url: Optional[str] = None,
        sms_gateway_api_key: Optional[str] = None,
        sms_sender_id: str = "CLINIC",
        timeout: float = 10.0,
        otp_expiry_seconds: int = 300,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.sms_gateway_url = sms_gateway_url
        self.sms_gateway_api_key = sms_gateway_api_key
        self.sms_sender_id = sms_sender_id
        self.timeout = timeout
        self.otp_expiry_seconds = otp_expiry_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "Notifier":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            sms_gateway_url=settings.sms_gateway_url,
            sms_gateway_api_key=settings.sms_gateway_api_key,
            sms_sender_id=settings.sms_sender_id,
            timeout=settings.notifier_timeout_seconds,
            otp_expiry_seconds=settings.otp_expiry_seconds,
        )

    @property
    def email_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @property
    def sms_configured(self) -> bool:
        return bool(self.sms_gateway_url)

    def _message(self, code: str, purpose: OtpPurpose) -> str:
        minutes = max(1, self.otp_expiry_seconds // 60)
        action = "log in" if purpose == OtpPurpose.LOGIN else "reset your password"
        return f"Your one-time code to {action} is {code}. It expires in {minutes} minutes."

    async def send(
        self,
        identifier: str,
        code: str,
        purpose: OtpPurpose,
        channel: Optional[str] = None,
    ) -> None:
        channel = channel or channel_for(identifier)
        body = self._message(code, purpose)
        if channel == "email":
            await self._send_email(identifier, _SUBJECTS[purpose], body)
        else:
            await self._send_sms(identifier, body)

    async def _send_email(self, to_email: str, subject: str, body: str) -> None:
        if not self.email_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=mask_identifier(to_email),
                subject=subject,
                body_preview=body[:200],
            )
            return
        try:
            await asyncio.to_thread(self._smtp_send, to_email, subject, body)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=mask_identifier(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DeliveryError("email delivery failed", detail={"channel": "email"}) from exc
        logger.info("email_sent", to=mask_identifier(to_email), subject=subject)

    def _smtp_send(self, to_email: str, subject: str, body: str) -> None:
        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            ) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())

    async def _send_sms(self, mobile_number: str, body: str) -> None:
        if not self.sms_configured:
            logger.info(
                "sms_dev_mode",
                to=mask_identifier(mobile_number),
                body_preview=body[:200],
            )
            return
        headers = {}
        if self.sms_gateway_api_key:
            headers["Authorization"] = f"Bearer {self.sms_gateway_api_key}"
        payload = {"to": mobile_number, "sender": self.sms_sender_id, "message": body}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.sms_gateway_url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(
                "sms_send_failed",
                to=mask_identifier(mobile_number),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DeliveryError("sms delivery failed", detail={"channel": "sms"}) from exc
        logger.info("sms_sent", to=mask_identifier(mobile_number))
