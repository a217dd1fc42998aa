"""Transactional mail sender for collaboration invitations.

Providers:
    - console: logs the message instead of sending it (development default).
    - sendgrid: SendGrid v3 ``mail/send`` HTTP API.

``send_invitation`` never raises. Any failure is logged and returned as an
``EmailStatus`` with ``sent=False`` so the invite itself still succeeds.
"""
import logging
from typing import Optional

import httpx

from citruslab.collaboration.schemas import EMAIL_RE, EmailStatus

logger = logging.getLogger(__name__)


class MailSender:
    """Sends invitation emails through the configured provider."""

    SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"

    def __init__(
        self,
        provider: str = "console",
        from_email: str = "noreply@citruslab.dev",
        from_name: str = "CitrusLab",
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
    ):
        self.provider = provider
        self.from_email = from_email
        self.from_name = from_name
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

        if self.provider == "sendgrid" and not self.api_key:
            logger.warning("SendGrid selected but no api_key configured; emails will fail")

    async def send_invitation(
        self,
        to: str,
        inviter_name: str,
        chat_title: str,
        invitation_link: str,
        role: str,
    ) -> EmailStatus:
        subject = f'{inviter_name} invited you to collaborate on "{chat_title}"'
        body = (
            f"{inviter_name} invited you to join \"{chat_title}\" as {role}.\n\n"
            f"Open the invitation: {invitation_link}\n"
        )

        if not EMAIL_RE.match(to):
            logger.error(f"Refusing to send invitation to invalid address: {to}")
            return EmailStatus(sent=False, provider=self.provider, error=f"Invalid email address: {to}")

        try:
            if self.provider == "sendgrid":
                await self._send_sendgrid(to, subject, body)
            else:
                logger.info(f"[Mail:console] To={to} Subject={subject}\n{body}")
        except Exception as e:
            logger.error(f"Invitation email to {to} failed via {self.provider}: {e}")
            return EmailStatus(sent=False, provider=self.provider, error=str(e))

        return EmailStatus(sent=True, provider=self.provider)

    async def _send_sendgrid(self, to: str, subject: str, body: str) -> None:
        if not self.api_key:
            raise RuntimeError("SendGrid api_key is not configured")

        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            resp = await client.post(
                self.SENDGRID_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "personalizations": [{"to": [{"email": to}]}],
                    "from": {"email": self.from_email, "name": self.from_name},
                    "subject": subject,
                    "content": [{"type": "text/plain", "value": body}],
                },
            )
            resp.raise_for_status()
