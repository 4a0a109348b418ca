import asyncio
import logging
from typing import Optional

import httpx

from portal.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from portal.config import Settings
from portal.errors import UpstreamError

logger = logging.getLogger(__name__)


class Mailer:
    """Outbound mail collaborator."""

    async def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LogMailer(Mailer):
    """Used when no mail provider is configured: the message only goes to the log."""

    async def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> None:
        logger.warning(f"Mail provider not configured; message to {to} not sent: {subject}")


class SendGridMailer(Mailer):
    """Client for the SendGrid v3 mail API with circuit breaker protection."""

    def __init__(
        self,
        settings: Settings,
        circuit_breaker: CircuitBreaker,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = settings.sendgrid_api_url
        self.api_key = settings.sendgrid_api_key
        self.from_email = settings.sendgrid_from_email
        self.circuit_breaker = circuit_breaker
        self.client = client or httpx.AsyncClient(timeout=settings.cb_call_timeout)

    async def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> None:
        """Send one message; raises UpstreamError on any provider failure."""
        try:
            await self.circuit_breaker.call(self._post, to, subject, text, html)
        except CircuitBreakerOpenError as e:
            raise UpstreamError("Mail provider unavailable") from e
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"Mail dispatch failed: {e}") from e
        logger.info(f"Mail sent to {to}: {subject}")

    async def _post(self, to: str, subject: str, text: str, html: Optional[str]) -> None:
        content = [{"type": "text/plain", "value": text}]
        if html:
            content.append({"type": "text/html", "value": html})
        resp = await self.client.post(
            self.api_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "personalizations": [{"to": [{"email": to}]}],
                "from": {"email": self.from_email},
                "subject": subject,
                "content": content,
            },
        )
        resp.raise_for_status()

    async def close(self) -> None:
        await self.client.aclose()


def create_mailer(settings: Settings, circuit_breaker: CircuitBreaker) -> Mailer:
    if settings.sendgrid_api_key:
        return SendGridMailer(settings, circuit_breaker)
    logger.warning("SENDGRID_API_KEY not set, approval emails will only be logged")
    return LogMailer()
