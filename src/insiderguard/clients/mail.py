"""Mail relay client used by the email_alert and immediate_alert actions."""

from __future__ import annotations

import structlog
from circuitbreaker import CircuitBreakerError

from insiderguard.clients.base import BaseHTTPClient, PermanentHTTPError, RetryableHTTPError
from insiderguard.config import Settings
from insiderguard.core.errors import DeliveryError, ExecutionError, InvalidRecipientError

logger = structlog.get_logger()

# Relay statuses that mean the message itself was rejected
_REJECTED_STATUSES = (400, 422)


class HttpMailClient(BaseHTTPClient):
    """Sends messages through an HTTP mail relay (POST /messages)."""

    def __init__(
        self,
        base_url: str,
        *,
        sender: str,
        token: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(base_url, timeout=timeout)
        self._sender = sender
        self._token = token

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpMailClient:
        return cls(
            settings.mail_base_url,
            sender=settings.mail_from,
            token=settings.mail_api_token,
            timeout=settings.http_timeout,
        )

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def send(self, recipients: list[str], subject: str, body: str) -> str:
        """Deliver one message.

        Raises:
            DeliveryError: transport failure or relay unavailable (retryable)
            InvalidRecipientError: relay rejected the message or a recipient
            ExecutionError: any other permanent relay error
        """
        payload = {"from": self._sender, "to": recipients, "subject": subject, "text": body}
        try:
            response = await self.post("/messages", json=payload)
        except (RetryableHTTPError, CircuitBreakerError) as exc:
            raise DeliveryError(
                "mail relay unavailable", details={"recipients": len(recipients), "cause": str(exc)}
            ) from exc
        except PermanentHTTPError as exc:
            if exc.status_code in _REJECTED_STATUSES:
                raise InvalidRecipientError(
                    "mail relay rejected the message", details={"recipients": recipients}
                ) from exc
            raise ExecutionError(
                f"mail relay error (HTTP {exc.status_code})", details={"status": exc.status_code}
            ) from exc

        message_id = str(response.get("id", ""))
        logger.info("mail_sent", recipients=len(recipients), message_id=message_id)
        return message_id
