from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from hana.logging import get_logger

logger = get_logger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of one best-effort SMS send."""

    delivered: bool
    skipped: bool = False
    provider_id: Optional[str] = None
    error: Optional[str] = None


class SmsSender:
    """Sends SMS through Twilio's REST API.

    Falls back to logging the message when Twilio is not configured (dev
    mode). ``send`` never raises for transport or provider failures; they
    come back as an undelivered ``DispatchOutcome``.
    """

    def __init__(
        self,
        *,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout: float = 10.0,
        api_base: str = TWILIO_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout = timeout
        self.api_base = api_base.rstrip("/")
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def send(self, to: str, body: str) -> DispatchOutcome:
        if not self.is_configured:
            # Dev mode: log the message instead of sending
            logger.info("sms_dev_mode", to=to, body=body)
            return DispatchOutcome(delivered=False, skipped=True)

        url = f"{self.api_base}/Accounts/{self.account_sid}/Messages.json"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.post(
                    url,
                    data={"To": to, "From": self.from_number, "Body": body},
                    auth=(self.account_sid, self.auth_token),
                )
                resp.raise_for_status()
                payload = resp.json()
        except httpx.HTTPStatusError as exc:
            return DispatchOutcome(
                delivered=False, error=f"provider returned {exc.response.status_code}"
            )
        except (httpx.HTTPError, ValueError) as exc:
            return DispatchOutcome(delivered=False, error=type(exc).__name__)

        logger.debug("sms_sent", to=to, sid=payload.get("sid"))
        return DispatchOutcome(delivered=True, provider_id=payload.get("sid"))
