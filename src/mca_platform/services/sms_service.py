"""SMS delivery gateway via the Twilio REST API.

Endpoints used:
- POST /2010-04-01/Accounts/{sid}/Messages.json — send outbound SMS/MMS

Failures raise ``DeliveryFailure`` rather than returning a null result, so
callers always see the provider error.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional

import httpx

from mca_platform.app.config import get_settings
from mca_platform.domain.errors import DeliveryFailure, InvalidAddress

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: Optional[str]) -> str:
    """Return an E.164 number for a US lead phone, or raise InvalidAddress.

    Accepts 10-digit national numbers, 11-digit numbers with a leading 1,
    and explicit international numbers written with a leading ``+``.
    """
    digits = _NON_DIGITS.sub("", raw or "")
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if (raw or "").strip().startswith("+") and 11 <= len(digits) <= 15:
        return f"+{digits}"
    raise InvalidAddress(raw)


def phone_suffix(raw: Optional[str]) -> str:
    """Last 10 digits of a phone number, used to match inbound senders."""
    digits = _NON_DIGITS.sub("", raw or "")
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits


@dataclass
class SendReceipt:
    """Provider acknowledgement of an accepted send."""
    provider_ref: str
    status: str = "queued"


class SMSService:
    """Send SMS messages through Twilio."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        self.base_url = "https://api.twilio.com/2010-04-01"
        self._transport = transport

    @property
    def _configured(self) -> bool:
        return self.settings.twilio_configured

    async def send(self, destination: str, body: str, media_url: Optional[str] = None) -> SendReceipt:
        """Send a message. Raises InvalidAddress or DeliveryFailure."""
        to_number = normalize_phone(destination)

        if not self._configured:
            logger.warning("Twilio not configured — message not sent to %s", to_number)
            raise DeliveryFailure("twilio_not_configured")

        url = f"{self.base_url}/Accounts/{self.settings.twilio_account_sid}/Messages.json"
        payload = {"To": to_number, "From": self.settings.twilio_phone_number, "Body": body}
        if media_url:
            payload["MediaUrl"] = media_url

        logger.info("Twilio send: to=%s msg_len=%d body=%.200s", to_number, len(body), body)

        for attempt in range(3):
            try:
                async with httpx.AsyncClient(
                    timeout=self.settings.delivery_timeout_seconds,
                    transport=self._transport,
                ) as client:
                    resp = await client.post(
                        url,
                        data=payload,
                        auth=(self.settings.twilio_account_sid, self.settings.twilio_auth_token),
                    )
            except httpx.TimeoutException as exc:
                logger.error("Twilio send timed out for %s", to_number)
                raise DeliveryFailure("timeout") from exc
            except httpx.HTTPError as exc:
                logger.error("Twilio transport error for %s: %s", to_number, exc)
                raise DeliveryFailure(str(exc)) from exc

            if 200 <= resp.status_code < 300:
                data = resp.json()
                logger.info("SMS sent to %s via Twilio (sid=%s)", to_number, data.get("sid"))
                return SendReceipt(provider_ref=data.get("sid", ""), status=data.get("status", "queued"))

            # 429 means the message was not accepted, so a retry cannot double-send
            if resp.status_code == 429 and attempt < 2:
                wait = 2 * (attempt + 1)
                logger.warning("Twilio 429 — retrying in %ds (attempt %d/3)", wait, attempt + 1)
                await asyncio.sleep(wait)
                continue

            detail = _error_detail(resp)
            logger.error("Twilio SMS failed (%d): %s", resp.status_code, detail)
            raise DeliveryFailure(f"http_{resp.status_code}: {detail}", status_code=resp.status_code)

        raise DeliveryFailure("max_retries", status_code=429)


def _error_detail(resp: httpx.Response) -> str:
    try:
        return str(resp.json().get("message") or resp.text[:300])
    except ValueError:
        return resp.text[:300]
