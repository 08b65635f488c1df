"""
Outbound SMS through the Advanta bulk SMS gateway.

When no gateway URL is configured the send is only logged and reported as
accepted, so ticket and billing flows never block on SMS.
"""

import re
from typing import Optional
from uuid import uuid4

import httpx

from isp_crm.config import settings
from isp_crm.logging_config import get_logger

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 1600
PHONE_PATTERN = re.compile(r"^\d{9,15}$")


class SmsError(Exception):
    """Raised when a message cannot be delivered to the provider."""


class SmsNotConfigured(SmsError):
    pass


def valid_recipients(numbers: list[str]) -> list[str]:
    return [n for n in numbers if PHONE_PATTERN.match(re.sub(r"\D", "", n))]


def format_kenyan(phone: str) -> str:
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("0"):
        return "254" + digits[1:]
    if not digits.startswith("254"):
        return "254" + digits
    return digits


class SmsSender:
    def __init__(self, client: Optional[httpx.Client] = None) -> None:
        self._client = client or httpx.Client(timeout=settings.http_timeout_seconds)

    def send(
        self,
        recipients: list[str],
        message: str,
        provider: str = "advanta",
        api_key: Optional[str] = None,
        partner_id: Optional[str] = None,
        shortcode: Optional[str] = None,
        api_url: Optional[str] = None,
    ) -> list[str]:
        """Send ``message`` and return one message id per recipient."""
        if provider == "advanta":
            api_url = api_url or settings.advanta_api_url
            # Configured credentials are only ever sent to the configured gateway.
            if api_url == settings.advanta_api_url:
                api_key = api_key or settings.advanta_api_key
                partner_id = partner_id or settings.advanta_partner_id
                shortcode = shortcode or settings.advanta_shortcode
            if not (api_key and partner_id and shortcode):
                raise SmsNotConfigured("Missing Advanta credentials")
            if api_url:
                self._send_advanta(api_url, recipients, message, api_key, partner_id, shortcode)
                return [f"msg_{uuid4().hex[:12]}" for _ in recipients]

        logger.info("SMS provider %s not fully configured, logging send to %d recipient(s)", provider, len(recipients))
        return [f"msg_{uuid4().hex[:12]}" for _ in recipients]

    def _send_advanta(
        self,
        api_url: str,
        recipients: list[str],
        message: str,
        api_key: str,
        partner_id: str,
        shortcode: str,
    ) -> None:
        mobiles = [format_kenyan(n) for n in recipients]
        payload = {
            "apikey": api_key,
            "partnerID": partner_id,
            "shortcode": shortcode,
            "mobile": ",".join(mobiles),
            "message": message,
        }
        logger.info("Sending SMS via Advanta to %s", mobiles)
        try:
            response = self._client.post(api_url, json=payload)
        except httpx.HTTPError as exc:
            raise SmsError(f"Advanta request failed: {exc}") from exc
        if response.is_error:
            logger.error("Advanta API error %s: %s", response.status_code, response.text)
            raise SmsError(f"Advanta API error: {response.status_code}")
