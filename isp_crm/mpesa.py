"""
Safaricom Daraja (M-Pesa) client.

Covers OAuth client-credentials tokens, STK push and sandbox C2B
simulation. Upstream failures surface as :class:`MpesaError`; a client
built without credentials raises :class:`MpesaNotConfigured`.
"""

import base64
import re
import time
from datetime import datetime
from typing import Callable, Optional

import httpx

from isp_crm.config import settings
from isp_crm.logging_config import get_logger

logger = get_logger(__name__)

TOKEN_REFRESH_MARGIN_SECONDS = 60


class MpesaError(Exception):
    """Raised when the Daraja API rejects a request or cannot be reached."""


class MpesaNotConfigured(MpesaError):
    pass


def normalize_phone(phone: str) -> str:
    """Safaricom expects 2547XXXXXXXX: a leading 0 becomes 254, other non-digits are dropped."""
    return re.sub(r"[^0-9]", "", re.sub(r"^0", "254", phone.strip()))


def timestamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def stk_password(short_code: str, passkey: str, ts: str) -> str:
    return base64.b64encode(f"{short_code}{passkey}{ts}".encode()).decode()


class MpesaClient:
    def __init__(
        self,
        consumer_key: Optional[str] = None,
        consumer_secret: Optional[str] = None,
        short_code: Optional[str] = None,
        passkey: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        callback_url: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.consumer_key = consumer_key or settings.mpesa_consumer_key
        self.consumer_secret = consumer_secret or settings.mpesa_consumer_secret
        self.short_code = short_code or settings.mpesa_business_short_code
        self.passkey = passkey or settings.mpesa_passkey
        self.base_url = (base_url or settings.mpesa_base_url).rstrip("/")
        self.callback_url = callback_url or settings.mpesa_callback_url
        self._client = client or httpx.Client(timeout=settings.http_timeout_seconds)
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def configured(self) -> bool:
        return all([self.consumer_key, self.consumer_secret, self.short_code, self.passkey])

    def _require_config(self) -> None:
        if not self.configured:
            raise MpesaNotConfigured("MPESA settings not configured")

    def access_token(self) -> str:
        self._require_config()
        now = self._clock()
        if self._token and self._token_expires_at > now + TOKEN_REFRESH_MARGIN_SECONDS:
            return self._token

        try:
            response = self._client.get(
                f"{self.base_url}/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self.consumer_key, self.consumer_secret),
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise MpesaError(f"Failed to authenticate with MPESA: {exc}") from exc

        self._token = data["access_token"]
        self._token_expires_at = now + float(data.get("expires_in", 3599))
        logger.debug("Obtained M-Pesa access token")
        return self._token

    def _post(self, path: str, payload: dict) -> dict:
        token = self.access_token()
        try:
            response = self._client.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise MpesaError(f"MPESA request failed: {exc}") from exc

        if response.is_error or str(data.get("ResponseCode", "0")) != "0":
            description = data.get("ResponseDescription") or data.get("errorMessage") or response.reason_phrase
            raise MpesaError(description)
        return data

    def stk_push(self, phone_number: str, amount, account_reference: str, description: str) -> dict:
        self._require_config()
        ts = timestamp()
        phone = normalize_phone(phone_number)
        payload = {
            "BusinessShortCode": self.short_code,
            "Password": stk_password(self.short_code, self.passkey, ts),
            "Timestamp": ts,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": round(float(amount)),
            "PartyA": phone,
            "PartyB": self.short_code,
            "PhoneNumber": phone,
            "CallBackURL": self.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }
        logger.info("Initiating STK push to %s for %s", phone, payload["Amount"])
        return self._post("/mpesa/stkpush/v1/processrequest", payload)

    def c2b_simulate(self, phone_number: str, amount, account_reference: str) -> dict:
        self._require_config()
        payload = {
            "ShortCode": self.short_code,
            "CommandID": "CustomerPayBillOnline",
            "Amount": round(float(amount)),
            "Msisdn": normalize_phone(phone_number),
            "BillRefNumber": account_reference,
        }
        return self._post("/mpesa/c2b/v1/simulate", payload)
