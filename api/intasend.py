import asyncio
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import aiohttp

from utils.config import INTASEND_TIMEOUT_SECONDS
from utils.logger import get_logger
from utils.phone import to_msisdn
from utils.serializers import dumps

log = get_logger("[IntaSendAPI]")

LIVE_URL = "https://payment.intasend.com"
SANDBOX_URL = "https://sandbox.intasend.com"


class IntaSendError(Exception):
    """The gateway answered, but not with a success."""

    def __init__(self, message: str, status: Optional[int] = None, payload: Any = None):
        self.status = status
        self.payload = payload
        super().__init__(message)

    @property
    def is_auth_error(self) -> bool:
        return self.status in (401, 403)


class IntaSendTimeout(IntaSendError):
    pass


def whole_shillings(amount) -> int:
    """IntaSend only takes whole numbers."""
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def invoice_id_of(response: Dict) -> Optional[str]:
    invoice = response.get("invoice") or {}
    return invoice.get("invoice_id") or response.get("invoice_id") or response.get("id")


class IntaSendClient:
    def __init__(
            self,
            publishable_key: str,
            secret_key: str,
            test_mode: bool = False,
            timeout: float = INTASEND_TIMEOUT_SECONDS,
            base_url: Optional[str] = None,
    ):
        self._base_url = base_url or (SANDBOX_URL if test_mode else LIVE_URL)
        self._publishable_key = publishable_key
        self._headers = {
            "Authorization": f"Bearer {secret_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self.test_mode = test_mode
        self.configured = bool(publishable_key and secret_key)

    async def __aenter__(self):
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self._headers,
                json_serialize=dumps,
                timeout=self._timeout,
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def _make_request(
            self,
            method: str,
            path: str,
            json_payload: Optional[Dict] = None,
            headers: Optional[Dict] = None,
    ) -> Dict:
        """
        One attempt, no retries. Raises IntaSendTimeout when the request does
        not finish in time and IntaSendError on any non-2xx answer.
        """
        session = await self._get_session()
        url = self._base_url + path
        try:
            async with session.request(method, url, json=json_payload, headers=headers) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = {"detail": await response.text()}

                if 200 <= response.status < 300:
                    log.debug(f"{method} {path} -> {response.status}")
                    return data or {}

                message = _error_message(data) or f"IntaSend returned HTTP {response.status}"
                log.error(f"IntaSend API error ({response.status}) {method} {path}: {data}")
                raise IntaSendError(message, status=response.status, payload=data)
        except asyncio.TimeoutError as e:
            log.error(f"Timeout on {method} {path}")
            raise IntaSendTimeout("Payment request timed out. Please try again.") from e
        except aiohttp.ClientError as e:
            log.exception(f"Network error on {method} {path}: {e}")
            raise IntaSendError(f"Could not reach the payment service: {e}") from e

    def _customer_fields(
            self,
            email: str,
            phone: str,
            first_name: Optional[str],
            last_name: Optional[str],
            address: Optional[str],
            city: Optional[str],
            area: Optional[str],
    ) -> Dict[str, Any]:
        return {
            "email": email,
            "phone_number": to_msisdn(phone),
            "first_name": first_name or "Customer",
            "last_name": last_name or "Name",
            "address": address or "Nairobi",
            "city": city or "Nairobi",
            "state": "Nairobi",
            "zipcode": area or "00100",
            "country": "KE",
        }

    async def mpesa_stk_push(
            self,
            amount,
            phone: str,
            email: str,
            api_ref: str,
            first_name: Optional[str] = None,
            last_name: Optional[str] = None,
            address: Optional[str] = None,
            city: Optional[str] = None,
            area: Optional[str] = None,
    ) -> Dict:
        """
        Sends an STK push to the customer's phone. The response carries the
        invoice whose state is later polled.
        """
        payload = {
            "amount": whole_shillings(amount),
            "api_ref": api_ref,
            **self._customer_fields(email, phone, first_name, last_name, address, city, area),
        }
        log.info(f"M-Pesa STK push for {api_ref}: {payload['amount']} KES to {payload['phone_number']}")
        return await self._make_request("POST", "/api/v1/payment/mpesa-stk-push/", json_payload=payload)

    async def create_checkout(
            self,
            amount,
            currency: str,
            phone: str,
            email: str,
            api_ref: str,
            first_name: Optional[str] = None,
            last_name: Optional[str] = None,
            address: Optional[str] = None,
            city: Optional[str] = None,
            area: Optional[str] = None,
            redirect_url: Optional[str] = None,
    ) -> Dict:
        """
        Hosted checkout for card payments. Card details are entered on
        IntaSend's page only; we get back a URL to send the customer to.
        """
        payload = {
            "public_key": self._publishable_key,
            "amount": whole_shillings(amount),
            "currency": currency,
            "api_ref": api_ref,
            "method": "CARD-PAYMENT",
            **self._customer_fields(email, phone, first_name, last_name, address, city, area),
        }
        if redirect_url:
            payload["redirect_url"] = redirect_url
        log.info(f"Card checkout for {api_ref}: {payload['amount']} {currency}")
        return await self._make_request(
            "POST", "/api/v1/checkout/", json_payload=payload,
            headers={"X-IntaSend-Public-API-Key": self._publishable_key},
        )

    async def payment_status(self, invoice_id: str) -> Dict:
        return await self._make_request("POST", "/api/v1/payment/status/", json_payload={"invoice_id": invoice_id})


def _error_message(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    errors = data.get("errors")
    if isinstance(errors, list) and errors:
        first = errors[0]
        if isinstance(first, dict):
            return first.get("detail") or first.get("message")
        return str(first)
    return data.get("message") or data.get("detail") or data.get("error")
