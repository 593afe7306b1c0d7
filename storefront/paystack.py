from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import quote
import json
import logging
import os

import httpx

from .helpers import signature_matches
from .infra.timings import timeit

log = logging.getLogger(__name__)

PAYSTACK_SECRET_KEY = os.environ.get("PAYSTACK_SECRET_KEY", "")
PAYSTACK_BASE_URL = os.environ.get(
    "PAYSTACK_BASE_URL", "https://api.paystack.co"
)


class PaystackError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None,
                 details: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class PaymentGateway(ABC):
    @abstractmethod
    def validate_signature(self, raw: bytes, header: Optional[str]) -> bool:
        ...

    # transaction data; raises unless the charge succeeded
    @abstractmethod
    async def verify_transaction(self, reference: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def refund_transaction(
        self, transaction: int | str, amount: Optional[int] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        ...


# ----------------------------
# Paystack implementation
# ----------------------------
class Paystack(PaymentGateway):

    def __init__(self, http: httpx.AsyncClient,
                 secret_key: Optional[str] = None,
                 base_url: Optional[str] = None):
        self.http = http
        self.secret_key = (
            PAYSTACK_SECRET_KEY if secret_key is None else secret_key
        )
        self.base_url = (base_url or PAYSTACK_BASE_URL).rstrip("/")

    def _headers(self) -> Dict[str, str]:
        if not self.secret_key:
            raise PaystackError("Missing PAYSTACK_SECRET_KEY in environment")
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    # Paystack signs webhooks with the API secret key
    def validate_signature(self, raw: bytes, header: Optional[str]) -> bool:
        return signature_matches(self.secret_key, raw, header)

    async def _call(self, method: str, path: str, what: str,
                    body: Optional[dict] = None) -> dict:
        headers = self._headers()
        url = f"{self.base_url}{path}"
        async with timeit(f"paystack.{what}"):
            try:
                res = await self.http.request(
                    method, url, headers=headers, json=body
                )
            except httpx.HTTPError as e:
                raise PaystackError(
                    f"Paystack unreachable during {what}: {e}"
                ) from e
        try:
            payload = res.json()
        except json.JSONDecodeError:
            # HTML error pages: bad key, network gear, outage
            log.error(
                "Paystack non-JSON response for %s (status %s): %s",
                what, res.status_code, res.text[:500],
            )
            raise PaystackError(
                f"Paystack returned an unexpected response during {what}. "
                "Check PAYSTACK_SECRET_KEY, network, or Paystack status.",
                res.status_code,
                {"rawResponse": res.text, "url": url},
            )
        if not res.is_success or not payload.get("status"):
            raise PaystackError(
                f"Failed to {what}: {payload.get('message')}",
                res.status_code,
                payload,
            )
        return payload.get("data") or {}

    async def verify_transaction(self, reference: str) -> Dict[str, Any]:
        tx = await self._call(
            "GET",
            f"/transaction/verify/{quote(reference, safe='')}",
            "verify transaction",
        )
        if tx.get("status") != "success":
            raise PaystackError(
                f"Transaction not successful (status={tx.get('status')})",
                None,
                tx,
            )
        return tx

    async def refund_transaction(
        self, transaction: int | str, amount: Optional[int] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"transaction": transaction}
        if isinstance(amount, int):
            body["amount"] = amount
        if reason:
            body["merchant_note"] = reason
        if metadata:
            body["metadata"] = metadata
        return await self._call("POST", "/refund", "initiate refund", body)
