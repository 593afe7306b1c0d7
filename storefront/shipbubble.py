"""
Shipbubble client.

Thin async wrapper around the Shipbubble HTTP API:
- retries transient failures (429, 5xx, timeouts, transport errors) with
  jittered exponential backoff
- raises ShipbubbleError carrying the provider payload otherwise
- maps provider shipment states to our Shipment / Order states
"""
from __future__ import annotations

import asyncio
import logging
import os
import random
import re
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .helpers import signature_matches
from .infra.timings import timeit
from .model.db import (
    ORDER_CANCELLED, ORDER_DELIVERED, ORDER_PROCESSING, ORDER_SHIPPED,
    SHIP_CANCELLED, SHIP_DELIVERED, SHIP_IN_TRANSIT, SHIP_LABEL_CREATED,
)

log = logging.getLogger(__name__)

SHIPBUBBLE_API_BASE = os.environ.get(
    "SHIPBUBBLE_API_BASE", "https://api.shipbubble.com/v1"
)
SHIPBUBBLE_API_KEY = os.environ.get("SHIPBUBBLE_API_KEY", "")
SHIPBUBBLE_WEBHOOK_SECRET = os.environ.get("SHIPBUBBLE_WEBHOOK_SECRET", "")

DEFAULT_TIMEOUT = 15.0
LABEL_TIMEOUT = 20.0
DEFAULT_RETRY = 3
LIST_CHUNK = 50


class ShipbubbleError(Exception):
    def __init__(self, message: str, http_status: Optional[int] = None,
                 path: Optional[str] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.http_status = http_status
        self.path = path
        self.payload = payload


# ----------------------------
# Status mapping
# ----------------------------
def map_shipment_status(s: Optional[str]) -> str:
    v = (s or "").lower()
    if v == "cancelled":
        return SHIP_CANCELLED
    if v == "completed":
        return SHIP_DELIVERED
    if v in ("picked_up", "in_transit"):
        return SHIP_IN_TRANSIT
    # pending / confirmed / unknown: label exists but is not moving yet
    return SHIP_LABEL_CREATED


def map_order_status(shipment_status: str) -> str:
    if shipment_status == SHIP_IN_TRANSIT:
        return ORDER_SHIPPED
    if shipment_status == SHIP_DELIVERED:
        return ORDER_DELIVERED
    if shipment_status == SHIP_CANCELLED:
        return ORDER_CANCELLED
    return ORDER_PROCESSING


def validate_webhook_signature(raw: bytes, header: Optional[str],
                               secret: Optional[str] = None) -> bool:
    secret = SHIPBUBBLE_WEBHOOK_SECRET if secret is None else secret
    return signature_matches(secret, raw, header)


# ----------------------------
# Rates / boxes (pure)
# ----------------------------
def normalize_rates(raw: Optional[dict]) -> List[Dict[str, Any]]:
    out = []
    for c in (raw or {}).get("couriers") or []:
        try:
            total = float(c.get("total") or 0)
        except (TypeError, ValueError):
            total = 0.0
        out.append({
            "id": f"{c.get('courier_id')}:{c.get('service_code')}",
            "courierId": str(c.get("courier_id")),
            "courierName": c.get("courier_name"),
            "serviceCode": c.get("service_code"),
            "total": total,
            "currency": c.get("currency"),
            "deliveryEtaText": c.get("delivery_eta"),
            "pickupEtaText": c.get("pickup_eta"),
        })
    return out


def _eta_days(rate: dict) -> float:
    m = re.search(r"\d+", rate.get("deliveryEtaText") or "")
    return float(m.group(0)) if m else float("inf")


def choose_best_rate(rates: List[dict],
                     strategy: str = "cheapest") -> Optional[dict]:
    if not rates:
        return None
    if strategy == "cheapest":
        return min(rates, key=lambda r: r["total"])
    return min(rates, key=_eta_days)


def pick_box_for_weight(total_weight_kg: float,
                        boxes: List[dict]) -> Optional[dict]:
    for box in sorted(boxes, key=lambda b: float(b.get("max_weight") or 0)):
        if float(box.get("max_weight") or 0) >= float(total_weight_kg):
            return box
    return None


# ----------------------------
# HTTP client
# ----------------------------
class Shipbubble:

    def __init__(self, http: httpx.AsyncClient,
                 api_key: Optional[str] = None,
                 base_url: Optional[str] = None,
                 backoff_base: float = 0.5):
        self.http = http
        self.api_key = SHIPBUBBLE_API_KEY if api_key is None else api_key
        self.base_url = (base_url or SHIPBUBBLE_API_BASE).rstrip("/")
        self.backoff_base = backoff_base

    def _delay(self, attempt: int) -> float:
        return self.backoff_base * (2 ** (attempt - 1)) * (1 + random.random())

    async def request(self, method: str, path: str, *,
                      json: Optional[dict] = None,
                      timeout: float = DEFAULT_TIMEOUT,
                      retry: int = DEFAULT_RETRY) -> dict:
        if not self.api_key:
            raise ShipbubbleError("SHIPBUBBLE_API_KEY not set", path=path)

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Client": "storefront/shipbubble",
        }
        url = f"{self.base_url}{path}"
        attempt = 0
        while True:
            attempt += 1
            try:
                async with timeit("shipbubble.request"):
                    res = await self.http.request(
                        method, url, headers=headers, json=json,
                        timeout=timeout,
                    )
            except httpx.TransportError as e:
                # timeouts and connection errors
                log.warning("shipbubble %s %s attempt %d failed: %s",
                            method, path, attempt, e)
                if attempt < retry:
                    await asyncio.sleep(self._delay(attempt))
                    continue
                raise ShipbubbleError(
                    f"Shipbubble unreachable: {e}", path=path
                ) from e

            try:
                body = res.json()
            except ValueError:
                if not res.is_success:
                    raise ShipbubbleError(
                        f"Shipbubble HTTP {res.status_code}",
                        res.status_code, path,
                    )
                body = {}

            failed = (
                not res.is_success
                or body.get("status") in ("failed", "error")
            )
            if not failed:
                return body

            retriable = res.status_code == 429 or res.status_code >= 500
            log.warning("shipbubble %s %s -> %s (%s), attempt %d",
                        method, path, res.status_code,
                        body.get("message"), attempt)
            if retriable and attempt < retry:
                await asyncio.sleep(self._delay(attempt))
                continue
            raise ShipbubbleError(
                body.get("message") or f"Shipbubble HTTP {res.status_code}",
                res.status_code, path, body,
            )

    # ---- address / boxes / couriers

    async def validate_address(self, *, phone: str, email: str, name: str,
                               address: str,
                               latitude: Optional[float] = None,
                               longitude: Optional[float] = None) -> dict:
        body: Dict[str, Any] = {
            "phone": (phone or "").strip(),
            "email": (email or "").strip(),
            "name": (name or "").strip(),
            "address": (address or "").strip(),
        }
        if isinstance(latitude, (int, float)):
            body["latitude"] = latitude
        if isinstance(longitude, (int, float)):
            body["longitude"] = longitude
        resp = await self.request(
            "POST", "/shipping/address/validate", json=body
        )
        data = resp.get("data") or {}
        if not data.get("address_code"):
            raise ShipbubbleError(
                "Shipbubble could not validate this address. "
                "Please check the address string.",
                path="/shipping/address/validate", payload=data,
            )
        return data

    async def fetch_boxes(self) -> List[dict]:
        resp = await self.request("GET", "/shipping/labels/boxes")
        data = resp.get("data")
        return data if isinstance(data, list) else []

    async def fetch_couriers(self) -> List[dict]:
        resp = await self.request("GET", "/shipping/couriers")
        data = resp.get("data")
        return data if isinstance(data, list) else []

    # ---- rates

    async def fetch_rates(self, body: dict,
                          service_codes: Optional[List[str]] = None) -> dict:
        path = "/shipping/fetch_rates"
        if service_codes:
            path += "/" + quote(",".join(service_codes), safe="")
        resp = await self.request("POST", path, json=body)
        return resp.get("data") or {}

    # ---- labels

    async def create_label(self, *, request_token: str, service_code: str,
                           courier_id: str,
                           insurance_code: Optional[str] = None,
                           is_cod_label: Optional[bool] = None) -> dict:
        body: Dict[str, Any] = {
            "request_token": request_token,
            "service_code": service_code,
            "courier_id": courier_id,
        }
        if insurance_code:
            body["insurance_code"] = insurance_code
        if isinstance(is_cod_label, bool):
            body["is_cod_label"] = is_cod_label
        return await self.request(
            "POST", "/shipping/labels", json=body, timeout=LABEL_TIMEOUT
        )

    async def cancel_label(self, external_order_id: str) -> None:
        if not external_order_id:
            raise ShipbubbleError("Shipbubble order_id required to cancel")
        await self.request(
            "POST",
            f"/shipping/labels/cancel/{quote(external_order_id, safe='')}",
            timeout=LABEL_TIMEOUT,
        )

    async def list_shipments_by_ids(
        self, external_ids: List[str], *,
        timeout: float = DEFAULT_TIMEOUT, retry: int = DEFAULT_RETRY,
    ) -> List[dict]:
        out: List[dict] = []
        for i in range(0, len(external_ids), LIST_CHUNK):
            chunk = external_ids[i:i + LIST_CHUNK]
            csv = ",".join(quote(str(s), safe="") for s in chunk)
            resp = await self.request(
                "GET", f"/shipping/labels/list/{csv}",
                timeout=timeout, retry=retry,
            )
            results = (resp.get("data") or {}).get("results")
            if isinstance(results, list):
                out.extend(results)
        return out
