"""
Print vendor clients.

``PrintVendorClient`` is the interface the orchestrator and the HTTP layer
depend on. ``LuluClient`` implements it for the Lulu Print API; the RPI
client lives in ``rpi_client``.

Lulu authentication is an OAuth2 client-credentials grant. The resulting token is
held in a ``VendorSession`` owned by the client instance and refreshed lazily
once it gets within ``token_safety_margin`` seconds of expiry. Refreshes are
serialized by a lock, so callers that find the token stale at the same time
wait for a single auth request instead of each issuing their own.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, Optional, Protocol

import httpx

from .configuration import VendorSettings
from .errors import (
    ConfigurationMissing,
    DuplicateVendorOrder,
    TransientVendorError,
    VendorAuthFailure,
    VendorError,
    VendorValidationError,
)
from .models import ShippingAddress

logger = logging.getLogger(__name__)


@dataclass
class VendorSession:
    access_token: str
    expires_at: float

    def is_valid(self, now: float, margin: float) -> bool:
        return now < self.expires_at - margin


@dataclass
class VendorOrder:
    id: Optional[str]
    external_id: Optional[str]
    status: str
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "VendorOrder":
        return cls(
            id=optional_str(payload.get("id")),
            external_id=payload.get("external_id"),
            status=_status_name(payload),
            raw=payload,
        )


@dataclass
class VendorStatus:
    order_id: Optional[str]
    external_id: Optional[str]
    status: str
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    estimated_ship_date: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "VendorStatus":
        line_items = payload.get("line_items") or [{}]
        tracking = line_items[0].get("tracking") or {}
        if isinstance(tracking, list):
            tracking = tracking[0] if tracking else {}
        shipping_dates = payload.get("estimated_shipping_dates") or {}
        return cls(
            order_id=optional_str(payload.get("id")),
            external_id=payload.get("external_id") or line_items[0].get("external_id"),
            status=_status_name(payload),
            tracking_number=tracking.get("id"),
            tracking_url=tracking.get("url"),
            estimated_ship_date=shipping_dates.get("arrival_min"),
        )


def optional_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _status_name(payload: Dict[str, Any]) -> str:
    status = payload.get("status")
    if isinstance(status, dict):
        return status.get("name") or "CREATED"
    return status or "CREATED"


def raise_for_vendor_response(response: httpx.Response, context: str) -> None:
    if response.is_success:
        return
    status = response.status_code
    body = response.text
    message = f"{context} failed ({status}): {body}"
    if status in (401, 403):
        raise VendorAuthFailure(message, status_code=status, body=body)
    if status == 409:
        raise DuplicateVendorOrder(message, status_code=status, body=body)
    if 400 <= status < 500:
        raise VendorValidationError(message, status_code=status, body=body)
    raise TransientVendorError(message, status_code=status, body=body)


class PrintVendorClient(Protocol):
    """Operations every print vendor integration provides."""

    def submit_order(
        self,
        external_id: str,
        interior_url: str,
        cover_url: str,
        shipping_address: ShippingAddress,
        pod_package_id: Optional[str] = None,
        title: str = "Team Season Book",
        quantity: int = 1,
    ) -> VendorOrder: ...

    def get_order_status(self, vendor_order_id: str) -> VendorStatus: ...

    def cancel_order(self, vendor_order_id: str) -> Dict[str, Any]: ...

    def find_order_by_external_id(self, external_id: str) -> Optional[VendorOrder]: ...

    def estimate_shipping(
        self,
        page_count: int,
        quantity: int,
        state: str,
        zip_code: str,
        country: str = "US",
    ) -> Dict[str, Any]: ...

    def close(self) -> None: ...


class LuluClient:
    """Print vendor client for the Lulu Print API."""

    def __init__(
        self,
        settings: VendorSettings,
        http_client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not settings.is_configured:
            raise ConfigurationMissing("vendor", "LULU_CLIENT_KEY and LULU_CLIENT_SECRET are required")
        self.settings = settings
        self._http = http_client or httpx.Client(timeout=settings.timeout)
        self._clock = clock
        self._session: Optional[VendorSession] = None
        self._session_lock = Lock()

    def close(self) -> None:
        self._http.close()

    # -- authentication -------------------------------------------------

    def get_access_token(self) -> str:
        session = self._session
        if session and session.is_valid(self._clock(), self.settings.token_safety_margin):
            return session.access_token

        with self._session_lock:
            # another caller may have refreshed while we waited for the lock
            session = self._session
            if session and session.is_valid(self._clock(), self.settings.token_safety_margin):
                return session.access_token
            self._session = self._authenticate()
            return self._session.access_token

    def invalidate_session(self) -> None:
        with self._session_lock:
            self._session = None

    def _authenticate(self) -> VendorSession:
        logger.info("Requesting vendor access token")
        requested_at = self._clock()
        try:
            response = self._http.post(
                self.settings.auth_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.settings.client_key,
                    "client_secret": self.settings.client_secret,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.TransportError as exc:
            raise TransientVendorError(f"Vendor auth request failed: {exc}") from exc

        if 400 <= response.status_code < 500:
            raise VendorAuthFailure(
                f"Vendor auth failed ({response.status_code}): {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        raise_for_vendor_response(response, "Vendor auth")

        data = response.json()
        return VendorSession(
            access_token=data["access_token"],
            expires_at=requested_at + float(data.get("expires_in", 0)),
        )

    # -- API calls ------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        token = self.get_access_token()
        url = f"{self.settings.api_base.rstrip('/')}{path}"
        try:
            response = self._http.request(
                method,
                url,
                json=json,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TransportError as exc:
            raise TransientVendorError(f"Vendor {method} {path} failed: {exc}") from exc

        if response.status_code in (401, 403):
            self.invalidate_session()
        raise_for_vendor_response(response, f"Vendor {method} {path}")

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise VendorError(
                f"Vendor {method} {path} returned invalid JSON",
                status_code=response.status_code,
                body=response.text,
            ) from exc

    def submit_order(
        self,
        external_id: str,
        interior_url: str,
        cover_url: str,
        shipping_address: ShippingAddress,
        pod_package_id: Optional[str] = None,
        title: str = "Team Season Book",
        quantity: int = 1,
    ) -> VendorOrder:
        """
        Create a print job. ``external_id`` is sent on the job and its line item
        so the vendor can reject duplicates.
        """
        order = {
            "contact_email": shipping_address.email,
            "external_id": external_id,
            "line_items": [
                {
                    "external_id": external_id,
                    "printable_normalization": {
                        "cover": {"source_url": cover_url},
                        "interior": {"source_url": interior_url},
                        "pod_package_id": pod_package_id or self.settings.pod_package_id,
                    },
                    "quantity": quantity,
                    "title": title,
                }
            ],
            "shipping_level": self.settings.shipping_level,
            "shipping_address": {
                "name": shipping_address.name,
                "street1": shipping_address.street,
                "city": shipping_address.city,
                "state_code": shipping_address.state.upper(),
                "postcode": shipping_address.zip,
                "country_code": shipping_address.country,
                "phone_number": shipping_address.phone,
                "email": shipping_address.email,
            },
        }
        payload = self._request("POST", "/v1/print-jobs/", json=order)
        vendor_order = VendorOrder.from_payload(payload)
        logger.info(f"Vendor order {vendor_order.id} created for {external_id} ({vendor_order.status})")
        return vendor_order

    def get_order_status(self, vendor_order_id: str) -> VendorStatus:
        return VendorStatus.from_payload(self._request("GET", f"/v1/print-jobs/{vendor_order_id}/"))

    def cancel_order(self, vendor_order_id: str) -> Dict[str, Any]:
        logger.info(f"Cancelling vendor order {vendor_order_id}")
        return self._request("DELETE", f"/v1/print-jobs/{vendor_order_id}/")

    def find_order_by_external_id(self, external_id: str) -> Optional[VendorOrder]:
        payload = self._request("GET", "/v1/print-jobs/", params={"search": external_id})
        for job in payload.get("results") or []:
            if job.get("external_id") == external_id:
                return VendorOrder.from_payload(job)
        return None

    def estimate_shipping(
        self,
        page_count: int,
        quantity: int,
        state: str,
        zip_code: str,
        country: str = "US",
    ) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/v1/print-job-cost-calculations/",
            json={
                "line_items": [
                    {
                        "page_count": page_count,
                        "pod_package_id": self.settings.pod_package_id,
                        "quantity": quantity,
                    }
                ],
                "shipping_address": {
                    "state_code": state.upper(),
                    "postcode": zip_code,
                    "country_code": country,
                },
                "shipping_option": self.settings.shipping_level,
            },
        )
