"""
RPI Print API client.

RPI authenticates with a static bearer API key, so there is no session to
refresh. Order statuses are lowercase words
(``accepted -> printing -> shipped -> delivered``) and status webhooks carry a
flat body with ``order_id``, ``status``, ``tracking_number`` and ``carrier``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .configuration import RpiSettings
from .errors import ConfigurationMissing, TransientVendorError, UnsupportedVendorOperation, VendorError
from .models import ShippingAddress
from .vendor_client import VendorOrder, VendorStatus, optional_str, raise_for_vendor_response

logger = logging.getLogger(__name__)


def parse_rpi_status(payload: Dict[str, Any]) -> VendorStatus:
    """Read an order or webhook body into a ``VendorStatus``."""
    return VendorStatus(
        order_id=optional_str(payload.get("order_id") or payload.get("id")),
        external_id=payload.get("external_id"),
        status=payload.get("status") or "accepted",
        tracking_number=payload.get("tracking_number"),
        tracking_url=payload.get("tracking_url"),
        estimated_ship_date=payload.get("estimated_ship_date"),
    )


class RpiClient:
    """Print vendor client for the RPI Print API."""

    def __init__(self, settings: RpiSettings, http_client: Optional[httpx.Client] = None) -> None:
        if not settings.is_configured:
            raise ConfigurationMissing("vendor", "RPI_API_KEY and RPI_API_URL are required")
        self.settings = settings
        self._http = http_client or httpx.Client(timeout=settings.timeout)

    def close(self) -> None:
        self._http.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.settings.api_base.rstrip('/')}{path}"
        try:
            response = self._http.request(
                method,
                url,
                json=json,
                params=params,
                headers={"Authorization": f"Bearer {self.settings.api_key}"},
            )
        except httpx.TransportError as exc:
            raise TransientVendorError(f"RPI {method} {path} failed: {exc}") from exc

        raise_for_vendor_response(response, f"RPI {method} {path}")
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise VendorError(
                f"RPI {method} {path} returned invalid JSON",
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
        """Create an order. ``pod_package_id`` overrides the configured SKU."""
        order = {
            "external_id": external_id,
            "line_items": [
                {
                    "sku": pod_package_id or self.settings.sku,
                    "quantity": quantity,
                    "cover_url": cover_url,
                    "guts_url": interior_url,
                }
            ],
            "shipping_address": {
                "name": shipping_address.name,
                "street1": shipping_address.street,
                "city": shipping_address.city,
                "state": shipping_address.state.upper(),
                "zip": shipping_address.zip,
                "country": shipping_address.country,
            },
            "shipping_method": self.settings.shipping_method,
        }
        payload = self._request("POST", "/v1/orders", json=order)
        vendor_order = VendorOrder.from_payload(payload)
        if vendor_order.external_id is None:
            vendor_order.external_id = external_id
        logger.info(f"RPI order {vendor_order.id} created for {external_id} ({vendor_order.status})")
        return vendor_order

    def get_order_status(self, vendor_order_id: str) -> VendorStatus:
        return parse_rpi_status(self._request("GET", f"/v1/orders/{vendor_order_id}"))

    def find_order_by_external_id(self, external_id: str) -> Optional[VendorOrder]:
        payload = self._request("GET", "/v1/orders", params={"external_id": external_id})
        if isinstance(payload, dict):
            payload = payload.get("orders") or payload.get("results") or []
        for order in payload:
            if order.get("external_id") == external_id:
                return VendorOrder.from_payload(order)
        return None

    def cancel_order(self, vendor_order_id: str) -> Dict[str, Any]:
        raise UnsupportedVendorOperation("RPI orders cannot be cancelled through the API")

    def estimate_shipping(
        self,
        page_count: int,
        quantity: int,
        state: str,
        zip_code: str,
        country: str = "US",
    ) -> Dict[str, Any]:
        raise UnsupportedVendorOperation("RPI does not offer shipping estimates")
