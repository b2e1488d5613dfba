"""
Error taxonomy for the season book backend.

Boundary errors (configuration, validation, signature) are resolved by the
HTTP layer and never enter the fulfillment pipeline. Pipeline errors carry
the stage they were raised in so the orchestrator can log and record them.
"""

from __future__ import annotations

from typing import Optional


class FulfillmentError(RuntimeError):
    """Base class for every error raised by this package."""

    retryable = False

    def __init__(self, detail: str, *, stage: Optional[str] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.stage = stage


class ConfigurationMissing(FulfillmentError):
    """A required credential or setting is absent (surfaced as 503)."""

    def __init__(self, integration: str, detail: Optional[str] = None) -> None:
        super().__init__(detail or f"{integration} is not configured")
        self.integration = integration


class ValidationError(FulfillmentError):
    """Malformed caller input (surfaced as 400)."""


class SignatureInvalid(FulfillmentError):
    """Webhook payload failed signature verification (surfaced as 400)."""


class DataNotFound(FulfillmentError):
    """Referenced book data is missing or could not be fetched."""


class RenderFailure(FulfillmentError):
    """Headless rendering did not produce a document."""


class RenderTimeout(RenderFailure):
    """The template never signalled readiness within the bounded wait."""


class StorageError(FulfillmentError):
    """Artifact upload or object storage access failed."""


class VendorError(FulfillmentError):
    """Non-2xx response (or transport failure) from the print vendor."""

    def __init__(
        self,
        detail: str,
        *,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> None:
        super().__init__(detail, stage=stage)
        self.status_code = status_code
        self.body = body


class VendorAuthFailure(VendorError):
    """Vendor rejected our credentials. Fatal, never retried automatically."""


class VendorValidationError(VendorError):
    """Vendor rejected the request shape or product id. Needs an operator."""


class DuplicateVendorOrder(VendorValidationError):
    """Vendor already holds an order for this external id."""


class TransientVendorError(VendorError):
    """5xx, timeout or connection failure. Safe to retry with backoff."""

    retryable = True


class UnsupportedVendorOperation(FulfillmentError):
    """The configured print vendor has no API for this operation (surfaced as 501)."""
