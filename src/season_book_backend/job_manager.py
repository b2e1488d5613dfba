"""
Fulfillment orchestration for paid book orders.

This module manages the end-to-end lifecycle of a print order:
- Claiming a payment session exactly once (webhook redelivery is a no-op)
- Fetching stored book data and paginating it
- Rendering interior and cover PDFs concurrently
- Uploading both artifacts concurrently
- Submitting the print job to the vendor under a deterministic external id
- Recording vendor status updates and emailing tracking once shipped
- Re-driving a failed run on operator request

The FulfillmentOrchestrator runs each fulfillment on a worker pool so the
payment webhook can be acknowledged before any of this work starts.

Stages::

    RECEIVED -> FETCHING -> RENDERING -> UPLOADING -> SUBMITTING -> SUBMITTED
                                                              \\-> ARTIFACTS_READY (no vendor configured)
    any non-terminal stage -> FAILED
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from .configuration import FulfillmentConfig
from .database import FulfillmentDatabase
from .errors import DuplicateVendorOrder, FulfillmentError, ValidationError
from .models import (
    BookData,
    CheckoutCompleted,
    DocumentType,
    FulfillmentDetail,
    FulfillmentStage,
    FulfillmentSummary,
    JobEvent,
    OrderStatus,
    ShippingAddress,
)
from .notifications import ShippingNotifier
from .pagination import Book, build_book
from .print_spec import PrintSpec, get_print_spec
from .renderer import Renderer
from .s3_service import BookDataStore, S3ArtifactStore
from .status_mapper import advance_status, map_vendor_status
from .utils import artifact_key, derive_external_id
from .vendor_client import PrintVendorClient, VendorOrder

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
STATUS_UPDATE_ATTEMPTS = 3


@dataclass
class FulfillmentRecord:
    """
    Internal representation of one fulfillment run.

    Attributes:
        id: Unique fulfillment identifier (hex UUID)
        payment_session_id: Payment processor session that paid for the book
        external_id: Vendor idempotency key derived from the session
        stage: Current pipeline stage
        book_data_url: Where the book data was stored before checkout
        shipping: Shipping address as a plain dict
        order_status: Normalized vendor status once an order exists
        attempts: Number of pipeline runs started for this session
        events: Chronological list of lifecycle events
    """

    id: str
    payment_session_id: str
    external_id: str
    stage: FulfillmentStage
    created_at: datetime
    updated_at: datetime
    book_data_url: Optional[str] = None
    shipping: Optional[Dict[str, Any]] = None
    order_status: Optional[OrderStatus] = None
    vendor_status: Optional[str] = None
    vendor_order_id: Optional[str] = None
    page_count: Optional[int] = None
    interior_url: Optional[str] = None
    cover_url: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
    events: List[JobEvent] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "FulfillmentRecord":
        data = dict(row)
        data["stage"] = FulfillmentStage(data["stage"])
        data["order_status"] = OrderStatus(data["order_status"]) if data.get("order_status") else None
        data["events"] = [JobEvent(**event) for event in data.get("events") or []]
        return cls(**data)

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row["events"] = [event.model_dump() for event in self.events]
        return row

    def to_summary(self) -> FulfillmentSummary:
        return FulfillmentSummary(
            id=self.id,
            payment_session_id=self.payment_session_id,
            external_id=self.external_id,
            stage=self.stage,
            order_status=self.order_status,
            vendor_order_id=self.vendor_order_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_detail(self) -> FulfillmentDetail:
        return FulfillmentDetail(
            **self.to_summary().model_dump(),
            book_data_url=self.book_data_url,
            page_count=self.page_count,
            interior_url=self.interior_url,
            cover_url=self.cover_url,
            vendor_status=self.vendor_status,
            tracking_number=self.tracking_number,
            tracking_url=self.tracking_url,
            attempts=self.attempts,
            error=self.error,
            events=self.events,
        )


@dataclass(frozen=True)
class RenderedDocuments:
    interior: bytes
    cover: bytes


class FulfillmentOrchestrator:
    """
    Central coordinator for fulfillment runs.

    Thread Safety:
        Claiming a payment session is decided by the database: the first
        claim is a UNIQUE insert and re-arming a failed run is a conditional
        update, so deliveries racing across threads or worker processes start
        at most one run. Stage updates go straight to the database, one
        statement each.

    Attributes:
        print_spec: Geometry of the configured vendor product
        vendor_client: ``None`` when the vendor integration is not configured
        notifier: ``None`` when customer email is not configured
    """

    def __init__(
        self,
        config: FulfillmentConfig,
        database: FulfillmentDatabase,
        book_store: BookDataStore,
        artifact_store: S3ArtifactStore,
        renderer_factory: Callable[[], Renderer],
        vendor_client: Optional[PrintVendorClient] = None,
        notifier: Optional[ShippingNotifier] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.config = config
        self.database = database
        self.book_store = book_store
        self.artifact_store = artifact_store
        self.vendor_client = vendor_client
        self.notifier = notifier
        self.print_spec: PrintSpec = get_print_spec(config.print_specs, config.vendor.name, config.vendor.product)
        self._renderer_factory = renderer_factory
        self._lock = Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or config.max_workers,
            thread_name_prefix="fulfillment",
        )
        self._active_renderers: Dict[int, Tuple[Renderer, asyncio.AbstractEventLoop]] = {}

    # -- queries --------------------------------------------------------

    def get_fulfillment(self, fulfillment_id: str) -> Optional[FulfillmentDetail]:
        row = self.database.get(fulfillment_id)
        return FulfillmentRecord.from_row(row).to_detail() if row else None

    def list_fulfillments(self) -> List[FulfillmentSummary]:
        return [FulfillmentRecord.from_row(row).to_summary() for row in self.database.list_all()]

    def find_by_vendor_order(self, vendor_order_id: str) -> Optional[FulfillmentDetail]:
        row = self.database.get_by_vendor_order(vendor_order_id)
        return FulfillmentRecord.from_row(row).to_detail() if row else None

    # -- entry point ----------------------------------------------------

    def handle_checkout_completed(self, event: CheckoutCompleted) -> Optional[Future]:
        """
        Register a verified payment and schedule its fulfillment.

        Returns immediately; the run happens on the worker pool.

        Returns:
            The Future of the scheduled run, or None when nothing was
            scheduled (redelivery of an active or finished session, or a
            payment that cannot be fulfilled)
        """
        external_id = derive_external_id(event.session_id, event.created)
        metadata = dict(event.metadata)
        if not metadata.get("shipping_email") and event.customer_email:
            metadata["shipping_email"] = event.customer_email

        with self._lock:
            existing = self.database.get_by_session(event.session_id)
            if existing is not None:
                record = FulfillmentRecord.from_row(existing)
                # conditional write: of several workers seeing FAILED, one wins
                if not self.database.rearm_if_failed(record.id, book_data_url=event.book_data_url):
                    logger.info(
                        f"Payment session {event.session_id} already handled "
                        f"(fulfillment {record.id}); ignoring redelivery"
                    )
                    return None
                self.database.add_event(record.id, "Payment webhook redelivered; retrying fulfillment.")
            else:
                now = datetime.utcnow()
                record = FulfillmentRecord(
                    id=uuid4().hex,
                    payment_session_id=event.session_id,
                    external_id=external_id,
                    stage=FulfillmentStage.RECEIVED,
                    created_at=now,
                    updated_at=now,
                    book_data_url=event.book_data_url,
                    events=[JobEvent(timestamp=now, message="Payment received; fulfillment registered.")],
                )
                if not self.database.insert_if_absent(record.to_row()):
                    logger.info(f"Payment session {event.session_id} claimed concurrently; ignoring")
                    return None

        if not event.book_data_url:
            logger.error(f"No bookDataUrl in session metadata, session: {event.session_id}")
            self._fail(record.id, FulfillmentStage.RECEIVED, ValidationError("Missing book data reference"))
            return None

        try:
            shipping = ShippingAddress.from_checkout_metadata(metadata)
        except PydanticValidationError as exc:
            logger.error(f"Invalid shipping address for session {event.session_id}: {exc}")
            self._fail(record.id, FulfillmentStage.RECEIVED, ValidationError(f"Invalid shipping address: {exc}"))
            return None

        self.database.update(record.id, shipping=shipping.model_dump())
        logger.info(f"Fulfillment {record.id} ({external_id}) scheduled for session {event.session_id}")
        return self._executor.submit(self.run, record.id)

    # -- pipeline -------------------------------------------------------

    def run(self, fulfillment_id: str) -> FulfillmentStage:
        """
        Execute every stage for one fulfillment (runs in a worker thread).

        Failures are contained here: the record ends in FAILED with the
        stage and cause logged, and nothing is retried. Redelivery of the
        payment webhook is the retry path.
        """
        record = FulfillmentRecord.from_row(self.database.get(fulfillment_id))
        attempt = record.attempts + 1
        self.database.update(fulfillment_id, attempts=attempt)
        stage = FulfillmentStage.RECEIVED

        try:
            stage = self._advance(record, FulfillmentStage.FETCHING, "Fetching book data.")
            book_data = self._fetch_book_data(record.book_data_url)

            stage = self._advance(record, FulfillmentStage.RENDERING, "Rendering interior and cover.")
            book = build_book(book_data)
            total_pages = book_data.page_count or book.total_pages
            page_count = self.print_spec.billable_page_count(total_pages)
            self.database.update(fulfillment_id, page_count=page_count)
            documents = self._render_documents(book, page_count)

            stage = self._advance(record, FulfillmentStage.UPLOADING, "Uploading artifacts.")
            interior_url, cover_url = self._upload_documents(record.external_id, documents)
            self.database.update(fulfillment_id, interior_url=interior_url, cover_url=cover_url)

            stage = self._advance(record, FulfillmentStage.SUBMITTING, "Submitting print job.")
            if self.vendor_client is None:
                logger.info(
                    f"Vendor not configured, skipping print submission for {record.external_id}. "
                    f"PDFs available at cover={cover_url} interior={interior_url}"
                )
                return self._advance(record, FulfillmentStage.ARTIFACTS_READY, "Vendor not configured; artifacts ready.")

            shipping = ShippingAddress(**record.shipping)
            vendor_order = self._submit(record, attempt, interior_url, cover_url, shipping, book)
            self._record_submission(record, vendor_order)
            return FulfillmentStage.SUBMITTED
        except FulfillmentError as exc:
            self._fail(fulfillment_id, stage, exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Unexpected error in fulfillment {fulfillment_id} during {stage.value}")
            self._fail(fulfillment_id, stage, exc)
        return FulfillmentStage.FAILED

    def _advance(self, record: FulfillmentRecord, stage: FulfillmentStage, message: str) -> FulfillmentStage:
        self.database.update(record.id, stage=stage)
        self.database.add_event(record.id, message)
        logger.info(f"Fulfillment {record.id} ({record.external_id}) -> {stage.value}")
        return stage

    def _fail(self, fulfillment_id: str, stage: FulfillmentStage, exc: BaseException) -> None:
        logger.error(f"Fulfillment {fulfillment_id} failed during {stage.value}: {exc}")
        self.database.update(fulfillment_id, stage=FulfillmentStage.FAILED, error=f"{type(exc).__name__}: {exc}")
        self.database.add_event(fulfillment_id, f"Failed during {stage.value}: {exc}")

    def _fetch_book_data(self, url: Optional[str]) -> BookData:
        payload = self.book_store.fetch(url)
        try:
            book_data = BookData.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError(f"Stored book data is malformed: {exc}", stage="fetching") from exc
        logger.info(f"Book data fetched: {len(book_data.entries)} entries")
        return book_data

    def _render_documents(self, book: Book, page_count: int) -> RenderedDocuments:
        # each run owns a private event loop on its worker thread
        return asyncio.run(self._render_pair(book, page_count))

    async def _render_pair(self, book: Book, page_count: int) -> RenderedDocuments:
        renderer = self._renderer_factory()
        self._track_renderer(renderer)
        try:
            async with renderer:
                tasks = [
                    asyncio.ensure_future(
                        renderer.render(book, DocumentType.INTERIOR, self.print_spec.interior_dimensions(), page_count)
                    ),
                    asyncio.ensure_future(
                        renderer.render(book, DocumentType.COVER, self.print_spec.cover_dimensions(page_count), page_count)
                    ),
                ]
                try:
                    interior, cover = await asyncio.gather(*tasks)
                except BaseException:
                    # the sibling must finish before the browser closes
                    for task in tasks:
                        task.cancel()
                    await asyncio.gather(*tasks, return_exceptions=True)
                    raise
        finally:
            self._untrack_renderer(renderer)
        logger.info(f"PDFs generated: cover={len(cover)}b, interior={len(interior)}b")
        return RenderedDocuments(interior=interior, cover=cover)

    def _upload_documents(self, external_id: str, documents: RenderedDocuments) -> Tuple[str, str]:
        prefix = self.config.storage.orders_prefix
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="upload") as pool:
            interior = pool.submit(
                self.artifact_store.store,
                artifact_key(prefix, external_id, "interior.pdf"),
                documents.interior,
                PDF_CONTENT_TYPE,
            )
            cover = pool.submit(
                self.artifact_store.store,
                artifact_key(prefix, external_id, "cover.pdf"),
                documents.cover,
                PDF_CONTENT_TYPE,
            )
            return interior.result(), cover.result()

    def _submit(
        self,
        record: FulfillmentRecord,
        attempt: int,
        interior_url: str,
        cover_url: str,
        shipping: ShippingAddress,
        book: Book,
    ) -> Optional[VendorOrder]:
        vendor = self.vendor_client
        if attempt > 1:
            # an earlier attempt may have reached the vendor before failing
            existing = vendor.find_order_by_external_id(record.external_id)
            if existing is not None:
                logger.info(f"Vendor order {existing.id} already exists for {record.external_id}")
                return existing

        try:
            return vendor.submit_order(
                external_id=record.external_id,
                interior_url=interior_url,
                cover_url=cover_url,
                shipping_address=shipping,
                title=f"{book.data.team.name} Season Book",
            )
        except DuplicateVendorOrder:
            logger.warning(f"Vendor reports {record.external_id} already submitted; treating as submitted")
            return vendor.find_order_by_external_id(record.external_id)

    def _record_submission(self, record: FulfillmentRecord, vendor_order: Optional[VendorOrder]) -> None:
        if vendor_order is None:
            self.database.update(record.id, stage=FulfillmentStage.SUBMITTED, order_status=OrderStatus.ORDERED)
            self.database.add_event(record.id, "Vendor already holds this order.")
            logger.info(f"Fulfillment {record.id} ({record.external_id}) -> submitted (existing vendor order)")
            return

        self.database.update(
            record.id,
            stage=FulfillmentStage.SUBMITTED,
            vendor_order_id=vendor_order.id,
            vendor_status=vendor_order.status,
            order_status=map_vendor_status(vendor_order.status),
        )
        self.database.add_event(record.id, f"Vendor order {vendor_order.id} created ({vendor_order.status}).")
        logger.info(f"Fulfillment {record.id} ({record.external_id}) -> submitted as vendor order {vendor_order.id}")

    # -- vendor updates -------------------------------------------------

    def record_vendor_status(
        self,
        vendor_status: str,
        *,
        vendor_order_id: Optional[str] = None,
        external_id: Optional[str] = None,
        tracking_number: Optional[str] = None,
        tracking_url: Optional[str] = None,
    ) -> Optional[FulfillmentDetail]:
        """
        Apply a vendor status update (webhook or poll) to the matching record.

        The normalized status only moves forward. An update that would move it
        backwards leaves both ``order_status`` and ``vendor_status`` as they
        were and only fills in tracking details. The first update to reach
        SHIPPED emails the customer their tracking link.

        Returns:
            The updated fulfillment, or None if no record matches
        """
        for _ in range(STATUS_UPDATE_ATTEMPTS):
            row = None
            if vendor_order_id:
                row = self.database.get_by_vendor_order(vendor_order_id)
            if row is None and external_id:
                row = self.database.get_by_external_id(external_id)
            if row is None:
                logger.warning(f"Vendor status {vendor_status} for unknown order {vendor_order_id or external_id}")
                return None

            record = FulfillmentRecord.from_row(row)
            status = advance_status(record.order_status, map_vendor_status(vendor_status))
            updates: Dict[str, Any] = {}
            if status == map_vendor_status(vendor_status):
                updates.update(vendor_status=vendor_status, order_status=status)
            if vendor_order_id and not record.vendor_order_id:
                updates["vendor_order_id"] = vendor_order_id
            if tracking_number:
                updates["tracking_number"] = tracking_number
            if tracking_url:
                updates["tracking_url"] = tracking_url
            if not updates:
                logger.info(f"Ignoring stale vendor status {vendor_status} for fulfillment {record.id}")
                return self.get_fulfillment(record.id)

            # order_status compare-and-set; a concurrent update reloads and retries
            if self.database.update_if_order_status(record.id, record.order_status, **updates):
                break
        else:
            logger.warning(f"Vendor status {vendor_status} for {record.id} kept losing to concurrent updates")
            return self.get_fulfillment(record.id)

        if status != record.order_status:
            self.database.add_event(record.id, f"Order status {vendor_status} -> {status.value}.")
            logger.info(f"Fulfillment {record.id} order status -> {status.value} (vendor {vendor_status})")
            if status == OrderStatus.SHIPPED:
                self._notify_shipped(record, tracking_number or record.tracking_number, tracking_url or record.tracking_url)
        return self.get_fulfillment(record.id)

    def _notify_shipped(
        self,
        record: FulfillmentRecord,
        tracking_number: Optional[str],
        tracking_url: Optional[str],
    ) -> None:
        recipient = (record.shipping or {}).get("email")
        if self.notifier is None:
            logger.info(f"Email not configured, no shipping email for {record.external_id}")
            return
        if not recipient or not tracking_number:
            logger.warning(f"Cannot email shipping update for {record.external_id}: missing recipient or tracking")
            return
        if self.notifier.send_shipped(recipient, tracking_number, tracking_url, external_id=record.external_id):
            self.database.add_event(record.id, f"Shipping email sent to {recipient}.")

    # -- operator actions -----------------------------------------------

    def retry_fulfillment(self, fulfillment_id: str) -> Optional[Future]:
        """
        Re-drive a FAILED fulfillment without waiting for a webhook redelivery.

        Returns:
            The Future of the scheduled run, or None when the record is not
            FAILED (another worker re-armed it first, or it never failed)

        Raises:
            ValidationError: The record lacks the book data or shipping
                address a run needs
        """
        row = self.database.get(fulfillment_id)
        if row is None:
            return None
        record = FulfillmentRecord.from_row(row)
        if not record.book_data_url or not record.shipping:
            raise ValidationError(f"Fulfillment {fulfillment_id} has no book data or shipping address to retry with")
        if not self.database.rearm_if_failed(record.id):
            logger.info(f"Fulfillment {fulfillment_id} is {record.stage.value}; not retrying")
            return None
        self.database.add_event(record.id, "Retry requested by operator.")
        logger.info(f"Fulfillment {record.id} ({record.external_id}) re-armed by operator")
        return self._executor.submit(self.run, record.id)

    # -- lifecycle ------------------------------------------------------

    def _track_renderer(self, renderer: Renderer) -> None:
        with self._lock:
            self._active_renderers[id(renderer)] = (renderer, asyncio.get_running_loop())

    def _untrack_renderer(self, renderer: Renderer) -> None:
        with self._lock:
            self._active_renderers.pop(id(renderer), None)

    def shutdown(self, wait: bool = False) -> None:
        """Stop accepting work and close browsers still rendering."""
        with self._lock:
            active = list(self._active_renderers.values())
        for renderer, loop in active:
            if loop.is_running():
                logger.warning("Closing in-flight renderer on shutdown")
                asyncio.run_coroutine_threadsafe(renderer.close(), loop)
        self._executor.shutdown(wait=wait, cancel_futures=True)
