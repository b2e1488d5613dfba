from __future__ import annotations

import hashlib
import hmac
import json
import logging
from contextlib import asynccontextmanager
from functools import lru_cache, partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import stripe
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from .configuration import FulfillmentConfig, load_config
from .database import FulfillmentDatabase
from .diagnostics import run_pipeline_diagnostic
from .errors import (
    ConfigurationMissing,
    SignatureInvalid,
    StorageError,
    UnsupportedVendorOperation,
    ValidationError,
    VendorError,
)
from .job_manager import FulfillmentOrchestrator
from .models import (
    BookData,
    BookPreview,
    CheckoutCompleted,
    CheckoutRequest,
    CheckoutResponse,
    FulfillmentDetail,
    FulfillmentSummary,
    IntegrationStatus,
    OrderStatusResponse,
    PipelineDiagnostic,
    ShippingEstimateRequest,
    StoreBookDataRequest,
    StoreBookDataResponse,
)
from .notifications import ShippingNotifier
from .pagination import build_book
from .print_spec import PrintSpec, get_print_spec
from .renderer import PlaywrightRenderer, Renderer
from .rpi_client import RpiClient, parse_rpi_status
from .s3_service import BookDataStore, S3ArtifactStore
from .status_mapper import map_vendor_status
from .utils import ensure_directory
from .vendor_client import LuluClient, PrintVendorClient, VendorStatus

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "book_template"
CHECKOUT_COMPLETED = "checkout.session.completed"
VENDOR_SIGNATURE_HEADER = "Lulu-HMAC-SHA256"
INTERNAL_SECRET_HEADER = "X-Webhook-Secret"


@lru_cache(maxsize=1)
def get_config() -> FulfillmentConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_database() -> FulfillmentDatabase:
    path = Path(get_config().database_path)
    ensure_directory(path.parent)
    return FulfillmentDatabase(path)


@lru_cache(maxsize=1)
def get_vendor_client() -> Optional[PrintVendorClient]:
    config = get_config()
    if not config.vendor_configured:
        return None
    if config.vendor.name == "rpi":
        return RpiClient(config.rpi)
    if config.vendor.name == "lulu":
        return LuluClient(config.vendor)
    raise ConfigurationMissing("vendor", f"Unknown print vendor {config.vendor.name!r}")


def require_vendor_client(
    client: Optional[PrintVendorClient] = Depends(get_vendor_client),
) -> PrintVendorClient:
    if client is None:
        raise ConfigurationMissing("vendor", "Print vendor API credentials are not set.")
    return client


@lru_cache(maxsize=1)
def get_notifier() -> Optional[ShippingNotifier]:
    settings = get_config().email
    if not settings.is_configured:
        return None
    return ShippingNotifier(settings)


@lru_cache(maxsize=1)
def get_artifact_store() -> S3ArtifactStore:
    return S3ArtifactStore(get_config().storage)


def get_optional_artifact_store() -> Optional[S3ArtifactStore]:
    if not get_config().storage.is_configured:
        return None
    return get_artifact_store()


@lru_cache(maxsize=1)
def get_book_store() -> BookDataStore:
    settings = get_config().storage
    artifacts = get_artifact_store() if settings.is_configured else None
    return BookDataStore(settings, artifacts=artifacts)


def get_active_print_spec() -> PrintSpec:
    config = get_config()
    return get_print_spec(config.print_specs, config.vendor.name, config.vendor.product)


@lru_cache(maxsize=1)
def get_renderer_factory() -> Callable[[], Renderer]:
    return partial(PlaywrightRenderer.from_settings, get_config().renderer)


@lru_cache(maxsize=1)
def get_orchestrator() -> FulfillmentOrchestrator:
    config = get_config()
    return FulfillmentOrchestrator(
        config=config,
        database=get_database(),
        book_store=get_book_store(),
        artifact_store=get_artifact_store(),
        renderer_factory=get_renderer_factory(),
        vendor_client=get_vendor_client(),
        notifier=get_notifier(),
    )


def require_operator(
    x_webhook_secret: Optional[str] = Header(None),
    config: FulfillmentConfig = Depends(get_config),
) -> None:
    """Operator routes need ``INTERNAL_WEBHOOK_SECRET`` set and presented."""
    secret = config.operator.webhook_secret
    if not secret:
        raise ConfigurationMissing("operator", "INTERNAL_WEBHOOK_SECRET is not set.")
    if not x_webhook_secret or not hmac.compare_digest(secret, x_webhook_secret):
        raise HTTPException(status_code=401, detail="Unauthorized")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if get_orchestrator.cache_info().currsize:
        get_orchestrator().shutdown()
    client = get_vendor_client() if get_vendor_client.cache_info().currsize else None
    if client is not None:
        client.close()


logging.basicConfig(
    level=get_config().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Season Book Fulfillment API", version="0.1.0", lifespan=lifespan)

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/book-template", StaticFiles(directory=TEMPLATE_DIR), name="book-template")


@app.exception_handler(ConfigurationMissing)
async def configuration_missing_handler(request: Request, exc: ConfigurationMissing) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"error": "Backend not configured", "message": exc.detail, "integration": exc.integration},
    )


@app.exception_handler(ValidationError)
@app.exception_handler(SignatureInvalid)
async def bad_request_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": exc.detail})


@app.exception_handler(VendorError)
async def vendor_error_handler(request: Request, exc: VendorError) -> JSONResponse:
    logger.error(f"Vendor error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=502,
        content={"error": "Print vendor request failed", "vendorStatus": exc.status_code, "details": exc.body},
    )


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    return JSONResponse(status_code=502, content={"error": "Storage request failed", "details": exc.detail})


@app.exception_handler(UnsupportedVendorOperation)
async def unsupported_operation_handler(request: Request, exc: UnsupportedVendorOperation) -> JSONResponse:
    return JSONResponse(status_code=501, content={"error": exc.detail})


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/config/integrations", response_model=IntegrationStatus)
def get_integrations(config: FulfillmentConfig = Depends(get_config)) -> IntegrationStatus:
    return IntegrationStatus(
        payments=config.payments.is_configured,
        storage=config.storage.is_configured,
        vendor=config.vendor_configured,
        vendor_name=config.vendor.name,
        product=config.vendor.product,
        email=config.email.is_configured,
    )


@app.post("/book-data", response_model=StoreBookDataResponse)
def store_book_data(request: StoreBookDataRequest, store: BookDataStore = Depends(get_book_store)) -> StoreBookDataResponse:
    book = build_book(request.book_data)
    document = request.book_data.model_dump(mode="json")
    document["page_count"] = request.book_data.page_count or book.total_pages
    url = store.store(document)
    logger.info(f"Stored book data ({len(request.book_data.entries)} entries, {book.total_pages} pages)")
    return StoreBookDataResponse(url=url, page_count=document["page_count"])


@app.post("/books/preview", response_model=BookPreview)
def preview_book(book_data: BookData, spec: PrintSpec = Depends(get_active_print_spec)) -> BookPreview:
    book = build_book(book_data)
    billable = spec.billable_page_count(book.total_pages)
    cover = spec.cover_dimensions(billable)
    return BookPreview(
        total_pages=book.total_pages,
        billable_pages=billable,
        content_pages=[[entry.id for entry in page] for page in book.content_pages],
        cover_width=cover.css_width,
        cover_height=cover.css_height,
    )


@app.post("/checkout", response_model=CheckoutResponse)
def create_checkout(request: CheckoutRequest, config: FulfillmentConfig = Depends(get_config)) -> CheckoutResponse:
    payments = config.payments
    if not payments.secret_key:
        raise ConfigurationMissing("payments", "STRIPE_SECRET_KEY not configured")

    base_url = payments.public_base_url.rstrip("/")
    try:
        session = stripe.checkout.Session.create(
            api_key=payments.secret_key,
            mode="payment",
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": payments.currency,
                        "unit_amount": payments.unit_amount,
                        "product_data": {
                            "name": payments.product_name,
                            "description": payments.product_description or None,
                        },
                    },
                    "quantity": 1,
                }
            ],
            shipping_options=[
                {
                    "shipping_rate_data": {
                        "type": "fixed_amount",
                        "fixed_amount": {"amount": payments.shipping_amount, "currency": payments.currency},
                        "display_name": "Standard shipping",
                    }
                }
            ],
            customer_email=request.shipping.email,
            success_url=f"{base_url}/order/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base_url}/order/cancelled",
            metadata={"bookDataUrl": request.book_data_url, **request.shipping.to_checkout_metadata()},
        )
    except stripe.StripeError as exc:
        logger.error(f"Checkout session creation failed: {exc}")
        raise HTTPException(status_code=502, detail=f"Payment provider error: {exc.user_message or exc}") from exc

    logger.info(f"Checkout session {session.id} created")
    return CheckoutResponse(url=session.url, session_id=session.id)


@app.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    config: FulfillmentConfig = Depends(get_config),
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    payload = await request.body()
    if not config.payments.is_configured:
        raise ConfigurationMissing("payments", "Stripe keys are not set.")
    if not config.storage.is_configured:
        raise ConfigurationMissing("storage", "Blob storage is not set up yet.")
    if not stripe_signature:
        raise SignatureInvalid("Missing Stripe-Signature header")

    try:
        stripe.Webhook.construct_event(payload, stripe_signature, config.payments.webhook_secret)
    except stripe.SignatureVerificationError as exc:
        logger.warning(f"Webhook signature verification failed: {exc}")
        raise SignatureInvalid("Invalid signature") from exc
    except ValueError as exc:
        raise ValidationError("Invalid webhook payload") from exc

    event = json.loads(payload)
    event_type = event.get("type")
    if event_type != CHECKOUT_COMPLETED:
        logger.info(f"Ignoring webhook event {event_type}")
        return {"received": True}

    session = event.get("data", {}).get("object", {})
    checkout = CheckoutCompleted(
        session_id=session["id"],
        created=session.get("created") or event.get("created"),
        metadata=session.get("metadata") or {},
        customer_email=session.get("customer_email") or (session.get("customer_details") or {}).get("email"),
    )
    logger.info(f"Payment completed for session {checkout.session_id}")
    # claiming the session hits SQLite; keep it off the event loop
    await run_in_threadpool(orchestrator.handle_checkout_completed, checkout)
    return {"received": True}


def _verify_vendor_signature(payload: bytes, signature: Optional[str], secret: str) -> None:
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    if not signature or not hmac.compare_digest(expected, signature.strip().lower()):
        raise SignatureInvalid("Invalid vendor webhook signature")


@app.post("/webhooks/print-vendor")
async def vendor_webhook(
    request: Request,
    config: FulfillmentConfig = Depends(get_config),
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    payload = await request.body()
    if config.vendor.webhook_secret:
        _verify_vendor_signature(payload, request.headers.get(VENDOR_SIGNATURE_HEADER), config.vendor.webhook_secret)

    try:
        event = json.loads(payload)
    except json.JSONDecodeError as exc:  # noqa: BLE001
        raise ValidationError("Invalid JSON payload") from exc
    if not isinstance(event, dict):
        raise ValidationError("Vendor webhook payload must be a JSON object")
    # {"topic", "data": job}, {"print_job": job} or the bare job
    job = event.get("data") or event.get("print_job") or event
    if not isinstance(job, dict) or (job.get("id") is None and job.get("status") is None):
        raise ValidationError("Vendor webhook payload has no print job id or status")

    status = VendorStatus.from_payload(job)
    logger.info(f"Vendor webhook {event.get('topic', 'status')} for order {status.order_id}: {status.status}")
    detail = await run_in_threadpool(
        orchestrator.record_vendor_status,
        status.status,
        vendor_order_id=status.order_id,
        external_id=status.external_id,
        tracking_number=status.tracking_number,
        tracking_url=status.tracking_url,
    )
    return {"received": True, "matched": detail is not None}


@app.post("/webhooks/rpi")
async def rpi_webhook(
    request: Request,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    try:
        event = json.loads(await request.body())
    except json.JSONDecodeError as exc:  # noqa: BLE001
        raise ValidationError("Invalid JSON payload") from exc
    if not isinstance(event, dict) or not event.get("status") or event.get("order_id") is None:
        raise ValidationError("RPI webhook payload needs order_id and status")

    status = parse_rpi_status(event)
    logger.info(f"RPI webhook for order {status.order_id}: {status.status} (carrier {event.get('carrier')})")
    detail = await run_in_threadpool(
        orchestrator.record_vendor_status,
        status.status,
        vendor_order_id=status.order_id,
        external_id=status.external_id,
        tracking_number=status.tracking_number,
        tracking_url=status.tracking_url,
    )
    return {"received": True, "matched": detail is not None}


def get_optional_orchestrator() -> Optional[FulfillmentOrchestrator]:
    try:
        return get_orchestrator()
    except ConfigurationMissing:
        return None


def _mirror_vendor_status(orchestrator: Optional[FulfillmentOrchestrator], status: VendorStatus) -> None:
    if orchestrator is None:
        return
    orchestrator.record_vendor_status(
        status.status,
        vendor_order_id=status.order_id,
        external_id=status.external_id,
        tracking_number=status.tracking_number,
        tracking_url=status.tracking_url,
    )


@app.get("/orders/{order_id}", response_model=OrderStatusResponse)
def get_order_status(
    order_id: str,
    client: PrintVendorClient = Depends(require_vendor_client),
    orchestrator: Optional[FulfillmentOrchestrator] = Depends(get_optional_orchestrator),
) -> OrderStatusResponse:
    status = client.get_order_status(order_id)
    _mirror_vendor_status(orchestrator, status)
    return OrderStatusResponse(
        order_id=status.order_id or order_id,
        external_id=status.external_id,
        status=map_vendor_status(status.status),
        vendor_status=status.status,
        tracking_number=status.tracking_number,
        tracking_url=status.tracking_url,
        estimated_ship_date=status.estimated_ship_date,
    )


@app.delete("/orders/{order_id}")
def cancel_order(
    order_id: str,
    client: PrintVendorClient = Depends(require_vendor_client),
    orchestrator: Optional[FulfillmentOrchestrator] = Depends(get_optional_orchestrator),
) -> Dict[str, Any]:
    client.cancel_order(order_id)
    _mirror_vendor_status(orchestrator, VendorStatus(order_id=order_id, external_id=None, status="CANCELED"))
    return {"orderId": order_id, "status": "cancelled"}


@app.post("/shipping-estimate")
def shipping_estimate(
    request: ShippingEstimateRequest,
    client: PrintVendorClient = Depends(require_vendor_client),
    spec: PrintSpec = Depends(get_active_print_spec),
) -> Dict[str, Any]:
    return client.estimate_shipping(
        page_count=spec.billable_page_count(request.page_count),
        quantity=request.quantity,
        state=request.state,
        zip_code=request.zip,
        country=request.country,
    )


@app.get("/fulfillments", response_model=List[FulfillmentSummary])
def list_fulfillments(orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator)) -> List[FulfillmentSummary]:
    return orchestrator.list_fulfillments()


@app.get("/fulfillments/{fulfillment_id}", response_model=FulfillmentDetail)
def get_fulfillment(
    fulfillment_id: str,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
) -> FulfillmentDetail:
    fulfillment = orchestrator.get_fulfillment(fulfillment_id)
    if not fulfillment:
        raise HTTPException(status_code=404, detail="Fulfillment not found")
    return fulfillment


@app.post("/fulfillments/{fulfillment_id}/retry", status_code=202, dependencies=[Depends(require_operator)])
def retry_fulfillment(
    fulfillment_id: str,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    fulfillment = orchestrator.get_fulfillment(fulfillment_id)
    if not fulfillment:
        raise HTTPException(status_code=404, detail="Fulfillment not found")
    if orchestrator.retry_fulfillment(fulfillment_id) is None:
        raise HTTPException(status_code=409, detail="Only failed fulfillments can be retried")
    return {"id": fulfillment_id, "stage": "received"}


@app.get("/diagnostics/pipeline", response_model=PipelineDiagnostic, dependencies=[Depends(require_operator)])
def pipeline_diagnostic(
    book_data_url: Optional[str] = Query(None, alias="bookDataUrl"),
    config: FulfillmentConfig = Depends(get_config),
    spec: PrintSpec = Depends(get_active_print_spec),
    book_store: BookDataStore = Depends(get_book_store),
    renderer_factory: Callable[[], Renderer] = Depends(get_renderer_factory),
    artifact_store: Optional[S3ArtifactStore] = Depends(get_optional_artifact_store),
) -> PipelineDiagnostic:
    return run_pipeline_diagnostic(config, spec, book_store, renderer_factory, artifact_store, book_data_url)
