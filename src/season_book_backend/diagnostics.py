"""
Step-by-step check of the fulfillment pipeline for operators.

Walks the same stages a paid order goes through (book data, pagination,
rendering, upload) without touching the ledger or the print vendor, and
reports where it stops.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from .configuration import FulfillmentConfig
from .errors import FulfillmentError
from .models import BookData, DiagnosticStep, DocumentType, PipelineDiagnostic
from .pagination import Book, build_book
from .print_spec import PrintSpec
from .renderer import Renderer
from .s3_service import BookDataStore, S3ArtifactStore
from .utils import artifact_key

logger = logging.getLogger(__name__)

DIAGNOSTIC_PREFIX = "diagnostics"

SAMPLE_BOOK = {
    "team": {"name": "Diagnostic FC", "color": "#1B4332"},
    "season": "Pipeline check",
    "entries": [
        {"id": "d1", "entry_type": "game", "entry_date": "2024-03-02", "opponent": "Test United",
         "score_home": 2, "score_away": 1, "result": "win", "text": "Sample game."},
        {"id": "d2", "entry_type": "practice", "entry_date": "2024-03-05", "text": "Sample practice."},
    ],
}


class PipelineCheck:
    """Collects the outcome of each diagnostic step."""

    def __init__(self) -> None:
        self.report = PipelineDiagnostic()

    def log(self, step: str, status: str, detail: str = "") -> None:
        self.report.steps.append(DiagnosticStep(step=step, status=status, detail=detail))
        level = logging.WARNING if status == "fail" else logging.INFO
        logger.log(level, f"[{status}] {step}: {detail}")


def run_pipeline_diagnostic(
    config: FulfillmentConfig,
    spec: PrintSpec,
    book_store: BookDataStore,
    renderer_factory: Callable[[], Renderer],
    artifact_store: Optional[S3ArtifactStore] = None,
    book_data_url: Optional[str] = None,
) -> PipelineDiagnostic:
    check = PipelineCheck()
    check.log(
        "integrations",
        "ok",
        f"payments={config.payments.is_configured}, storage={config.storage.is_configured}, "
        f"vendor={config.vendor.name}:{config.vendor_configured}, email={config.email.is_configured}",
    )

    if book_data_url:
        try:
            book_data = BookData.model_validate(book_store.fetch(book_data_url))
        except (FulfillmentError, PydanticValidationError) as exc:
            check.log("book_data", "fail", str(exc))
            return check.report
        check.log("book_data", "ok", f"{len(book_data.entries)} entries, team: {book_data.team.name}")
    else:
        book_data = BookData.model_validate(SAMPLE_BOOK)
        check.log("book_data", "skip", "No bookDataUrl provided, using sample data")

    book = build_book(book_data)
    page_count = spec.billable_page_count(book_data.page_count or book.total_pages)
    check.log("paginate", "ok", f"{book.total_pages} pages, {page_count} billable")

    try:
        interior, cover = asyncio.run(_render(renderer_factory, spec, book, page_count))
    except FulfillmentError as exc:
        check.log("render", "fail", str(exc))
        return check.report
    check.log("render", "ok", f"interior={len(interior) / 1024:.1f}KB, cover={len(cover) / 1024:.1f}KB")

    if artifact_store is None:
        check.log("upload", "skip", "Storage not configured")
    else:
        try:
            url = artifact_store.store(artifact_key(DIAGNOSTIC_PREFIX, "pipeline", "interior.pdf"), interior, "application/pdf")
        except FulfillmentError as exc:
            check.log("upload", "fail", str(exc))
            return check.report
        check.log("upload", "ok", url)

    check.log("done", "ok", "Pipeline test complete")
    return check.report


async def _render(renderer_factory: Callable[[], Renderer], spec: PrintSpec, book: Book, page_count: int):
    async with renderer_factory() as renderer:
        interior = await renderer.render(book, DocumentType.INTERIOR, spec.interior_dimensions(), page_count)
        cover = await renderer.render(book, DocumentType.COVER, spec.cover_dimensions(page_count), page_count)
    return interior, cover
