"""
Season Book Backend - print fulfillment for team season photo books

This package provides a FastAPI-based web service that turns a team's
season journal into a printed hardcover book. It handles:

- Storing the book data a customer assembles before checkout
- Payment checkout sessions and signed payment webhooks
- Paginating journal entries into fixed-height book pages
- Rendering interior and cover PDFs with headless Chromium
- Uploading artifacts to S3 and submitting print jobs to the vendor
- Tracking vendor order status through webhooks and polling

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Fulfillment lifecycle coordinator
    - pagination: Page packing and book assembly
    - print_spec: Vendor product geometry (trim, spine, cover)
    - renderer: Headless browser PDF rendering
    - s3_service: Artifact and book data storage
    - vendor_client: Print vendor API client
    - status_mapper: Vendor status normalization
    - database: SQLite ledger of fulfillment runs
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn season_book_backend.main:app --reload --host 0.0.0.0 --port 8000

    Install the browser the renderer drives once per machine:
        playwright install chromium
"""
