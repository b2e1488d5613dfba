"""
Pytest configuration and fixtures for Season Book Backend tests.
"""

import os
import shutil
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
TEST_STATE_DIR = tempfile.mkdtemp(prefix="season_book_test_")
os.environ["FULFILLMENT_DB_PATH"] = str(Path(TEST_STATE_DIR) / "fulfillment.db")
os.environ["S3_BUCKET_NAME"] = "test-season-books"
os.environ["AWS_REGION"] = "us-west-2"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
for name in (
    "LULU_CLIENT_KEY",
    "LULU_CLIENT_SECRET",
    "LULU_WEBHOOK_SECRET",
    "ARTIFACT_PUBLIC_BASE_URL",
    "PRINT_VENDOR",
    "PRINT_PRODUCT",
    "RPI_API_KEY",
    "RPI_API_URL",
    "RESEND_API_KEY",
    "INTERNAL_WEBHOOK_SECRET",
):
    os.environ.pop(name, None)

from season_book_backend.configuration import load_config
from season_book_backend.database import FulfillmentDatabase
from season_book_backend.main import app

from fakes import FakeRenderer


@pytest.fixture(scope="session", autouse=True)
def test_state_dir():
    """Remove the temporary state directory after all tests."""
    yield TEST_STATE_DIR
    shutil.rmtree(TEST_STATE_DIR, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def config(tmp_path):
    """Runtime config pointing at a private database file."""
    return load_config({"database_path": str(tmp_path / "fulfillment.db")})


@pytest.fixture
def database(tmp_path):
    return FulfillmentDatabase(tmp_path / "fulfillment.db")


@pytest.fixture
def sample_book_data():
    """A short season: two games, a practice and one photo moment."""
    return {
        "team": {"name": "Riverside FC", "color": "#0a3d62"},
        "season": "Spring 2024",
        "players": ["Ana", "Ben", "Cy"],
        "entries": [
            {
                "id": "g1",
                "entry_type": "game",
                "entry_date": "2024-03-02",
                "opponent": "Hillcrest",
                "score_home": 3,
                "score_away": 1,
                "result": "win",
                "text": "Great start to the season.",
            },
            {"id": "p1", "entry_type": "practice", "entry_date": "2024-03-05", "text": "Passing drills."},
            {
                "id": "m1",
                "entry_type": "moment",
                "entry_date": "2024-03-07",
                "photoData": "data:image/png;base64,iVBORw0KGgo=",
                "text": "Team photo.",
            },
            {
                "id": "g2",
                "entry_type": "game",
                "entry_date": "2024-03-09",
                "opponent": "Lakeside",
                "score_home": 0,
                "score_away": 2,
                "result": "loss",
                "venue": "North Field",
            },
        ],
    }


@pytest.fixture
def fake_renderer_calls():
    return []


@pytest.fixture
def renderer_factory(fake_renderer_calls):
    return lambda: FakeRenderer(calls=fake_renderer_calls)
