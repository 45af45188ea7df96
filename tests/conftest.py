"""
Pytest Configuration and Fixtures
"""

import os
import sys
import base64
import pytest
import tempfile
from unittest.mock import MagicMock

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ.pop("STRIPE_API_KEY", None)
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)

from genledger.billing.ledger import Ledger
from genledger.billing.settlement import PaymentSettlement
from genledger.generation.ingestion import OutputIngestion
from genledger.generation.records import GenerationService
from genledger.generation.storage import ObjectStorage
from genledger.persistence.database import Database

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 32
MP4_BYTES = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 32


@pytest.fixture
def temp_db():
    """Create a temporary database file for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except OSError:
            pass


@pytest.fixture
def db(temp_db):
    database = Database(f"sqlite:///{temp_db}")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def ledger(db):
    return Ledger(db)


@pytest.fixture
def s3_client():
    """Stand-in for the boto3 S3 client."""
    return MagicMock()


@pytest.fixture
def ingestion(s3_client):
    storage = ObjectStorage(public_base_url="https://cdn.example.com", client=s3_client)
    return OutputIngestion(storage, session=MagicMock())


@pytest.fixture
def generations(db, ledger):
    """Generation service without output ingestion."""
    return GenerationService(db, ledger)


@pytest.fixture
def settlement(ledger):
    """Settlement in mock mode (no provider key)."""
    return PaymentSettlement(ledger)


@pytest.fixture
def png_data_uri():
    return "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode()


@pytest.fixture
def png_base64():
    return base64.b64encode(PNG_BYTES).decode()


@pytest.fixture
def mp4_base64():
    return base64.b64encode(MP4_BYTES).decode()


class FakeVideoClient:
    """Scripted provider client. Exceptions in a script are raised."""

    def __init__(self, submits=None, fetches=None, on_fetch=None):
        self.submits = list(submits or ["operations/op-1"])
        self.fetches = list(fetches or [])
        self.on_fetch = on_fetch
        self.submit_calls = []
        self.fetch_calls = []

    def submit(self, model_id, prompt, params):
        self.submit_calls.append(model_id)
        result = self.submits.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def fetch(self, model_id, operation_name):
        self.fetch_calls.append((model_id, operation_name))
        if self.on_fetch:
            self.on_fetch(len(self.fetch_calls))
        result = self.fetches.pop(0) if self.fetches else {"done": False}
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def video_client_factory():
    return FakeVideoClient


def make_image_response(data, mime_type="image/png"):
    return {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": mime_type, "data": data}}]}}]}


class FakeImageClient:
    """Scripted image client. Exceptions in a script are raised."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls = []

    def generate(self, model_id, prompt, aspect_ratio="1:1", image_base64=None, mime_type=None):
        self.calls.append(model_id)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def image_client_factory():
    return FakeImageClient


@pytest.fixture
def image_response():
    return make_image_response
