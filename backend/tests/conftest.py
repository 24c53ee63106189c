"""
Pytest configuration and shared fixtures
"""
import base64
import io

import pytest
from fastapi.testclient import TestClient
from pathlib import Path
import sys
import os

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment variables before importing app
os.environ.setdefault("APICORE_AI_KEY", "test-key")
os.environ.setdefault("LEDGER_TYPE", "memory")

import main
from main import app
from services.config import Settings
from services.ledger import InMemoryLedger


class DummyChatResponse:
    def __init__(self, *, ok: bool = True, status_code: int = 200, text: str = "", data=None):
        self.is_success = ok
        self.status_code = status_code
        self.text = text
        self._data = data

    def json(self):
        if isinstance(self._data, Exception):
            raise self._data
        return self._data


def chat_reply(content) -> DummyChatResponse:
    return DummyChatResponse(data={"choices": [{"message": {"role": "assistant", "content": content}}]})


class FakeUpstream:
    """
    Stand-in for inference._post_chat_completion.

    Classification calls (the only ones that send a temperature) answer with
    `classification`. Generation calls consume `generation` in order; the last
    entry repeats. Entries are reply strings, DummyChatResponse objects or
    exceptions to raise.
    """

    def __init__(self):
        self.classification = "A"
        self.generation = ["![result](https://cdn.example.com/out.png)"]
        self.classification_calls = []
        self.generation_calls = []

    @staticmethod
    def http_error(status_code: int, text: str = "") -> DummyChatResponse:
        return DummyChatResponse(ok=False, status_code=status_code, text=text)

    @staticmethod
    def _resolve(item):
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, DummyChatResponse):
            return item
        return chat_reply(item)

    async def __call__(self, _client, *, url, headers, payload, timeout):
        if "temperature" in payload:
            self.classification_calls.append(payload)
            return self._resolve(self.classification)
        self.generation_calls.append(payload)
        idx = min(len(self.generation_calls) - 1, len(self.generation) - 1)
        return self._resolve(self.generation[idx])


@pytest.fixture
def settings():
    return Settings(api_key="test-key", api_url="https://ai.example.com/v1/chat/completions")


@pytest.fixture
def ledger():
    return InMemoryLedger(signup_bonus=6)


@pytest.fixture
def fake_upstream(monkeypatch):
    from services import inference

    fake = FakeUpstream()
    monkeypatch.setattr(inference, "_post_chat_completion", fake)
    return fake


@pytest.fixture
def client(settings, ledger):
    """Create a test client for the FastAPI app wired to a fresh in-memory ledger"""
    app.dependency_overrides[main.get_settings] = lambda: settings
    app.dependency_overrides[main.get_ledger] = lambda: ledger
    main._rate_buckets.clear()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def sample_image_bytes():
    """Create sample image bytes for testing"""
    from PIL import Image as PILImage  # type: ignore

    img = PILImage.new("RGB", (512, 512), color=(255, 255, 255))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def sample_image_uri(sample_image_bytes):
    return "data:image/png;base64," + base64.b64encode(sample_image_bytes).decode("utf-8")
