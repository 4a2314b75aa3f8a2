"""Pytest fixtures for code-session-memory tests."""

import hashlib
import json
import tempfile
from pathlib import Path

import pytest

from code_session_memory.embeddings import EMBEDDING_DIM, Embedder
from code_session_memory.models import Message, TextPart
from code_session_memory.storage import ensure_index_exists


def fake_vector(text: str, dim: int = EMBEDDING_DIM) -> list[float]:
    """Deterministic pseudo-embedding derived from the text hash."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [digest[i % len(digest)] / 255.0 for i in range(dim)]


class FakeModel:
    """Stands in for a SentenceTransformer; records every encode call."""

    def __init__(self, fail: bool = False, drop_last: bool = False, dim: int = EMBEDDING_DIM):
        self.fail = fail
        self.drop_last = drop_last
        self.dim = dim
        self.calls: list[list[str]] = []

    def encode(self, texts, **kwargs):
        self.calls.append(list(texts))
        if self.fail:
            raise RuntimeError("embedding provider unavailable")
        vectors = [fake_vector(t, self.dim) for t in texts]
        return vectors[:-1] if self.drop_last else vectors

    def get_sentence_embedding_dimension(self) -> int:
        return self.dim


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db_path(temp_dir):
    return temp_dir / "sessions.db"


@pytest.fixture
def conn(db_path):
    """Initialized index connection on a temp database."""
    connection = ensure_index_exists(db_path)
    yield connection
    connection.close()


@pytest.fixture
def fake_model():
    return FakeModel()


@pytest.fixture
def embedder(fake_model):
    return Embedder(model=fake_model, model_name="fake")


@pytest.fixture
def make_message():
    """Factory for single-text-part messages."""

    def _make(msg_id: str, text: str, role: str = "user") -> Message:
        return Message(id=msg_id, role=role, parts=(TextPart(text=text),))

    return _make


@pytest.fixture
def make_messages(make_message):
    """Factory for a run of alternating user/assistant messages."""

    def _make(count: int, start: int = 0, prefix: str = "msg") -> list[Message]:
        return [
            make_message(
                f"{prefix}_{idx:03d}",
                f"Message {idx}: a test message with enough content to create a chunk.",
                "user" if idx % 2 == 0 else "assistant",
            )
            for idx in range(start, start + count)
        ]

    return _make


@pytest.fixture
def sample_messages_json(temp_dir):
    """Write a normalized messages file as an adapter would produce it."""
    path = temp_dir / "messages.json"
    records = [
        {
            "info": {"id": "msg_001", "role": "user", "time": {"created": 1700000000000}},
            "parts": [{"type": "text", "text": "How do I add JWT authentication?"}],
        },
        {
            "info": {
                "id": "msg_002",
                "role": "assistant",
                "agent": "build",
                "modelID": "gpt-4o",
                "time": {"created": 1700000001000, "completed": 1700000003500},
            },
            "parts": [
                {"type": "step-start"},
                {"type": "text", "text": "Use a middleware that validates the token."},
                {
                    "type": "tool",
                    "tool": "read",
                    "callID": "call_1",
                    "state": {"status": "complete", "input": {"path": "app.py"}, "output": "ok"},
                },
                {"type": "step-finish"},
            ],
        },
    ]
    path.write_text(json.dumps(records))
    return path


@pytest.fixture
def model_factory():
    """Build FakeModel instances with failure modes switched on."""
    return FakeModel


@pytest.fixture
def vector_for():
    return fake_vector
