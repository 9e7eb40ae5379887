"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import base64
import io
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

import database
from config import Settings
from matching import Identity
from overlay import FaceBox
from recognition import DetectionResult

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path


# ---------------------------------------------------------------------------
# Fakes for the AR session collaborators
# ---------------------------------------------------------------------------


class FakeStore:
    """In-memory identity store that counts summary lookups."""

    def __init__(self, identities=(), summaries=None):
        self.identities = list(identities)
        self.summaries = dict(summaries or {})
        self.summary_calls: list[int] = []

    def list_identities_with_embeddings(self) -> list[Identity]:
        return list(self.identities)

    def get_latest_conversation_summary(self, identity_id: int) -> str | None:
        self.summary_calls.append(identity_id)
        return self.summaries.get(identity_id)


class FakeDetector:
    """Replays scripted results; the last one repeats forever."""

    def __init__(self, results=(None,), loads: bool = True):
        self.results = list(results)
        self.loads = loads
        self.calls = 0
        self.is_ready = False

    def load(self) -> bool:
        self.is_ready = self.loads
        return self.loads

    def detect_once(self, frame):
        self.calls += 1
        result = self.results[0]
        if len(self.results) > 1:
            self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def extract_embedding(self, image):
        result = self.results[0]
        return None if result is None else result.embedding


class FakeCamera:
    def __init__(self, open_error: Exception | None = None):
        self.open_error = open_error
        self.is_ready = False
        self.stop_calls = 0

    def open(self):
        if self.open_error is not None:
            raise self.open_error
        self.is_ready = True

    def read_frame(self):
        if not self.is_ready:
            return None
        return np.zeros((48, 64, 3), dtype=np.uint8)

    def stop(self):
        self.stop_calls += 1
        self.is_ready = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def unit(index: int, size: int = 128, scale: float = 1.0) -> np.ndarray:
    """Embedding with a single non-zero component."""
    vector = np.zeros(size)
    vector[index] = scale
    return vector


def make_identity(identity_id: int, embedding, name: str | None = None) -> Identity:
    return Identity(
        id=identity_id,
        name=name or f"Person {identity_id}",
        relation="Friend",
        embedding=np.asarray(embedding, dtype=np.float64),
    )


def detection(embedding=None, x: float = 50.0, y: float = 40.0) -> DetectionResult:
    return DetectionResult(FaceBox(x=x, y=y, width=20.0, height=30.0), embedding)


def image_base64(color=(200, 120, 80), fmt: str = "PNG") -> str:
    buffer = io.BytesIO()
    Image.new("RGB", (16, 12), color).save(buffer, format=fmt)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Fast loop timings so session tests finish quickly."""
    return Settings(
        database_path=tmp_path / "recallar-test.db",
        poll_interval=0.01,
        not_ready_interval=0.01,
        animation_fps=500,
        gemini_api_key=None,
    )


@pytest.fixture()
def db(settings: Settings) -> Iterator[Path]:
    """Fresh SQLite database for one test."""
    database.configure(settings.database_path)
    database.init_database()
    yield settings.database_path
    database.close_connection()
