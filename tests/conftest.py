"""Shared fakes and fixtures for the Blur Guard tests."""

import asyncio
import io
import time

import numpy as np
import pytest
from PIL import Image

from blur_guard.guard import BlurGuard, DEFAULT_CONFIG
from blur_guard.types import DetectedFace, GenderEstimate, LabelHit, NsfwScoreVector

FEMALE_90 = GenderEstimate(is_female=True, confidence=0.9)
MALE_90 = GenderEstimate(is_female=False, confidence=0.9)


class FakeFaceLocator:
    """Returns a fixed list of faces and counts calls."""

    def __init__(self, faces=(), error=None, delay=0.0):
        self.faces = list(faces)
        self.error = error
        self.delay = delay
        self.calls = 0
        self.spans = []
        self.closed = False

    async def locate(self, image):
        self.calls += 1
        start = time.monotonic()
        if self.delay:
            await asyncio.sleep(self.delay)
        self.spans.append((start, time.monotonic()))
        if self.error:
            raise self.error
        return list(self.faces)

    def close(self):
        self.closed = True


class FakeGenderClassifier:
    """Synchronous classifier keyed on crop width; runs in a worker thread."""

    def __init__(self, by_width=None, default=FEMALE_90, error=None):
        self.by_width = by_width or {}
        self.default = default
        self.error = error
        self.calls = []
        self.closed = False

    def classify(self, face_crop):
        self.calls.append(face_crop.shape)
        if self.error:
            raise self.error
        return self.by_width.get(face_crop.shape[1], self.default)

    def close(self):
        self.closed = True


class FakeNsfwClassifier:
    def __init__(self, scores=None, error=None, delay=0.0):
        self.scores = scores or {"neutral": 0.95}
        self.error = error
        self.delay = delay
        self.calls = 0
        self.spans = []

    async def classify(self, image):
        self.calls += 1
        start = time.monotonic()
        if self.delay:
            await asyncio.sleep(self.delay)
        self.spans.append((start, time.monotonic()))
        if self.error:
            raise self.error
        return NsfwScoreVector(category_scores=dict(self.scores))


class FakeLabelAnalyzer:
    def __init__(self, labels=()):
        self.labels = [LabelHit(t, c) for t, c in labels]

    def analyze(self, image):
        return list(self.labels)


def face(i, left, top, right, bottom):
    return DetectedFace(id=i, bounding_box=(left, top, right, bottom))


def make_image(width=100, height=80, value=128):
    return np.full((height, width, 3), value, dtype=np.uint8)


def png_bytes(width=32, height=32, color="white"):
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color=color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def image():
    return make_image()


@pytest.fixture
def make_guard():
    """Factory building a BlurGuard around fakes; closes guards afterwards."""
    guards = []

    def _make(config=None, **collaborators):
        g = BlurGuard(config or DEFAULT_CONFIG.copy(), **collaborators)
        guards.append(g)
        return g

    yield _make
    for g in guards:
        g.close()
