"""Contracts the orchestrator expects from model collaborators.

Methods may be plain functions or coroutine functions. Plain callables are run
in a worker thread so model inference never blocks the event loop.
"""

from __future__ import annotations

from typing import List, Protocol, runtime_checkable

import numpy as np

from .types import DetectedFace, GenderEstimate, LabelHit, NsfwScoreVector


@runtime_checkable
class FaceLocator(Protocol):
    """Finds faces in a full image."""

    def locate(self, image: np.ndarray) -> List[DetectedFace]:
        """Returns face boxes in source-image pixels.

        An image without faces yields an empty list; only genuine model or
        I/O failures raise.
        """
        ...


@runtime_checkable
class GenderClassifier(Protocol):
    """Estimates the gender of a single cropped face."""

    def classify(self, face_crop: np.ndarray) -> GenderEstimate:
        ...


@runtime_checkable
class NsfwClassifier(Protocol):
    """Scores a full image over the fixed NSFW taxonomy."""

    def classify(self, image: np.ndarray) -> NsfwScoreVector:
        ...


@runtime_checkable
class LabelAnalyzer(Protocol):
    """Optional generic labeller ("dress", "beard", "person", ...)."""

    def analyze(self, image: np.ndarray) -> List[LabelHit]:
        ...
