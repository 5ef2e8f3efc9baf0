"""Concrete model collaborators backed by Hugging Face pipelines and OpenCV.

Models load lazily on first use and are dropped by `close()`. When a library
is missing or a model fails to load the collaborator raises
`CollaboratorUnavailable`, which the guard treats as an absent signal.
"""

from __future__ import annotations
import os
import logging
from threading import Lock
from typing import Any, Dict, List, Optional

import numpy as np
from PIL import Image

from .errors import CollaboratorUnavailable
from .types import (
    FEMALE,
    MALE,
    NSFW_CATEGORIES,
    DetectedFace,
    GenderEstimate,
    LabelHit,
    NsfwScoreVector,
    estimate_gender,
)

# Optional heavy deps are gated so the service starts without them
try:
    from transformers import pipeline as _hf_pipeline  # optional # type: ignore
except Exception:
    _hf_pipeline = None

try:
    import cv2  # optional # type: ignore
except Exception:
    cv2 = None

# Label spellings used by common NSFW and gender checkpoints.
_NSFW_ALIASES = {"drawings": "drawing", "normal": "neutral", "nsfw": "porn"}
_GENDER_ALIASES = {"woman": FEMALE, "women": FEMALE, "man": MALE, "men": MALE}


def _to_pil(image: np.ndarray) -> Image.Image:
    return Image.fromarray(np.ascontiguousarray(image)).convert("RGB")


class _HFPipelineModel:
    """Lazily constructed `image-classification` pipeline."""

    name = "model"

    def __init__(self, model_name: str, top_k: Optional[int] = None):
        self.model_name = model_name
        self.top_k = top_k
        self.logger = logging.getLogger(self.__class__.__name__)
        self._pipe = None
        self._lock = Lock()

    def _load(self):
        with self._lock:
            if self._pipe is not None:
                return self._pipe
            if _hf_pipeline is None:
                raise CollaboratorUnavailable(self.name, "transformers not installed")
            self.logger.info(f"Loading model: {self.model_name}...")
            try:
                self._pipe = _hf_pipeline("image-classification", model=self.model_name)
            except Exception as e:
                self.logger.error(f"Failed to load model {self.model_name}: {e}")
                raise CollaboratorUnavailable(self.name, str(e)) from e
            self.logger.info(f"Model loaded: {self.model_name}")
            return self._pipe

    def _predict(self, image: np.ndarray) -> List[Dict[str, Any]]:
        pipe = self._load()
        if self.top_k is None:
            return pipe(_to_pil(image))
        return pipe(_to_pil(image), top_k=self.top_k)

    def close(self):
        with self._lock:
            self._pipe = None


class HFNsfwClassifier(_HFPipelineModel):
    """Five-class NSFW classifier (drawing / hentai / neutral / porn / sexy)."""

    name = "nsfw"

    def classify(self, image: np.ndarray) -> NsfwScoreVector:
        scores = {c: 0.0 for c in NSFW_CATEGORIES}
        matched = False
        for result in self._predict(image):
            label = result["label"].strip().lower()
            label = _NSFW_ALIASES.get(label, label)
            if label in scores:
                scores[label] = max(scores[label], float(result["score"]))
                matched = True
        if not matched:
            raise CollaboratorUnavailable(
                self.name, f"{self.model_name} returned no known NSFW labels"
            )
        self.logger.debug(f"NSFW detection results: {scores}")
        return NsfwScoreVector(category_scores=scores)


class HFGenderClassifier(_HFPipelineModel):
    """Two-class face gender classifier."""

    name = "gender"

    def classify(self, face_crop: np.ndarray) -> GenderEstimate:
        scores = {}
        for result in self._predict(face_crop):
            label = result["label"].strip().lower()
            label = _GENDER_ALIASES.get(label, label)
            if label in (FEMALE, MALE):
                scores[label] = float(result["score"])
        if not scores:
            # e.g. a checkpoint without id2label names (LABEL_0 / LABEL_1)
            raise CollaboratorUnavailable(
                self.name, f"{self.model_name} returned no female/male labels"
            )
        return estimate_gender(scores.get(FEMALE, 0.0), scores.get(MALE, 0.0))


class HFLabelAnalyzer(_HFPipelineModel):
    """Generic image labeller; returns the top-k labels."""

    name = "labels"

    def analyze(self, image: np.ndarray) -> List[LabelHit]:
        return [
            LabelHit(text=r["label"], confidence=float(r["score"]))
            for r in self._predict(image)
        ]


class OpenCVFaceLocator:
    """Frontal face detector using OpenCV's bundled Haar cascade.

    Haar cascades report no per-face score, so every face carries
    ``locator_confidence=1.0``.
    """

    def __init__(self, min_size: int = 24, scale_factor: float = 1.1, min_neighbors: int = 5):
        self.min_size = min_size
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.logger = logging.getLogger(self.__class__.__name__)
        self._cascade = None
        self._lock = Lock()

    def _load(self):
        with self._lock:
            if self._cascade is not None:
                return self._cascade
            if cv2 is None:
                raise CollaboratorUnavailable("faces", "opencv not installed")
            path = os.path.join(cv2.data.haarcascades, "haarcascade_frontalface_default.xml")
            cascade = cv2.CascadeClassifier(path)
            if cascade.empty():
                raise CollaboratorUnavailable("faces", f"cannot load cascade {path}")
            self._cascade = cascade
            return cascade

    def locate(self, image: np.ndarray) -> List[DetectedFace]:
        cascade = self._load()
        if image.ndim == 3 and image.shape[2] == 4:
            gray = cv2.cvtColor(image, cv2.COLOR_RGBA2GRAY)
        elif image.ndim == 3:
            gray = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
        else:
            gray = image
        boxes = cascade.detectMultiScale(
            gray,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors,
            minSize=(self.min_size, self.min_size),
        )
        return [
            DetectedFace(id=i, bounding_box=(int(x), int(y), int(x + w), int(y + h)))
            for i, (x, y, w, h) in enumerate(boxes)
        ]

    def close(self):
        with self._lock:
            self._cascade = None


def build_default_collaborators(config: Dict) -> Dict[str, Any]:
    """Builds the bundled collaborators as keyword arguments for `BlurGuard`.

    Returns an empty mapping when `DISABLE_MODELS=1` (useful for tests and
    air-gapped hosts); the guard then evaluates with every signal absent.
    """
    logger = logging.getLogger(__name__)
    if os.getenv("DISABLE_MODELS", "0") == "1":
        logger.info("Models disabled via DISABLE_MODELS=1; all signals absent.")
        return {}
    collaborators: Dict[str, Any] = {
        "face_locator": OpenCVFaceLocator(min_size=config.get("face_min_size", 24)),
        "gender_classifier": HFGenderClassifier(config["gender_model_name"], top_k=2),
        "nsfw_classifier": HFNsfwClassifier(
            config["nsfw_model_name"], top_k=len(NSFW_CATEGORIES)
        ),
    }
    if config.get("enable_label_analyzer"):
        collaborators["label_analyzer"] = HFLabelAnalyzer(
            config["label_model_name"], top_k=config.get("label_top_k", 10)
        )
    return collaborators
