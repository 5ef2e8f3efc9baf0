"""This module provides the orchestration layer of the Blur Guard service.

It includes the `BlurGuard` class, which runs the model collaborators for an
image, hands their outputs to the decision policy, and gates repeated requests
through the decision cache. The module also defines the service configuration,
decision metrics, a rate limiter, and helpers for decoding and fetching images.
"""

from __future__ import annotations
import asyncio
import inspect
import json
import hashlib
import ipaddress
import os
import socket
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from io import BytesIO
from time import time
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlsplit

import numpy as np
import requests
from PIL import Image, ImageFile, ImageOps
from prometheus_client import Counter as PromCounter

from . import policy
from .cache import DecisionCache, content_key
from .crop import crop_face
from .errors import FetchError, InvalidInputError
from .interfaces import FaceLocator, GenderClassifier, LabelAnalyzer, NsfwClassifier
from .types import (
    DetectedFace,
    GenderEstimate,
    LabelHit,
    ModerationDecision,
    ModerationSettings,
    NsfwScoreVector,
)

# Safety settings for Pillow
ImageFile.LOAD_TRUNCATED_IMAGES = True
Image.MAX_IMAGE_PIXELS = 64_000_000

# Prometheus metrics (opt-in via env in app.py)
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "0") == "1"
if PROMETHEUS_ENABLED:
    blur_requests_total = PromCounter(
        "blur_guard_requests_total", "Total evaluations requested", ["entry"]
    )
    blur_decisions_total = PromCounter(
        "blur_guard_decisions_total", "Total decisions made", ["action", "rule"]
    )
    blur_collaborator_failures_total = PromCounter(
        "blur_guard_collaborator_failures_total",
        "Collaborator calls that failed",
        ["collaborator"],
    )

ALLOWED_IMAGE_CT = {"image/png", "image/jpeg", "image/webp", "image/gif"}
MAX_REDIRECTS = 5

__version__ = "1.2.0"

# --- Default Configuration ---
DEFAULT_CONFIG: Dict[str, Any] = {
    "cache_capacity": 512,
    # Key the cache on the source URL instead of the pixels for evaluate_url.
    # Only safe when content at a URL never changes.
    "cache_key_by_url": False,
    "fetch_timeout": (5, 15),
    "max_image_bytes": 10_000_000,
    "max_image_pixels": 64_000_000,
    "user_agent": f"blur-guard/{__version__}",
    # Permit evaluate_url to reach loopback, private and link-local hosts.
    "allow_private_urls": False,
    "nsfw_model_name": "giacomoarienti/nsfw-classifier",
    "gender_model_name": "rizvandwiki/gender-classification",
    "label_model_name": "google/vit-base-patch16-224",
    "label_top_k": 10,
    "face_min_size": 24,
    "enable_label_analyzer": False,
    "decision_log_path": None,
    "rate_limit_max": 100,
    "rate_limit_window": 60,
}


@dataclass
class Metrics:
    """A class to track metrics related to moderation decisions."""

    total_requests: int = 0
    blurs: int = 0
    shows: int = 0
    degraded: int = 0
    blur_reasons: Counter = field(default_factory=Counter)
    rules: Counter = field(default_factory=Counter)

    def record(self, decision: ModerationDecision):
        """Records a decision, updating the metrics."""
        self.total_requests += 1
        if decision.should_blur:
            self.blurs += 1
            self.blur_reasons[decision.reason] += 1
        else:
            self.shows += 1
        if decision.signals.get("degraded"):
            self.degraded += 1
        rule = decision.signals.get("rule", "none")
        self.rules[rule] += 1
        if PROMETHEUS_ENABLED:
            blur_decisions_total.labels(action=decision.action, rule=rule).inc()

    def summary(self) -> Dict:
        """Returns a summary of the metrics as a dictionary."""
        return {
            "total": self.total_requests,
            "blurs": self.blurs,
            "shows": self.shows,
            "degraded": self.degraded,
            "blur_rate": self.blurs / max(1, self.total_requests),
            "top_reasons": dict(self.blur_reasons.most_common(5)),
            "rules": dict(self.rules),
        }


class RateLimiter:
    """A thread-safe in-memory rate limiter."""

    def __init__(self, max_requests: int, window: int):
        """Initializes the RateLimiter.

        Args:
            max_requests: The maximum number of requests allowed in the window.
            window: The time window in seconds.
        """
        from threading import Lock

        self.requests = defaultdict(list)
        self.max_requests = max_requests
        self.window = window
        self.lock = Lock()

    def check(self, client_id: str) -> bool:
        """Checks if a client has exceeded the rate limit.

        Args:
            client_id: The identifier for the client.

        Returns:
            True if the request is allowed, False otherwise.
        """
        with self.lock:
            now = time()
            self.requests[client_id] = [
                t for t in self.requests[client_id] if now - t < self.window
            ]
            if len(self.requests[client_id]) >= self.max_requests:
                return False
            self.requests[client_id].append(now)
            if len(self.requests) > 10000:
                self._cleanup_old_entries(now)
            return True

    def _cleanup_old_entries(self, now: float):
        """Removes clients that haven't made requests recently."""
        to_remove = [
            cid
            for cid, times in self.requests.items()
            if not times or now - times[-1] > self.window * 2
        ]
        for cid in to_remove:
            del self.requests[cid]


def decode_image(data: bytes, max_pixels: int = 64_000_000) -> np.ndarray:
    """Decodes encoded image bytes into an RGB pixel buffer.

    Args:
        data: PNG/JPEG/WebP/GIF bytes.
        max_pixels: Decompression-bomb limit.

    Returns:
        An H x W x 3 uint8 array (first frame for animated images).

    Raises:
        InvalidInputError: If the data cannot be decoded or is too large.
    """
    if not data:
        raise InvalidInputError("Empty image data")
    try:
        img = Image.open(BytesIO(data))
        if img.width * img.height > max_pixels:
            raise InvalidInputError(
                f"Image exceeds pixel limit ({img.width}x{img.height})"
            )
        if getattr(img, "is_animated", False):
            img.seek(0)
        img = ImageOps.exif_transpose(img).convert("RGB")
    except Image.DecompressionBombError as e:
        raise InvalidInputError("Image exceeds decompression limits") from e
    except InvalidInputError:
        raise
    except Exception as e:
        raise InvalidInputError(f"Image processing error: {e}") from e
    return np.asarray(img, dtype=np.uint8)


def check_public_url(url: str):
    """Raises FetchError unless every address `url`'s host resolves to is public.

    Loopback, private, link-local, reserved and multicast targets are refused.
    """
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise FetchError(f"Unsupported URL {url!r}")
    try:
        infos = socket.getaddrinfo(parts.hostname, parts.port, proto=socket.IPPROTO_TCP)
    except (OSError, UnicodeError, ValueError) as e:
        raise FetchError(f"Cannot resolve {parts.hostname!r}: {e}") from e
    for info in infos:
        address = ipaddress.ip_address(info[4][0].split("%")[0])
        if address.version == 6 and address.ipv4_mapped is not None:
            address = address.ipv4_mapped
        if not address.is_global or address.is_multicast:
            raise FetchError(
                f"Refusing to fetch {url}: {address} is not a public address"
            )


def fetch_image_bytes(
    url: str,
    timeout: Tuple[float, float] = (5, 15),
    max_bytes: int = 10_000_000,
    user_agent: str = DEFAULT_CONFIG["user_agent"],
    allow_private: bool = False,
) -> bytes:
    """Downloads an image, enforcing the content-type allow-list and a size cap.

    Redirects are followed by hand (at most MAX_REDIRECTS) so that each hop's
    host passes `check_public_url` unless `allow_private` is set.

    Raises:
        FetchError: On network errors, HTTP errors, non-public hosts,
            unsupported media types or oversized bodies.
    """
    try:
        for _ in range(MAX_REDIRECTS + 1):
            if not allow_private:
                check_public_url(url)
            response = requests.get(
                url,
                timeout=timeout,
                headers={"User-Agent": user_agent},
                stream=True,
                allow_redirects=False,
            )
            if not response.is_redirect:
                break
            response.close()
            url = urljoin(url, response.headers["location"])
        else:
            raise FetchError(f"Too many redirects fetching {url}")
        with response:
            response.raise_for_status()
            ctype = (response.headers.get("content-type") or "").split(";")[0].strip()
            if ctype not in ALLOWED_IMAGE_CT:
                raise FetchError(f"Unsupported media type {ctype!r} from {url}")
            chunks: List[bytes] = []
            size = 0
            for chunk in response.iter_content(chunk_size=65536):
                size += len(chunk)
                if size > max_bytes:
                    raise FetchError(f"Image at {url} exceeds {max_bytes} bytes")
                chunks.append(chunk)
    except requests.RequestException as e:
        raise FetchError(f"Failed to fetch {url}: {e}") from e
    return b"".join(chunks)


def log_entry(
    ts: str,
    key: str,
    decision: ModerationDecision,
    log_path: Optional[str],
    logger: logging.Logger,
):
    """Logs a decision to a JSON-lines file and the console.

    Args:
        ts: The timestamp of the evaluation.
        key: The content identity of the image.
        decision: The decision made.
        log_path: The path to the log file, or None for console only.
        logger: The logger instance.
    """
    try:
        log_data = {
            "timestamp": ts,
            "image_hash": hashlib.sha256(key.encode()).hexdigest()[:16],
            "action": decision.action,
            "reason": decision.reason,
            "faces": decision.faces_detected,
            "nsfw_score": round(decision.nsfw_score, 4),
        }
        logger.info(json.dumps(log_data))
        if log_path:
            with open(log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(log_data) + "\n")
    except Exception as e:
        logger.error(f"Log fail: {e}")


async def _call(fn, *args):
    """Awaits a collaborator method, running plain callables in a thread."""
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    result = await asyncio.to_thread(fn, *args)
    if inspect.isawaitable(result):
        result = await result
    return result


class BlurGuard:
    """The main class for the Blur Guard service."""

    def __init__(
        self,
        config: Dict,
        face_locator: Optional[FaceLocator] = None,
        gender_classifier: Optional[GenderClassifier] = None,
        nsfw_classifier: Optional[NsfwClassifier] = None,
        label_analyzer: Optional[LabelAnalyzer] = None,
    ):
        """Initializes the BlurGuard instance.

        Collaborators are owned by the caller's host application and passed in
        here; `close()` releases them.

        Args:
            config: A dictionary containing the configuration for the guard.
            face_locator: Finds faces; when None no faces are ever located.
            gender_classifier: Classifies face crops; when None every face is
                left without an estimate.
            nsfw_classifier: Scores images; when None the NSFW signal is absent.
            label_analyzer: Optional generic labeller.
        """
        self._validate_config(config)
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)
        self.face_locator = face_locator
        self.gender_classifier = gender_classifier
        self.nsfw_classifier = nsfw_classifier
        self.label_analyzer = label_analyzer
        self.cache = DecisionCache(config["cache_capacity"])
        self.metrics = Metrics()
        self.default_settings = ModerationSettings()
        self._closed = False

    def _validate_config(self, config: Dict):
        """Validates the configuration dictionary."""
        required = [
            "cache_capacity",
            "cache_key_by_url",
            "fetch_timeout",
            "max_image_bytes",
            "max_image_pixels",
            "user_agent",
        ]
        missing = [k for k in required if k not in config]
        if missing:
            raise ValueError(f"Config missing keys: {missing}")
        if int(config["cache_capacity"]) < 1:
            raise ValueError("cache_capacity must be >= 1")

    # --- collaborator calls ---

    def _collaborator_failed(self, name: str, error: BaseException):
        self.logger.warning(f"{name} failed; treating signal as absent: {error!r}")
        if PROMETHEUS_ENABLED:
            blur_collaborator_failures_total.labels(collaborator=name).inc()

    async def _locate_faces(self, image: np.ndarray) -> Optional[List[DetectedFace]]:
        if self.face_locator is None:
            return []
        try:
            return list(await _call(self.face_locator.locate, image))
        except Exception as e:
            self._collaborator_failed("faces", e)
            return None

    async def _classify_nsfw(
        self, image: np.ndarray, settings: ModerationSettings
    ) -> Optional[NsfwScoreVector]:
        if not settings.use_nsfw_detection or self.nsfw_classifier is None:
            return None
        try:
            return await _call(self.nsfw_classifier.classify, image)
        except Exception as e:
            self._collaborator_failed("nsfw", e)
            return None

    async def _analyze_labels(self, image: np.ndarray) -> Optional[List[LabelHit]]:
        if self.label_analyzer is None:
            return None
        try:
            return list(await _call(self.label_analyzer.analyze, image))
        except Exception as e:
            self._collaborator_failed("labels", e)
            return None

    async def _classify_face(
        self, image: np.ndarray, face: DetectedFace, settings: ModerationSettings
    ) -> Optional[GenderEstimate]:
        """Returns the face's gender estimate, or None to skip the face."""
        try:
            face_crop = crop_face(image, face, settings.face_padding_fraction)
        except InvalidInputError as e:
            self.logger.warning(f"Skipping face {face.id}: {e}")
            return None
        try:
            estimate = await _call(self.gender_classifier.classify, face_crop)
        except Exception as e:
            self._collaborator_failed("gender", e)
            return None
        self.logger.debug(
            f"Face {face.id} gender: {estimate.label}, confidence: {estimate.confidence:.4f}"
        )
        return replace(estimate, face_id=face.id)

    # --- pipeline ---

    async def _run_pipeline(
        self, image: np.ndarray, settings: ModerationSettings
    ) -> ModerationDecision:
        """Runs the collaborators for one image and applies the policy."""
        faces, nsfw, labels = await asyncio.gather(
            self._locate_faces(image),
            self._classify_nsfw(image, settings),
            self._analyze_labels(image),
        )
        unavailable = set()
        if faces is None:
            unavailable.add("faces")
            faces = []
        if self.label_analyzer is not None and labels is None:
            unavailable.add("labels")
        self.logger.debug(f"Detected {len(faces)} faces")

        if policy.nsfw_gate_fires(nsfw, settings) or self.gender_classifier is None:
            estimates: Sequence[Optional[GenderEstimate]] = [None] * len(faces)
        else:
            estimates = await asyncio.gather(
                *(self._classify_face(image, face, settings) for face in faces)
            )
            if faces and all(e is None for e in estimates):
                unavailable.add("gender")

        return policy.evaluate(
            list(zip(faces, estimates)), nsfw, labels, settings, unavailable
        )

    def _cache_key(self, identity: Hashable, settings: ModerationSettings) -> Tuple:
        return (identity, settings)

    def _finish(self, key: str, decision: ModerationDecision) -> ModerationDecision:
        self.metrics.record(decision)
        log_path = self.config.get("decision_log_path")
        if log_path:
            ts = datetime.now(timezone.utc).isoformat()
            log_entry(ts, key, decision, log_path, self.logger)
        return decision

    async def _evaluate_keyed(
        self,
        identity: str,
        image: np.ndarray,
        settings: ModerationSettings,
    ) -> ModerationDecision:
        try:
            if image.ndim < 2 or image.shape[0] == 0 or image.shape[1] == 0:
                raise InvalidInputError(f"Zero-area image of shape {image.shape}")
            decision = await self.cache.get_or_compute(
                self._cache_key(identity, settings),
                lambda: self._run_pipeline(image, settings),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Evaluation failed: {e!r}")
            decision = policy.degraded_decision(settings, str(e))
        return self._finish(identity, decision)

    async def evaluate(
        self, image: np.ndarray, settings: Optional[ModerationSettings] = None
    ) -> ModerationDecision:
        """Decides whether an image should be displayed or obscured.

        Concurrent calls for the same pixels and settings share one
        evaluation; completed decisions are served from the cache.

        Args:
            image: H x W or H x W x C uint8 pixel buffer.
            settings: Policy configuration; defaults to `ModerationSettings()`.

        Returns:
            A ModerationDecision. Failures produce a degraded decision instead
            of an exception.
        """
        if PROMETHEUS_ENABLED:
            blur_requests_total.labels(entry="pixels").inc()
        settings = settings or self.default_settings
        image = np.asarray(image)
        return await self._evaluate_keyed(content_key(image), image, settings)

    async def evaluate_bytes(
        self, data: bytes, settings: Optional[ModerationSettings] = None
    ) -> ModerationDecision:
        """Decodes encoded image bytes and evaluates them."""
        if PROMETHEUS_ENABLED:
            blur_requests_total.labels(entry="bytes").inc()
        settings = settings or self.default_settings
        try:
            image = await asyncio.to_thread(
                decode_image, data, self.config["max_image_pixels"]
            )
        except InvalidInputError as e:
            self.logger.warning(f"Undecodable image: {e}")
            return self._finish(
                hashlib.sha256(data or b"").hexdigest(),
                policy.degraded_decision(settings, str(e)),
            )
        return await self._evaluate_keyed(content_key(image), image, settings)

    async def evaluate_url(
        self, url: str, settings: Optional[ModerationSettings] = None
    ) -> ModerationDecision:
        """Fetches an image over HTTP(S) and evaluates it.

        With `cache_key_by_url` enabled, a cached decision for the URL is
        returned without downloading the image again.
        """
        if PROMETHEUS_ENABLED:
            blur_requests_total.labels(entry="url").inc()
        settings = settings or self.default_settings
        by_url = self.config["cache_key_by_url"]
        if by_url:
            url_key = f"url:{url}"
            try:
                return self._finish(
                    url_key,
                    await self.cache.get_or_compute(
                        self._cache_key(url_key, settings),
                        lambda: self._fetch_and_run(url, settings),
                    ),
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Evaluation of {url} failed: {e!r}")
                return self._finish(url_key, policy.degraded_decision(settings, str(e)))

        try:
            image = await self._fetch(url)
        except (FetchError, InvalidInputError) as e:
            self.logger.warning(str(e))
            return self._finish(f"url:{url}", policy.degraded_decision(settings, str(e)))
        return await self._evaluate_keyed(content_key(image), image, settings)

    async def _fetch(self, url: str) -> np.ndarray:
        data = await asyncio.to_thread(
            fetch_image_bytes,
            url,
            tuple(self.config["fetch_timeout"]),
            self.config["max_image_bytes"],
            self.config["user_agent"],
            allow_private=bool(self.config.get("allow_private_urls", False)),
        )
        return await asyncio.to_thread(
            decode_image, data, self.config["max_image_pixels"]
        )

    async def _fetch_and_run(
        self, url: str, settings: ModerationSettings
    ) -> ModerationDecision:
        image = await self._fetch(url)
        if image.shape[0] == 0 or image.shape[1] == 0:
            raise InvalidInputError(f"Zero-area image at {url}")
        return await self._run_pipeline(image, settings)

    # --- lifecycle ---

    def close(self):
        """Releases every collaborator that exposes `close()`."""
        if self._closed:
            return
        self._closed = True
        for collaborator in (
            self.face_locator,
            self.gender_classifier,
            self.nsfw_classifier,
            self.label_analyzer,
        ):
            closer = getattr(collaborator, "close", None)
            if closer is None:
                continue
            try:
                closer()
            except Exception as e:
                self.logger.error(f"Error closing {type(collaborator).__name__}: {e}")
        self.cache.clear()
        self.logger.info("Blur guard closed")

    def __enter__(self) -> "BlurGuard":
        return self

    def __exit__(self, *exc_info):
        self.close()
