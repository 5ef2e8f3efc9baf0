"""This module contains the FastAPI application for the Blur Guard service.

It defines the API endpoints for evaluating uploaded or remote images, for
returning an image already obscured when the decision says so, and for health,
version and statistics. It also handles the application startup and shutdown
logic, including the construction and release of the BlurGuard instance.
"""
from __future__ import annotations
import asyncio
import io
import json
import os
import logging

import numpy as np
from fastapi import FastAPI, HTTPException, File, UploadFile, Depends, Request, Response, status
from PIL import Image
from pydantic import BaseModel, Field
from prometheus_client import make_asgi_app

from .backends import build_default_collaborators
from .crop import obscure
from .errors import InvalidInputError
from .guard import (
    ALLOWED_IMAGE_CT,
    DEFAULT_CONFIG,
    BlurGuard,
    RateLimiter,
    __version__,
    decode_image,
)
from .types import ModerationSettings

PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "0") == "1"
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", "10000000"))

logger = logging.getLogger(__name__)

app = FastAPI(title="Blur Guard API")
app.state.limiter = RateLimiter(
    DEFAULT_CONFIG["rate_limit_max"], DEFAULT_CONFIG["rate_limit_window"]
)
app.state.max_upload_size = MAX_UPLOAD_BYTES
app.state.guard = None

if PROMETHEUS_ENABLED:
    app.mount("/metrics", make_asgi_app())


def load_config() -> dict:
    """Returns DEFAULT_CONFIG overlaid with the JSON file at BLUR_GUARD_CONFIG."""
    conf = DEFAULT_CONFIG.copy()
    path = os.getenv("BLUR_GUARD_CONFIG")
    if path and os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable config {path}: {e}")
        else:
            if isinstance(data, dict):
                conf.update(data)
    return conf


@app.on_event("startup")
async def startup_event():
    """Initializes the BlurGuard instance at application startup."""
    if app.state.guard is None:
        conf = load_config()
        app.state.guard = BlurGuard(conf, **build_default_collaborators(conf))


@app.on_event("shutdown")
async def shutdown_event():
    """Releases the model collaborators."""
    guard = app.state.guard
    if guard is not None:
        guard.close()
        app.state.guard = None


def check_rate_limit(request: Request):
    """Checks if the client has exceeded the rate limit.

    Args:
        request: The incoming request.

    Raises:
        HTTPException: If the rate limit is exceeded.
    """
    trust_proxy = os.getenv("TRUST_XFF", "0") == "1"
    client_id = request.client.host if request.client else "unknown"
    if trust_proxy:
        fwd = request.headers.get("x-forwarded-for")
        if fwd:
            client_id = fwd.split(",")[0].strip()
    if not app.state.limiter.check(client_id):
        raise HTTPException(status_code=429, detail="Rate limit exceeded")


class SettingsModel(BaseModel):
    """Policy options accepted by the API."""

    blur_females: bool = True
    blur_males: bool = False
    use_nsfw_detection: bool = True
    nsfw_threshold: float = Field(0.3, ge=0.0, le=1.0)
    gender_confidence_threshold: float = Field(0.5, ge=0.0, le=1.0)
    strict_mode: bool = False
    face_padding_fraction: float = Field(0.1, ge=0.0)
    use_label_keywords: bool = True

    def to_settings(self) -> ModerationSettings:
        return ModerationSettings(**self.model_dump())


def settings_from_query(
    blur_females: bool = True,
    blur_males: bool = False,
    use_nsfw_detection: bool = True,
    nsfw_threshold: float = 0.3,
    gender_confidence_threshold: float = 0.5,
    strict_mode: bool = False,
    face_padding_fraction: float = 0.1,
    use_label_keywords: bool = True,
) -> ModerationSettings:
    """Builds ModerationSettings from query parameters (422 when invalid)."""
    try:
        return ModerationSettings(
            blur_females=blur_females,
            blur_males=blur_males,
            use_nsfw_detection=use_nsfw_detection,
            nsfw_threshold=nsfw_threshold,
            gender_confidence_threshold=gender_confidence_threshold,
            strict_mode=strict_mode,
            face_padding_fraction=face_padding_fraction,
            use_label_keywords=use_label_keywords,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


async def read_upload(request: Request, file: UploadFile) -> bytes:
    """Reads an uploaded image, enforcing content type and size limits."""
    if file.content_type not in ALLOWED_IMAGE_CT:
        raise HTTPException(status_code=415, detail="Unsupported media type")
    cl = request.headers.get("content-length")
    if cl is not None and int(cl) > app.state.max_upload_size:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large")
    cap = app.state.max_upload_size + 1
    content = await file.read(cap)
    if len(content) > app.state.max_upload_size:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large")
    return content


@app.get("/health")
def health():
    """Returns the health status of the service."""
    return {"status": "ok"}


@app.get("/version")
def version():
    """Returns the version of the service and the configured models."""
    conf = app.state.guard.config if app.state.guard else DEFAULT_CONFIG
    return {
        "version": __version__,
        "models": {
            "nsfw": conf.get("nsfw_model_name"),
            "gender": conf.get("gender_model_name"),
            "labels": conf.get("label_model_name"),
        },
    }


@app.get("/stats")
def stats():
    """Returns decision metrics and cache counters."""
    guard = app.state.guard
    return {"decisions": guard.metrics.summary(), "cache": guard.cache.stats()}


@app.post("/evaluate", dependencies=[Depends(check_rate_limit)])
async def evaluate_endpoint(
    request: Request,
    file: UploadFile = File(...),
    settings: ModerationSettings = Depends(settings_from_query),
):
    """Evaluates an uploaded image and returns the moderation decision."""
    content = await read_upload(request, file)
    decision = await app.state.guard.evaluate_bytes(content, settings)
    return decision.to_dict()


class UrlRequest(BaseModel):
    """The request model for the /evaluate_url endpoint."""

    url: str
    settings: SettingsModel = Field(default_factory=SettingsModel)


@app.post("/evaluate_url", dependencies=[Depends(check_rate_limit)])
async def evaluate_url_endpoint(req: UrlRequest):
    """Fetches a remote image and returns the moderation decision."""
    if not req.url.startswith(("http://", "https://")):
        raise HTTPException(status_code=422, detail="Only http(s) URLs are supported")
    decision = await app.state.guard.evaluate_url(req.url, req.settings.to_settings())
    return decision.to_dict()


def render_png(pixels: np.ndarray, blur: bool) -> bytes:
    """Encodes the pixels as PNG, obscuring them first when `blur` is set."""
    if blur:
        pixels = obscure(pixels)
    buf = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(pixels)).save(buf, format="PNG")
    return buf.getvalue()


@app.post("/filter", dependencies=[Depends(check_rate_limit)])
async def filter_endpoint(
    request: Request,
    file: UploadFile = File(...),
    settings: ModerationSettings = Depends(settings_from_query),
):
    """Returns the uploaded image as PNG, obscured when it should be blurred."""
    content = await read_upload(request, file)
    guard = app.state.guard
    try:
        pixels = await asyncio.to_thread(
            decode_image, content, guard.config["max_image_pixels"]
        )
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    decision = await guard.evaluate(pixels, settings)
    body = await asyncio.to_thread(render_png, pixels, decision.should_blur)
    headers = {"X-Blur-Action": decision.action}
    if decision.reason:
        headers["X-Blur-Reason"] = decision.reason.encode("ascii", "replace").decode()
    return Response(content=body, media_type="image/png", headers=headers)
