"""Face crop geometry and image obscuring."""

from __future__ import annotations

from typing import Tuple

import numpy as np
from PIL import Image, ImageFilter

from .errors import InvalidInputError
from .types import DetectedFace

# Black overlay alpha used on top of the blurred image.
OVERLAY_ALPHA = 150


def face_crop_box(
    face: DetectedFace,
    image_shape: Tuple[int, ...],
    padding_fraction: float = 0.1,
) -> Tuple[int, int, int, int]:
    """Expands a face box by a fraction of its width and clamps it to the image.

    The same padding (``int(width * padding_fraction)`` pixels) is applied on
    every side, so the gender classifier sees hair and jawline context.

    Args:
        face: The located face.
        image_shape: Shape of the source pixel buffer (H, W[, C]).
        padding_fraction: Padding as a fraction of the face width.

    Returns:
        The clamped (left, top, right, bottom) box.

    Raises:
        InvalidInputError: If the clamped box has zero area.
    """
    h, w = image_shape[:2]
    left, top, right, bottom = (int(v) for v in face.bounding_box)
    padding = int((right - left) * padding_fraction)

    x1 = max(0, left - padding)
    y1 = max(0, top - padding)
    x2 = min(w, right + padding)
    y2 = min(h, bottom + padding)

    if x2 <= x1 or y2 <= y1:
        raise InvalidInputError(
            f"Face {face.id} crop {(x1, y1, x2, y2)} is empty for image {w}x{h}"
        )
    return x1, y1, x2, y2


def crop_face(
    image: np.ndarray, face: DetectedFace, padding_fraction: float = 0.1
) -> np.ndarray:
    """Returns the padded face region of `image` (a view, not a copy)."""
    x1, y1, x2, y2 = face_crop_box(face, image.shape, padding_fraction)
    return image[y1:y2, x1:x2]


def obscure(image: np.ndarray, radius: float = 25.0) -> np.ndarray:
    """Renders the obscured variant of a pixel buffer.

    Gaussian blur followed by a translucent black overlay.

    Args:
        image: H x W or H x W x C uint8 pixel buffer.
        radius: Gaussian blur radius in pixels.

    Returns:
        An RGB uint8 array with the same height and width.
    """
    img = Image.fromarray(np.ascontiguousarray(image)).convert("RGB")
    blurred = img.filter(ImageFilter.GaussianBlur(radius=radius))
    overlay = Image.new("RGB", blurred.size, (0, 0, 0))
    darkened = Image.blend(blurred, overlay, OVERLAY_ALPHA / 255.0)
    return np.asarray(darkened, dtype=np.uint8)
