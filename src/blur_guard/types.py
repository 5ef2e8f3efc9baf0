"""Value types shared by the decision policy, the cache and the orchestrator.

Detection results (`DetectedFace`, `GenderEstimate`, `NsfwScoreVector`,
`LabelHit`) are scoped to one evaluation run. `ModerationSettings` is the
immutable policy configuration and `ModerationDecision` is the only value that
leaves a run.
"""

from __future__ import annotations
import json
from dataclasses import dataclass, field, fields
from types import MappingProxyType
from typing import Any, Dict, Hashable, Mapping, Optional, Tuple

import numpy as np
from scipy.special import softmax

NSFW_CATEGORIES: Tuple[str, ...] = ("drawing", "hentai", "neutral", "porn", "sexy")
DEFAULT_NSFW_SUBSET: Tuple[str, ...] = ("porn", "sexy", "hentai")

FEMALE = "female"
MALE = "male"


@dataclass(frozen=True)
class DetectedFace:
    """A face located in the source image.

    Attributes:
        id: Opaque handle, unique within one evaluation run.
        bounding_box: (left, top, right, bottom) in source-image pixels.
        locator_confidence: Detector confidence in [0, 1].
    """

    id: Hashable
    bounding_box: Tuple[int, int, int, int]
    locator_confidence: float = 1.0

    @property
    def width(self) -> int:
        return max(0, self.bounding_box[2] - self.bounding_box[0])

    @property
    def height(self) -> int:
        return max(0, self.bounding_box[3] - self.bounding_box[1])

    @property
    def area(self) -> int:
        return self.width * self.height


@dataclass(frozen=True)
class GenderEstimate:
    """The winning class of a two-class gender classifier for one face."""

    is_female: bool
    confidence: float
    face_id: Optional[Hashable] = None

    @property
    def label(self) -> str:
        return FEMALE if self.is_female else MALE


def estimate_gender(
    female: float, male: float, logits: bool = False
) -> GenderEstimate:
    """Normalises two raw class outputs into a `GenderEstimate`.

    Args:
        female: Raw output for the female class.
        male: Raw output for the male class.
        logits: Whether the outputs are unnormalised logits (softmax is
            applied) rather than probabilities (sum-normalised).

    Returns:
        The winning class and its normalised probability. Ties go to male.
    """
    raw = np.array([female, male], dtype="float64")
    if logits:
        probs = softmax(raw)
    else:
        raw = np.clip(raw, 0.0, None)
        total = raw.sum()
        probs = raw / total if total > 0 else np.array([0.5, 0.5])
    is_female = bool(probs[0] > probs[1])
    confidence = float(probs[0] if is_female else probs[1])
    return GenderEstimate(is_female=is_female, confidence=confidence)


@dataclass(frozen=True)
class NsfwScoreVector:
    """Independent per-category scores; they need not sum to 1."""

    category_scores: Mapping[str, float]

    def score(self, category: str) -> float:
        return float(self.category_scores.get(category, 0.0))

    def inappropriate_score(
        self, categories: Tuple[str, ...] = DEFAULT_NSFW_SUBSET
    ) -> float:
        return float(sum(self.score(c) for c in categories))


@dataclass(frozen=True)
class LabelHit:
    """A generic semantic label, e.g. "dress" or "beer bottle"."""

    text: str
    confidence: float


@dataclass(frozen=True)
class LabelRule:
    """One keyword class of the label fallback.

    Attributes:
        name: Short identifier reported in the decision signals.
        keywords: Whole words matched case-insensitively against label text.
        min_confidence: Labels below this confidence are ignored.
        reason: Sentence used as the decision reason on a match.
        subject: "female" or "male" gates the rule on the matching blur flag;
            None applies the rule regardless of subject settings.
    """

    name: str
    keywords: Tuple[str, ...]
    min_confidence: float
    reason: str
    subject: Optional[str] = None

    def __post_init__(self):
        keywords = (self.keywords,) if isinstance(self.keywords, str) else self.keywords
        keywords = tuple(k.strip() for k in keywords if k and k.strip())
        if not keywords:
            raise ValueError(f"Label rule {self.name!r} needs at least one keyword")
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValueError(
                f"min_confidence must be within [0, 1], got {self.min_confidence}"
            )
        if self.subject not in (None, FEMALE, MALE):
            raise ValueError(f"Unknown label rule subject: {self.subject!r}")
        # Stored as a tuple so rules stay hashable.
        object.__setattr__(self, "keywords", keywords)


DEFAULT_LABEL_RULES: Tuple[LabelRule, ...] = (
    LabelRule(
        "female_presence",
        ("woman", "women", "girl", "girls", "female", "lady", "ladies", "bride", "wife"),
        0.3,
        "Female presence detected",
        subject=FEMALE,
    ),
    LabelRule(
        "female_context",
        ("dress", "skirt", "makeup", "lipstick", "jewelry", "earring", "necklace",
         "handbag", "heels"),
        0.5,
        "Female-related content detected",
        subject=FEMALE,
    ),
    LabelRule(
        "alcohol",
        ("alcohol", "wine", "beer", "liquor", "cocktail"),
        0.6,
        "Alcohol content detected",
    ),
    LabelRule(
        "haram_food",
        ("pork", "bacon", "ham", "pig"),
        0.6,
        "Haram food detected",
    ),
    LabelRule(
        "gambling",
        ("gambling", "casino", "betting", "lottery"),
        0.6,
        "Gambling content detected",
    ),
    LabelRule(
        "swimwear",
        ("bikini", "swimsuit", "swimwear", "lingerie", "underwear"),
        0.6,
        "Inappropriate clothing detected",
    ),
)


@dataclass(frozen=True)
class ModerationSettings:
    """Named knobs that change the decision policy.

    Immutable and hashable, so a settings value is part of the cache key and
    can be shared between concurrent evaluations without locking.
    """

    blur_females: bool = True
    blur_males: bool = False
    use_nsfw_detection: bool = True
    nsfw_threshold: float = 0.3
    gender_confidence_threshold: float = 0.5
    strict_mode: bool = False
    face_padding_fraction: float = 0.1
    nsfw_categories: Tuple[str, ...] = DEFAULT_NSFW_SUBSET
    use_label_keywords: bool = True
    label_rules: Tuple[LabelRule, ...] = DEFAULT_LABEL_RULES

    def __post_init__(self):
        for name in ("nsfw_threshold", "gender_confidence_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        if self.face_padding_fraction < 0:
            raise ValueError(
                f"face_padding_fraction must be >= 0, got {self.face_padding_fraction}"
            )
        unknown = [c for c in self.nsfw_categories if c not in NSFW_CATEGORIES]
        if unknown:
            raise ValueError(f"Unknown NSFW categories: {unknown}")
        # Stored as tuples so settings stay hashable.
        object.__setattr__(self, "nsfw_categories", tuple(self.nsfw_categories))
        object.__setattr__(self, "label_rules", tuple(self.label_rules))


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class ModerationDecision:
    """The blur/no-blur verdict for one image plus its explanation.

    Attributes:
        should_blur: Whether the image must be obscured.
        reason: Human-readable sentence for the deciding signal, or None.
        faces_detected: Every located face, with or without a gender estimate.
        females_detected: Faces tallied as female (includes strict-mode
            uncertain faces).
        males_detected: Faces tallied as male.
        uncertain_faces: Faces below the gender confidence threshold or, in
            strict mode, without an estimate.
        nsfw_score: Sum of the configured NSFW categories, 0.0 when absent.
        is_nsfw: Whether the NSFW gate fired.
        per_face_gender: Gender estimates in face order.
        signals: Read-only breakdown of the contributing signals (nested
            lists are tuples); `to_dict()` returns a mutable copy.
    """

    should_blur: bool
    reason: Optional[str] = None
    faces_detected: int = 0
    females_detected: int = 0
    males_detected: int = 0
    uncertain_faces: int = 0
    nsfw_score: float = 0.0
    is_nsfw: bool = False
    per_face_gender: Tuple[GenderEstimate, ...] = ()
    signals: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        # Shared between cache waiters, so stored read-only.
        object.__setattr__(self, "signals", _freeze(dict(self.signals)))

    @property
    def action(self) -> str:
        return "BLUR" if self.should_blur else "SHOW"

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["signals"] = _thaw(self.signals)
        data["per_face_gender"] = [
            {
                "face_id": str(g.face_id) if g.face_id is not None else None,
                "is_female": g.is_female,
                "confidence": g.confidence,
            }
            for g in self.per_face_gender
        ]
        data["action"] = self.action
        return data

    def to_json(self) -> str:
        """Serializes the decision to a JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))
