"""The decision policy that fuses detector outputs into one blur verdict.

`evaluate` is a pure function: everything it needs is passed in, it performs
no I/O and never raises. Missing signals degrade to "not available"; strict
mode resolves that absence toward blurring.
"""

from __future__ import annotations
import re
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Collection, Dict, List, Optional, Pattern, Sequence, Tuple

from .types import (
    FEMALE,
    MALE,
    DetectedFace,
    GenderEstimate,
    LabelHit,
    LabelRule,
    ModerationDecision,
    ModerationSettings,
    NsfwScoreVector,
)

logger = logging.getLogger(__name__)

NSFW_REASON = "Inappropriate content detected"

FaceSignal = Tuple[DetectedFace, Optional[GenderEstimate]]

# A two-class winner at exactly 0.5 is a tie, never a confident result.
TIE_CONFIDENCE = 0.5


@dataclass
class _Tally:
    females: int = 0
    males: int = 0
    uncertain: int = 0
    estimates: List[GenderEstimate] = field(default_factory=list)
    per_face: List[Dict[str, Any]] = field(default_factory=list)


@lru_cache(maxsize=64)
def _keyword_regex(keywords: Tuple[str, ...]) -> Pattern:
    """Builds a whole-word regex for a tuple of keywords."""
    sorted_terms = sorted({k.lower() for k in keywords}, key=len, reverse=True)
    return re.compile(
        "|".join(r"\b" + re.escape(term) + r"\b" for term in sorted_terms),
        re.IGNORECASE,
    )


def nsfw_gate_fires(
    nsfw: Optional[NsfwScoreVector], settings: ModerationSettings
) -> bool:
    """Whether the NSFW gate alone decides the image."""
    if nsfw is None or not settings.use_nsfw_detection:
        return False
    return nsfw.inappropriate_score(settings.nsfw_categories) > settings.nsfw_threshold


def _tally_faces(faces: Sequence[FaceSignal], settings: ModerationSettings) -> _Tally:
    tally = _Tally()
    for face, estimate in faces:
        entry: Dict[str, Any] = {"face_id": str(face.id), "box": list(face.bounding_box)}
        if estimate is None:
            # No estimate: conservative in strict mode, ignored otherwise.
            if settings.strict_mode:
                tally.uncertain += 1
                tally.females += 1
                entry["tally"] = "uncertain"
            else:
                entry["tally"] = "unclassified"
            tally.per_face.append(entry)
            continue

        tally.estimates.append(estimate)
        entry.update(gender=estimate.label, confidence=round(estimate.confidence, 4))
        if (
            estimate.confidence < settings.gender_confidence_threshold
            or estimate.confidence <= TIE_CONFIDENCE
        ):
            tally.uncertain += 1
            if settings.strict_mode:
                tally.females += 1
            entry["tally"] = "uncertain"
        elif estimate.is_female:
            tally.females += 1
            entry["tally"] = FEMALE
        else:
            tally.males += 1
            entry["tally"] = MALE
        tally.per_face.append(entry)
    return tally


def _match_labels(
    labels: Sequence[LabelHit], settings: ModerationSettings
) -> Optional[Tuple[LabelRule, List[LabelHit]]]:
    """Returns the first enabled rule with matching labels, in rule order."""
    for rule in settings.label_rules:
        if rule.subject == FEMALE and not settings.blur_females:
            continue
        if rule.subject == MALE and not settings.blur_males:
            continue
        regex = _keyword_regex(tuple(rule.keywords))
        hits = [
            label
            for label in labels
            if label.confidence >= rule.min_confidence and regex.search(label.text)
        ]
        if hits:
            return rule, hits
    return None


def _format_label(label: LabelHit) -> str:
    return f"{label.text} ({int(label.confidence * 100)}%)"


def evaluate(
    faces: Sequence[FaceSignal],
    nsfw: Optional[NsfwScoreVector],
    labels: Optional[Sequence[LabelHit]],
    settings: ModerationSettings,
    unavailable: Collection[str] = (),
) -> ModerationDecision:
    """Fuses detector outputs into a single moderation decision.

    Applies decision logic in priority order (first match wins):
    1. NSFW gate - configured categories summed above the threshold
    2. Per-face gender tally
    3. Blur from the tally (females, males, strict-mode uncertainty or
       strict-mode unavailable signals)
    4. Label keyword fallback
    5. Default - show

    Args:
        faces: Located faces paired with their gender estimate, or None when
            the classifier failed or was skipped for that face.
        nsfw: NSFW category scores, or None when not available.
        labels: Generic labels, or None when no label analyzer ran.
        settings: The policy configuration.
        unavailable: Names of collaborators that failed during this run.

    Returns:
        A ModerationDecision. This function does not raise.
    """
    unavailable = set(unavailable)
    if settings.use_nsfw_detection and nsfw is None:
        unavailable.add("nsfw")

    signals: Dict[str, Any] = {"unavailable": sorted(unavailable)}
    nsfw_score = 0.0
    if nsfw is not None:
        nsfw_score = nsfw.inappropriate_score(settings.nsfw_categories)
        signals["nsfw_categories"] = {
            k: round(float(v), 4) for k, v in sorted(nsfw.category_scores.items())
        }

    if nsfw_gate_fires(nsfw, settings):
        signals["rule"] = "nsfw"
        return ModerationDecision(
            should_blur=True,
            reason=NSFW_REASON,
            faces_detected=len(faces),
            nsfw_score=nsfw_score,
            is_nsfw=True,
            per_face_gender=tuple(g for _, g in faces if g is not None),
            signals=signals,
        )

    tally = _tally_faces(faces, settings)
    signals["faces"] = tally.per_face

    female_rule = settings.blur_females and tally.females > 0
    male_rule = settings.blur_males and tally.males > 0
    uncertain_rule = settings.strict_mode and tally.uncertain > 0
    degraded_rule = settings.strict_mode and bool(unavailable & {"faces", "nsfw"})

    reason: Optional[str] = None
    if female_rule:
        signals["rule"] = "female"
        reason = f"Detected {tally.females} female face(s)"
    elif male_rule:
        signals["rule"] = "male"
        reason = f"Detected {tally.males} male face(s)"
    elif uncertain_rule:
        signals["rule"] = "strict_uncertain"
        reason = f"Uncertain detection in strict mode ({tally.uncertain} face(s))"
    elif degraded_rule:
        signals["rule"] = "strict_degraded"
        signals["degraded"] = True
        missing = ", ".join(sorted(unavailable & {"faces", "nsfw"}))
        reason = f"Degraded evaluation in strict mode ({missing} unavailable)"
    elif labels and settings.use_label_keywords:
        match = _match_labels(labels, settings)
        if match is not None:
            rule, hits = match
            signals["rule"] = f"label:{rule.name}"
            signals["matched_labels"] = [h.text for h in hits]
            reason = f"{rule.reason}: {', '.join(_format_label(h) for h in hits)}"

    decision = ModerationDecision(
        should_blur=reason is not None,
        reason=reason,
        faces_detected=len(faces),
        females_detected=tally.females,
        males_detected=tally.males,
        uncertain_faces=tally.uncertain,
        nsfw_score=nsfw_score,
        is_nsfw=False,
        per_face_gender=tuple(tally.estimates),
        signals=signals,
    )
    logger.debug(f"Decision: {decision.action} ({decision.reason})")
    return decision


def degraded_decision(settings: ModerationSettings, error: str) -> ModerationDecision:
    """Decision returned when the evaluation itself could not complete.

    Strict mode fails toward hiding the image; otherwise the image is shown.
    """
    return ModerationDecision(
        should_blur=settings.strict_mode,
        reason=f"Evaluation degraded: {error}",
        signals={"degraded": True, "error": error, "rule": "degraded"},
    )
