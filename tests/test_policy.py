import json

import pytest

from blur_guard import policy
from blur_guard.types import (
    GenderEstimate,
    LabelRule,
    LabelHit,
    ModerationDecision,
    ModerationSettings,
    NsfwScoreVector,
    estimate_gender,
)

from conftest import FEMALE_90, MALE_90, face


def one_face(estimate):
    return [(face(0, 10, 10, 40, 40), estimate)]


class TestNsfwGate:
    def test_porn_above_threshold_blurs(self):
        """Scores above the threshold decide the image on their own."""
        nsfw = NsfwScoreVector({"porn": 0.5})
        decision = policy.evaluate([], nsfw, None, ModerationSettings())
        assert decision.should_blur
        assert decision.is_nsfw
        assert decision.reason == policy.NSFW_REASON
        assert decision.nsfw_score == pytest.approx(0.5)

    def test_subset_scores_are_summed(self):
        nsfw = NsfwScoreVector({"porn": 0.15, "sexy": 0.1, "hentai": 0.1, "neutral": 0.65})
        decision = policy.evaluate([], nsfw, None, ModerationSettings())
        assert decision.is_nsfw
        assert decision.nsfw_score == pytest.approx(0.35)

    def test_score_at_threshold_does_not_fire(self):
        nsfw = NsfwScoreVector({"porn": 0.3})
        decision = policy.evaluate([], nsfw, None, ModerationSettings())
        assert not decision.should_blur
        assert not decision.is_nsfw

    def test_drawing_is_not_inappropriate_by_default(self):
        nsfw = NsfwScoreVector({"drawing": 0.99})
        assert not policy.evaluate([], nsfw, None, ModerationSettings()).should_blur

    def test_gate_disabled(self):
        nsfw = NsfwScoreVector({"porn": 0.99})
        settings = ModerationSettings(use_nsfw_detection=False)
        decision = policy.evaluate([], nsfw, None, settings)
        assert not decision.should_blur
        assert "nsfw" not in decision.signals["unavailable"]

    def test_nsfw_wins_over_faces(self):
        nsfw = NsfwScoreVector({"sexy": 0.8})
        decision = policy.evaluate(one_face(MALE_90), nsfw, None, ModerationSettings())
        assert decision.reason == policy.NSFW_REASON
        assert decision.faces_detected == 1
        assert decision.signals["rule"] == "nsfw"


class TestFaceTally:
    def test_female_face_blurs(self):
        decision = policy.evaluate(one_face(FEMALE_90), None, None, ModerationSettings())
        assert decision.should_blur
        assert decision.females_detected == 1
        assert "1 female face(s)" in decision.reason

    def test_male_face_shows_by_default(self):
        decision = policy.evaluate(one_face(MALE_90), None, None, ModerationSettings())
        assert not decision.should_blur
        assert decision.reason is None
        assert decision.males_detected == 1

    def test_male_face_blurs_when_enabled(self):
        settings = ModerationSettings(blur_males=True)
        decision = policy.evaluate(one_face(MALE_90), None, None, settings)
        assert decision.should_blur
        assert "1 male face(s)" in decision.reason

    def test_female_faces_ignored_when_disabled(self):
        settings = ModerationSettings(blur_females=False)
        decision = policy.evaluate(one_face(FEMALE_90), None, None, settings)
        assert not decision.should_blur
        assert decision.females_detected == 1

    def test_uncertain_face_in_strict_mode_counts_as_female(self):
        """Low-confidence faces are tallied as female in strict mode."""
        low = GenderEstimate(is_female=False, confidence=0.4)
        settings = ModerationSettings(strict_mode=True)
        decision = policy.evaluate(one_face(low), None, None, settings)
        assert decision.should_blur
        assert decision.uncertain_faces == 1
        assert decision.females_detected == 1

    def test_uncertain_face_outside_strict_mode_is_ignored(self):
        low = GenderEstimate(is_female=True, confidence=0.4)
        decision = policy.evaluate(one_face(low), None, None, ModerationSettings())
        assert not decision.should_blur
        assert decision.uncertain_faces == 1
        assert decision.females_detected == 0

    def test_uncertain_strict_with_females_disabled(self):
        low = GenderEstimate(is_female=True, confidence=0.4)
        settings = ModerationSettings(strict_mode=True, blur_females=False)
        decision = policy.evaluate(one_face(low), None, None, settings)
        assert decision.should_blur
        assert decision.signals["rule"] == "strict_uncertain"
        assert decision.reason.startswith("Uncertain detection in strict mode")

    def test_missing_estimate_counts_face_only(self):
        decision = policy.evaluate(one_face(None), None, None, ModerationSettings())
        assert not decision.should_blur
        assert decision.faces_detected == 1
        assert decision.females_detected == 0
        assert decision.signals["faces"][0]["tally"] == "unclassified"

    def test_missing_estimate_in_strict_mode_blurs(self):
        settings = ModerationSettings(strict_mode=True)
        decision = policy.evaluate(one_face(None), None, None, settings)
        assert decision.should_blur
        assert decision.uncertain_faces == 1

    def test_threshold_is_inclusive(self):
        exact = GenderEstimate(is_female=True, confidence=0.7)
        settings = ModerationSettings(gender_confidence_threshold=0.7)
        decision = policy.evaluate(one_face(exact), None, None, settings)
        assert decision.females_detected == 1
        assert decision.uncertain_faces == 0

    def test_tied_estimate_is_uncertain(self):
        """A 50/50 split passes the default threshold but decides nothing."""
        tie = estimate_gender(0.0, 0.0)
        decision = policy.evaluate(one_face(tie), None, None, ModerationSettings())
        assert decision.uncertain_faces == 1
        assert decision.males_detected == 0
        assert not decision.should_blur

    def test_tied_estimate_blurs_in_strict_mode(self):
        tie = GenderEstimate(is_female=False, confidence=0.5)
        settings = ModerationSettings(strict_mode=True, gender_confidence_threshold=0.0)
        decision = policy.evaluate(one_face(tie), None, None, settings)
        assert decision.should_blur
        assert decision.males_detected == 0
        assert decision.uncertain_faces == 1

    def test_counts_and_faces_are_consistent(self):
        faces = [
            (face(0, 0, 0, 10, 10), FEMALE_90),
            (face(1, 20, 0, 30, 10), MALE_90),
            (face(2, 40, 0, 50, 10), GenderEstimate(is_female=True, confidence=0.2)),
            (face(3, 60, 0, 70, 10), None),
        ]
        decision = policy.evaluate(faces, None, None, ModerationSettings())
        assert decision.faces_detected == 4
        assert decision.females_detected == 1
        assert decision.males_detected == 1
        assert decision.uncertain_faces == 1
        assert len(decision.per_face_gender) == 3
        assert (
            decision.females_detected + decision.males_detected
            <= decision.faces_detected
        )


class TestStrictDegraded:
    def test_missing_nsfw_in_strict_mode_blurs(self):
        settings = ModerationSettings(strict_mode=True)
        decision = policy.evaluate([], None, None, settings)
        assert decision.should_blur
        assert decision.signals["rule"] == "strict_degraded"
        assert "nsfw" in decision.reason

    def test_missing_faces_in_strict_mode_blurs(self):
        settings = ModerationSettings(strict_mode=True, use_nsfw_detection=False)
        decision = policy.evaluate([], None, None, settings, unavailable={"faces"})
        assert decision.should_blur
        assert decision.signals["degraded"] is True

    def test_missing_signals_outside_strict_mode_show(self):
        decision = policy.evaluate([], None, None, ModerationSettings(), {"faces"})
        assert not decision.should_blur
        assert decision.signals["unavailable"] == ("faces", "nsfw")


class TestLabelFallback:
    def test_alcohol_label_blurs(self):
        labels = [LabelHit("alcohol", 0.8)]
        decision = policy.evaluate([], None, labels, ModerationSettings())
        assert decision.should_blur
        assert "Alcohol" in decision.reason
        assert "alcohol (80%)" in decision.reason
        assert decision.signals["rule"] == "label:alcohol"

    def test_below_rule_confidence_is_ignored(self):
        labels = [LabelHit("beer bottle", 0.55)]
        assert not policy.evaluate([], None, labels, ModerationSettings()).should_blur

    def test_female_label_gated_on_blur_females(self):
        labels = [LabelHit("woman", 0.4)]
        assert policy.evaluate([], None, labels, ModerationSettings()).should_blur
        settings = ModerationSettings(blur_females=False)
        assert not policy.evaluate([], None, labels, settings).should_blur

    def test_keywords_match_whole_words(self):
        labels = [LabelHit("hamster", 0.9), LabelHit("pigeon", 0.9)]
        assert not policy.evaluate([], None, labels, ModerationSettings()).should_blur

    def test_keywords_disabled(self):
        labels = [LabelHit("wine glass", 0.9)]
        settings = ModerationSettings(use_label_keywords=False)
        assert not policy.evaluate([], None, labels, settings).should_blur

    def test_faces_take_priority_over_labels(self):
        labels = [LabelHit("casino", 0.9)]
        decision = policy.evaluate(one_face(FEMALE_90), None, labels, ModerationSettings())
        assert decision.signals["rule"] == "female"


class TestDecisionProperties:
    def test_reason_present_iff_blur(self):
        cases = [
            ([], NsfwScoreVector({"porn": 0.9}), None),
            (one_face(MALE_90), NsfwScoreVector({"neutral": 0.9}), None),
            ([], NsfwScoreVector({"neutral": 0.9}), [LabelHit("bikini", 0.7)]),
            ([], NsfwScoreVector({"neutral": 0.9}), []),
        ]
        for faces, nsfw, labels in cases:
            decision = policy.evaluate(faces, nsfw, labels, ModerationSettings())
            assert decision.should_blur == (decision.reason is not None)

    def test_evaluate_is_deterministic(self):
        nsfw = NsfwScoreVector({"sexy": 0.2})
        faces = one_face(GenderEstimate(is_female=True, confidence=0.45))
        settings = ModerationSettings(strict_mode=True)
        assert policy.evaluate(faces, nsfw, None, settings) == policy.evaluate(
            faces, nsfw, None, settings
        )

    def test_degraded_decision(self):
        shown = policy.degraded_decision(ModerationSettings(), "boom")
        assert not shown.should_blur
        assert shown.reason == "Evaluation degraded: boom"
        hidden = policy.degraded_decision(ModerationSettings(strict_mode=True), "boom")
        assert hidden.should_blur
        assert hidden.signals["degraded"] is True

    def test_decision_serialization(self):
        faces = [(face("a", 0, 0, 10, 10), GenderEstimate(True, 0.9, face_id="a"))]
        data = policy.evaluate(faces, None, None, ModerationSettings()).to_dict()
        assert data["action"] == "BLUR"
        assert data["per_face_gender"][0] == {
            "face_id": "a",
            "is_female": True,
            "confidence": 0.9,
        }


class TestSettingsAndEstimates:
    def test_defaults(self):
        s = ModerationSettings()
        assert s.nsfw_threshold == 0.3
        assert s.gender_confidence_threshold == 0.5
        assert s.face_padding_fraction == 0.1
        assert s.nsfw_categories == ("porn", "sexy", "hentai")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"nsfw_threshold": 1.5},
            {"gender_confidence_threshold": -0.1},
            {"face_padding_fraction": -1},
            {"nsfw_categories": ("violence",)},
        ],
    )
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            ModerationSettings(**kwargs)

    def test_settings_are_hashable(self):
        a = ModerationSettings(nsfw_categories=["porn"])
        b = ModerationSettings(nsfw_categories=("porn",))
        assert hash(a) == hash(b)
        assert a == b

    def test_estimate_gender_probabilities(self):
        est = estimate_gender(0.3, 0.1)
        assert est.is_female
        assert est.confidence == pytest.approx(0.75)

    def test_estimate_gender_logits(self):
        est = estimate_gender(0.0, 2.0, logits=True)
        assert not est.is_female
        assert est.confidence > 0.85

    def test_estimate_gender_tie_goes_to_male(self):
        est = estimate_gender(0.0, 0.0)
        assert not est.is_female
        assert est.confidence == 0.5


class TestLabelRules:
    def test_empty_keywords_rejected(self):
        with pytest.raises(ValueError, match="at least one keyword"):
            LabelRule("custom", (), 0.1, "Custom content detected")

    def test_blank_keywords_rejected(self):
        with pytest.raises(ValueError):
            LabelRule("custom", ["", "  "], 0.1, "Custom content detected")

    def test_unknown_subject_rejected(self):
        with pytest.raises(ValueError):
            LabelRule("custom", ("tree",), 0.1, "Custom", subject="other")

    def test_list_keywords_keep_settings_hashable(self):
        rule = LabelRule("custom", ["alcohol", "vodka"], 0.5, "Custom content detected")
        settings = ModerationSettings(label_rules=[rule])
        assert rule.keywords == ("alcohol", "vodka")
        hash(settings)

    def test_single_string_keyword(self):
        rule = LabelRule("custom", "vodka", 0.5, "Custom content detected")
        assert rule.keywords == ("vodka",)

    def test_custom_rule_matches_only_its_keywords(self):
        rule = LabelRule("custom", ["vodka"], 0.1, "Custom content detected")
        settings = ModerationSettings(label_rules=(rule,))
        tree = policy.evaluate([], None, [LabelHit("tree", 0.9)], settings)
        assert not tree.should_blur
        vodka = policy.evaluate([], None, [LabelHit("vodka bottle", 0.9)], settings)
        assert vodka.reason == "Custom content detected: vodka bottle (90%)"


class TestDecisionSignals:
    def test_signals_are_read_only(self):
        decision = policy.evaluate(one_face(FEMALE_90), None, None, ModerationSettings())
        with pytest.raises(TypeError):
            decision.signals["rule"] = "none"
        assert isinstance(decision.signals["faces"], tuple)

    def test_caller_dict_is_copied(self):
        signals = {"rule": "female"}
        decision = ModerationDecision(should_blur=True, reason="r", signals=signals)
        signals["rule"] = "male"
        assert decision.signals["rule"] == "female"

    def test_decision_is_hashable(self):
        decision = policy.evaluate(one_face(FEMALE_90), None, None, ModerationSettings())
        assert hash(decision) == hash(
            policy.evaluate(one_face(FEMALE_90), None, None, ModerationSettings())
        )

    def test_to_dict_returns_mutable_copy(self):
        decision = policy.evaluate(one_face(FEMALE_90), None, None, ModerationSettings())
        data = decision.to_dict()
        assert isinstance(data["signals"]["faces"], list)
        data["signals"]["faces"].clear()
        data["signals"]["rule"] = "none"
        assert len(decision.signals["faces"]) == 1
        assert decision.signals["rule"] == "female"
        assert json.loads(decision.to_json())["signals"]["rule"] == "female"
