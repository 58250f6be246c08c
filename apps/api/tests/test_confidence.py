import pytest

from services.confidence import (
    assess_analysis_confidence,
    check_completeness,
    check_consistency,
    recommendation_for,
    validate_analysis_structure,
)

COMPLETE_ANALYSIS = {
    "materials": [{"name": "cotton", "percentage": 60}, {"name": "polyester", "percentage": 40}],
    "colors": [{"name": "navy", "hex": "#1F2A44"}],
    "dimensions": {"unit": "cm", "height": 70, "width": 52},
    "construction": ["Twin-needle hem"],
    "confidence": 0.9,
}


def test_complete_analysis_scores_excellent():
    result = assess_analysis_confidence(COMPLETE_ANALYSIS)

    assert result["score"] == pytest.approx(0.97)
    assert result["breakdown"]["completeness"] == 1.0
    assert result["breakdown"]["consistency"] == 1.0
    assert result["breakdown"]["validation_passed"] is True
    assert result["recommendation"].startswith("Excellent")


def test_completeness_counts_empty_fields_as_missing():
    analysis = {"materials": [{"name": "wool"}], "colors": [], "dimensions": {}, "construction": ["Felled seams"]}

    assert check_completeness(analysis) == 0.5
    assert check_completeness({"dimensions": {"height": 4}}, ["dimensions.height", "dimensions.depth"]) == 0.5


def test_consistency_penalties():
    analysis = {
        "dimensions": {"unit": "cm", "height": -3, "width": {"value": -1}},
        "colors": [{"name": "red"}],
        "materials": [{"name": "cotton", "percentage": 50}],
    }

    # two negative dimensions, a color without hex, composition far from 100%
    assert check_consistency(analysis) == pytest.approx(1.0 - 0.6 - 0.1 - 0.15)
    assert check_consistency({"dimensions": {"a": -1, "b": -1, "c": -1, "d": -1}}) == 0.0


def test_structure_needs_materials_and_dimensions():
    assert validate_analysis_structure({"materials": [], "dimensions": {}}) is True
    assert validate_analysis_structure({"materials": []}) is False
    assert validate_analysis_structure(["materials"]) is False


def test_reported_confidence_is_clamped_and_overridable():
    sparse = {"materials": [], "dimensions": {}, "confidence": 4}

    assert assess_analysis_confidence(sparse)["breakdown"]["model_confidence"] == 1.0
    low = assess_analysis_confidence(sparse, model_confidence=0.0)
    assert low["score"] == pytest.approx(0.3)
    assert low["recommendation"].startswith("Poor")


@pytest.mark.parametrize(
    "score, prefix",
    [(0.95, "Excellent"), (0.8, "Good"), (0.6, "Acceptable"), (0.45, "Low"), (0.1, "Poor")],
)
def test_recommendation_thresholds(score, prefix):
    assert recommendation_for(score).startswith(prefix)
