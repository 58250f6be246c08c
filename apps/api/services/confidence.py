"""Quality score for a base-view analysis: completeness, consistency and structure."""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

WEIGHTS = {
    "model_confidence": 0.3,
    "completeness": 0.4,
    "consistency": 0.2,
    "validation": 0.1,
}

REQUIRED_FIELDS = ("materials", "colors", "dimensions", "construction")
CRITICAL_FIELDS = ("materials", "dimensions")


def _number(value: Any) -> Optional[float]:
    if isinstance(value, dict):
        value = value.get("value")
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def check_completeness(analysis: Dict[str, Any], required_fields: Sequence[str] = REQUIRED_FIELDS) -> float:
    """Share of required fields that are present and non-empty."""
    if not required_fields:
        return 1.0
    present = 0
    for field in required_fields:
        value: Any = analysis
        for key in field.split("."):
            value = value.get(key) if isinstance(value, dict) else None
        if value:
            present += 1
    return present / len(required_fields)


def check_consistency(analysis: Dict[str, Any]) -> float:
    score = 1.0

    dimensions = analysis.get("dimensions")
    if isinstance(dimensions, dict):
        for key, value in dimensions.items():
            if key == "unit":
                continue
            number = _number(value)
            if number is not None and number < 0:
                score -= 0.3

    colors = analysis.get("colors")
    if isinstance(colors, list) and colors and isinstance(colors[0], dict) and not colors[0].get("hex"):
        score -= 0.1

    materials = analysis.get("materials")
    if isinstance(materials, list):
        percentages = [
            _number(item.get("percentage"))
            for item in materials
            if isinstance(item, dict) and item.get("percentage") is not None
        ]
        percentages = [value for value in percentages if value is not None]
        # composition given: it should add up to roughly 100%
        if percentages and not 90 <= sum(percentages) <= 110:
            score -= 0.15

    return max(score, 0.0)


def validate_analysis_structure(analysis: Any) -> bool:
    if not isinstance(analysis, dict):
        return False
    return all(field in analysis for field in CRITICAL_FIELDS)


def recommendation_for(score: float) -> str:
    if score >= 0.9:
        return "Excellent quality - Ready for use"
    if score >= 0.75:
        return "Good quality - Minor review recommended"
    if score >= 0.6:
        return "Acceptable - Review and edit as needed"
    if score >= 0.4:
        return "Low confidence - Manual review required"
    return "Poor quality - Consider regeneration"


def assess_analysis_confidence(analysis: Dict[str, Any], model_confidence: Optional[float] = None) -> Dict[str, Any]:
    """Weighted score in [0, 1] with its breakdown and a review recommendation."""
    reported = model_confidence if model_confidence is not None else _number(analysis.get("confidence"))
    factors = {
        "model_confidence": min(max(reported or 0.0, 0.0), 1.0),
        "completeness": check_completeness(analysis),
        "consistency": check_consistency(analysis),
        "validation_passed": validate_analysis_structure(analysis),
    }
    score = (
        factors["model_confidence"] * WEIGHTS["model_confidence"]
        + factors["completeness"] * WEIGHTS["completeness"]
        + factors["consistency"] * WEIGHTS["consistency"]
        + (1.0 if factors["validation_passed"] else 0.0) * WEIGHTS["validation"]
    )
    score = round(score, 2)
    return {"score": score, "breakdown": factors, "recommendation": recommendation_for(score)}
