from __future__ import annotations

import pytest

from planforge.review import HardCheckResult, ReviewResult, validate_review_payload


def _check(name: str, passed: bool, severity: str) -> HardCheckResult:
    return HardCheckResult(check_name=name, passed=passed, message=f"{name} msg", severity=severity)


def test_calculate_passed_requires_threshold_and_no_error_failures() -> None:
    review = validate_review_payload({"score": 0.85})
    assert review.calculate_passed(0.8) is True
    review.hard_check_results = [_check("has_risks", False, "warning")]
    assert review.calculate_passed(0.8) is True
    review.hard_check_results.append(_check("has_phases", False, "error"))
    assert review.calculate_passed(0.8) is False
    assert review.passed is False


def test_calculate_passed_boundary_score() -> None:
    review = validate_review_payload({"score": 0.8})
    assert review.calculate_passed(0.8) is True
    review = validate_review_payload({"score": 0.79})
    assert review.calculate_passed(0.8) is False


def test_extract_feedback_prefixes(failing_review) -> None:
    review = validate_review_payload(failing_review)
    review.hard_check_results = [
        _check("has_phases", False, "error"),
        _check("has_risks", False, "warning"),
        _check("has_acceptance_criteria", True, "error"),
    ]
    assert review.extract_feedback() == [
        "[MUST FIX] has_phases: has_phases msg",
        "[SHOULD FIX] has_risks: has_risks msg",
        "[CRITICAL] No rollback step",
        "  Suggested: Add a revert checkpoint",
        "[CLARIFY] Which crate?",
        "  - core or cli?",
    ]


def test_validate_review_accepts_full_result(passing_review) -> None:
    full = ReviewResult(llm_review=validate_review_payload(passing_review).llm_review)
    restored = validate_review_payload(full.model_dump(mode="json"))
    assert restored.score == 0.9


def test_review_score_out_of_range_rejected() -> None:
    with pytest.raises(ValueError):
        validate_review_payload({"score": 1.5})
