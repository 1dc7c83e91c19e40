from __future__ import annotations

from .models import EdgeLabel, EligibilityOutput, EnhancementOutput, IntakeSubmission, QualityReviewOutput
from .palette import STYLE_PRESETS, is_hex_color

MIN_SECTIONS = 3
SCORE_THRESHOLD = 6.0
ALL_CRITERIA_MET = "All criteria met for auto-build"


def evaluate_eligibility(
    submission: IntakeSubmission,
    enhancement: EnhancementOutput,
    review: QualityReviewOutput,
) -> EligibilityOutput:
    """Decide whether a submission goes through the auto-build path.

    Every criterion is checked and each failure adds a reason, so the team
    notice can list all of them. Criteria are lenient: the build review
    catches quality problems later.
    """
    reasons: list[str] = []
    spec = enhancement.site_spec
    style = submission.style

    if len(spec.sections) < MIN_SECTIONS:
        reasons.append(f"Site spec has {len(spec.sections)} sections (minimum {MIN_SECTIONS})")

    if not spec.headline.strip() or not spec.subheadline.strip():
        reasons.append("Missing headline or subheadline in site spec")

    if review.overall_score < SCORE_THRESHOLD:
        reasons.append(
            f"Validation score {review.overall_score:.1f} is below auto-build threshold of {SCORE_THRESHOLD:g}"
        )

    if style.style_preset not in STYLE_PRESETS:
        reasons.append(f"Unrecognized style preset: {style.style_preset!r}")
    elif style.style_preset == "custom" and not (
        is_hex_color(style.primary_color) and is_hex_color(style.secondary_color)
    ):
        reasons.append("Custom colors are not valid hex values (#RRGGBB)")

    if not submission.business.business_name.strip():
        reasons.append("Missing business name (required for deployment)")

    if reasons:
        return EligibilityOutput(qualifies=False, reasons=reasons, edge=EdgeLabel.SKIP_BUILD)
    return EligibilityOutput(qualifies=True, reasons=[ALL_CRITERIA_MET], edge=EdgeLabel.AUTO_BUILD)
