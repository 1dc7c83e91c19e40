from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from .llm import StageResponseError, TextGenerator, parse_json_object
from .model_selection import RuntimeModelSelection
from .models import (
    AssessmentOutput,
    BuildOutput,
    BuildReviewOutput,
    BuildScores,
    EdgeLabel,
    EnhancementOutput,
    IntakeSubmission,
    QualityReviewOutput,
    QualityScores,
    StageId,
    StylePreferences,
)
from .palette import resolve_colors
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

MAX_GENERATE_ATTEMPTS = 2
VALIDATE_PASS_THRESHOLD = 7.0
BUILD_REVIEW_PASS_THRESHOLD = 7.0
BRIEF_PREVIEW_CHARS = 500
HTML_PREVIEW_CHARS = 12_000
HTML_TRUNCATION_MARKER = "\n... (truncated for review)"
HTML_DOCUMENT_MARKERS = ("<!DOCTYPE", "<html")

_JSON_ONLY = "Respond with ONLY valid JSON matching this exact schema. No markdown, no code fences, no explanation."


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

def assess_prompt(plain_text: str) -> str:
    return "\n".join(
        [
            "You are evaluating a client's intake brief for a one-page website build.",
            "",
            "Here is the client's brief:",
            "---",
            plain_text,
            "---",
            "",
            "Assess the brief for completeness across these elements:",
            "1. Clear call-to-action (what should visitors do when they land on the site?)",
            "2. Business description (what does this business do?)",
            "3. Target audience (who are the customers?)",
            "4. Services or products offered",
            "5. Contact or location information",
            "",
            "Score the brief 1-10 for overall quality. List any missing or weak elements.",
            "Always set \"edge\" to \"proceed\". Quality issues are context for the next stage, not blockers.",
            "",
            _JSON_ONLY,
            _schema(
                {
                    "qualityScore": "number",
                    "missingElements": "string[]",
                    "qualityNotes": "string",
                    "edge": "proceed",
                }
            ),
        ]
    )


def generate_prompt(
    plain_text: str,
    *,
    assessment: AssessmentOutput | None,
    previous_review: QualityReviewOutput | None,
    attempt: int,
) -> str:
    """Prompt for the brief rewrite plus site spec.

    ``attempt`` is the 1-based generation attempt. From the second attempt on,
    the previous review's score, critique and numbered suggestions are included.
    """
    lines = ["You are a professional web strategist and copywriter for a one-page site agency.", ""]
    if assessment is not None:
        missing = ", ".join(assessment.missing_elements) if assessment.missing_elements else "none"
        lines += [
            "Quality assessment from the intake review:",
            f"Score: {_format_score(assessment.quality_score)}/10",
            f"Missing elements: {missing}",
            f"Notes: {assessment.quality_notes}",
            "Address any gaps in your output. Infer reasonable details for anything that's missing.",
            "",
        ]
    if previous_review is not None and attempt > 1:
        lines += [
            f"This is a revision attempt. The previous spec was scored {_format_score(previous_review.overall_score)}/10.",
            f"Critique: {previous_review.critique}",
            "Specific improvements needed:",
            *[f"{index}. {suggestion}" for index, suggestion in enumerate(previous_review.suggestions, start=1)],
            "",
        ]
    lines += [
        "Here is the client's project brief:",
        "---",
        plain_text,
        "---",
        "",
        "Given this brief, produce two outputs:",
        "1. Rewrite the brief as polished, client-ready prose (2-3 paragraphs). Warm, professional tone.",
        "   Reference specific details from the form. Fill in reasonable gaps with confident copy.",
        "2. Generate a structured site specification for a one-page website with 4-7 sections.",
        "   Sections should flow logically: hook, trust, offer, proof, action.",
        "",
        _JSON_ONLY,
        _schema(
            {
                "refinedBrief": "string",
                "siteSpec": {
                    "headline": "string (5-10 words, compelling hook for the hero section)",
                    "subheadline": "string (1-2 sentences expanding the headline)",
                    "seoDescription": "string (max 160 characters for meta description)",
                    "sections": [
                        {
                            "sectionName": "string",
                            "purpose": "string (one sentence)",
                            "suggestedContent": "string (2-4 sentences of specific, actionable content)",
                        }
                    ],
                },
                "edge": "generated",
            }
        ),
    ]
    return "\n".join(lines)


def validate_prompt(enhancement: EnhancementOutput) -> str:
    spec = enhancement.site_spec
    return "\n".join(
        [
            "You are a quality assurance agent reviewing a one-page website specification.",
            "",
            "Score each dimension 1-10:",
            "- clarity: Is the messaging immediately clear to a first-time visitor?",
            "- completeness: Are all sections necessary for this business type present?",
            "- ctaStrength: Is the primary call-to-action specific, compelling, and actionable?",
            "- sectionFlow: Do the sections build a logical narrative that earns the conversion?",
            "",
            "Overall score = average of all four.",
            "- overall >= 7: edge \"passes\"",
            "- overall < 7: edge \"needs_revision\" (provide specific critique and suggestions)",
            "",
            "Site specification to review:",
            f"Headline: {spec.headline}",
            f"Subheadline: {spec.subheadline}",
            f"SEO: {spec.seo_description}",
            f"Sections: {', '.join(section.section_name for section in spec.sections)}",
            "",
            "Polished brief:",
            enhancement.refined_brief[:BRIEF_PREVIEW_CHARS],
            "",
            _JSON_ONLY,
            _schema(
                {
                    "scores": {
                        "clarity": "number",
                        "completeness": "number",
                        "ctaStrength": "number",
                        "sectionFlow": "number",
                    },
                    "overallScore": "number",
                    "critique": "string",
                    "suggestions": "string[]",
                    "edge": "passes | needs_revision",
                }
            ),
        ]
    )


def build_prompt(submission: IntakeSubmission, enhancement: EnhancementOutput) -> str:
    spec = enhancement.site_spec
    business = submission.business
    style = submission.style
    contact = submission.contact
    colors = resolve_colors(style)

    context_lines = [
        f"- Business: {business.business_name}",
        f"- Type: {business.business_type}",
        f"- Industry: {business.industry or 'General'}",
        f"- CTA: {submission.project.call_to_action}",
        f"- Style: {style.style_preset} preset",
        f"- Style Notes: {style.style_notes or 'None'}",
    ]
    if contact.email:
        context_lines.append(f"- Contact Email: {contact.email}")
    if contact.phone:
        context_lines.append(f"- Phone: {contact.phone}")

    sections_block = "\n\n".join(
        f"Section {index}: \"{section.section_name}\"\n  Purpose: {section.purpose}\n  Content: {section.suggested_content}"
        for index, section in enumerate(spec.sections, start=1)
    )
    requirements = [
        "Output a COMPLETE, VALID HTML file with embedded CSS in a <style> tag. No external dependencies, "
        "no JavaScript frameworks, no CDN links.",
        "The page must be FULLY RESPONSIVE (mobile-first, 375px to 1440px).",
        "Use semantic HTML5 (header, nav, main, section, footer).",
        "Each section from the site spec becomes an HTML <section> with an id (kebab-case of sectionName).",
        "Include a sticky navigation bar with smooth-scroll anchor links to each section.",
        "The hero section should be visually striking with the headline and subheadline.",
        "Include a clear, prominent CTA button styled with the primary color.",
        "Add a footer with the business name, the current year, and contact info if provided.",
        "Include proper <meta> tags: charset, viewport, description, og:title, og:description.",
        "Use CSS custom properties (variables) for the color system.",
        "Add subtle CSS animations (fade-in using @keyframes).",
        "Include hover effects on interactive elements.",
        "Ensure text colors have good contrast against their backgrounds.",
        f"The <title> should be \"{business.business_name} | {spec.headline}\".",
        "Use only minimal JavaScript for smooth scrolling and the mobile nav toggle (no libraries).",
        "Include a print-friendly @media print block that hides nav and shows content.",
    ]
    return "\n".join(
        [
            "You are an expert front-end developer building a complete, production-ready single-page website.",
            "",
            "BUSINESS CONTEXT:",
            *context_lines,
            "",
            "DESIGN SYSTEM:",
            *[f"- {line}" for line in colors.as_lines()],
            "- Font: system font stack (-apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif)",
            "",
            f"HEADLINE: {spec.headline}",
            f"SUBHEADLINE: {spec.subheadline}",
            f"SEO DESCRIPTION: {spec.seo_description}",
            "",
            "SECTIONS TO BUILD:",
            sections_block,
            "",
            "REQUIREMENTS:",
            *[f"{index}. {requirement}" for index, requirement in enumerate(requirements, start=1)],
            "",
            _JSON_ONLY,
            _schema(
                {
                    "html": "<!DOCTYPE html>... (the complete HTML file as a single escaped JSON string)",
                    "buildNotes": "string (2-3 sentences about design choices made)",
                    "edge": "built",
                }
            ),
            "",
            "CRITICAL: the \"html\" field must contain the COMPLETE HTML document as one escaped JSON string.",
        ]
    )


def build_review_prompt(html: str, enhancement: EnhancementOutput, style: StylePreferences) -> str:
    spec = enhancement.site_spec
    return "\n".join(
        [
            "You are a QA engineer reviewing a generated HTML+CSS single-page website.",
            "",
            "EXPECTED SITE SPEC:",
            f"- Headline: {spec.headline}",
            f"- Subheadline: {spec.subheadline}",
            f"- Expected sections: {', '.join(section.section_name for section in spec.sections)}",
            f"- Style preset: {style.style_preset}",
            f"- Primary color: {style.primary_color or '(from preset)'}",
            "",
            "HTML TO REVIEW:",
            html_preview(html),
            "",
            "Score each dimension 1-10:",
            "- structuralIntegrity: valid HTML5, properly nested tags, DOCTYPE + head + body structure",
            "- responsiveness: mobile-first CSS, media queries for breakpoints, flexible layouts",
            "- accessibility: semantic elements, sufficient color contrast, ARIA labels on navigation",
            "- brandAlignment: uses the specified colors, headline/subheadline match, all sections present",
            "",
            "Overall score = average of all four dimensions.",
            "- overall >= 7: edge \"html_passes\"",
            "- overall < 7: edge \"html_fails\"",
            "",
            _JSON_ONLY,
            _schema(
                {
                    "scores": {
                        "structuralIntegrity": "number",
                        "responsiveness": "number",
                        "accessibility": "number",
                        "brandAlignment": "number",
                    },
                    "overallScore": "number",
                    "issues": "string[]",
                    "edge": "html_passes | html_fails",
                }
            ),
        ]
    )


def html_preview(html: str) -> str:
    if len(html) <= HTML_PREVIEW_CHARS:
        return html
    return html[:HTML_PREVIEW_CHARS] + HTML_TRUNCATION_MARKER


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

def parse_assessment(raw: str) -> AssessmentOutput:
    payload = parse_json_object(raw, label="assess")
    payload["edge"] = EdgeLabel.PROCEED.value
    return _validate(AssessmentOutput, payload, label="assess")


def parse_enhancement(raw: str) -> EnhancementOutput:
    payload = parse_json_object(raw, label="generate")
    payload["edge"] = EdgeLabel.GENERATED.value
    return _validate(EnhancementOutput, payload, label="generate")


def route_quality_review(overall_score: float, generate_attempts: int) -> EdgeLabel:
    if overall_score >= VALIDATE_PASS_THRESHOLD:
        return EdgeLabel.PASSES
    if generate_attempts < MAX_GENERATE_ATTEMPTS:
        return EdgeLabel.NEEDS_REVISION
    return EdgeLabel.MAX_RETRIES


def parse_quality_review(raw: str, *, generate_attempts: int) -> QualityReviewOutput:
    """Parse a spec review, recomputing the overall score and applying the revision rule."""
    payload = parse_json_object(raw, label="validate")
    scores = _validate(QualityScores, payload.get("scores"), label="validate scores")
    overall = scores.mean()
    payload.pop("overall_score", None)
    payload.update(
        scores=scores,
        overallScore=overall,
        edge=route_quality_review(overall, generate_attempts).value,
    )
    return _validate(QualityReviewOutput, payload, label="validate")


def parse_build(raw: str) -> BuildOutput:
    payload = parse_json_object(raw, label="build")
    html = payload.get("html")
    if not isinstance(html, str) or not any(marker in html for marker in HTML_DOCUMENT_MARKERS):
        raise StageResponseError("Build output missing valid HTML document")
    payload["edge"] = EdgeLabel.BUILT.value
    return _validate(BuildOutput, payload, label="build")


def parse_build_review(raw: str) -> BuildReviewOutput:
    payload = parse_json_object(raw, label="build_validate")
    scores = _validate(BuildScores, payload.get("scores"), label="build_validate scores")
    overall = scores.mean()
    edge = EdgeLabel.HTML_PASSES if overall >= BUILD_REVIEW_PASS_THRESHOLD else EdgeLabel.HTML_FAILS
    payload.pop("overall_score", None)
    payload.update(scores=scores, overallScore=overall, edge=edge.value)
    return _validate(BuildReviewOutput, payload, label="build_validate")


# ---------------------------------------------------------------------------
# Stage handlers
# ---------------------------------------------------------------------------

@dataclass
class StageRunner:
    """Runs the generation-backed stages against one ``TextGenerator``.

    assess, generate and validate let errors propagate (they fail the run).
    build and build_validate turn any error into their degrading edge.
    """

    generator: TextGenerator
    model_selection: RuntimeModelSelection
    settings: RuntimeSettings

    def _call(self, stage: StageId, prompt: str, max_tokens: int | None = None) -> str:
        model = self.model_selection.model_for_stage(stage)
        budget = max_tokens if max_tokens is not None else self.settings.default_max_tokens
        logger.debug("Calling generation for stage=%s model=%s max_tokens=%d", stage.value, model, budget)
        return self.generator.generate(prompt, model=model, max_tokens=budget)

    def assess(self, plain_text: str) -> AssessmentOutput:
        return parse_assessment(self._call(StageId.ASSESS, assess_prompt(plain_text)))

    def generate(
        self,
        plain_text: str,
        *,
        assessment: AssessmentOutput | None,
        previous_review: QualityReviewOutput | None,
        attempt: int,
    ) -> EnhancementOutput:
        prompt = generate_prompt(plain_text, assessment=assessment, previous_review=previous_review, attempt=attempt)
        return parse_enhancement(self._call(StageId.GENERATE, prompt))

    def validate(self, enhancement: EnhancementOutput, *, generate_attempts: int) -> QualityReviewOutput:
        raw = self._call(StageId.VALIDATE, validate_prompt(enhancement))
        return parse_quality_review(raw, generate_attempts=generate_attempts)

    def build(self, submission: IntakeSubmission, enhancement: EnhancementOutput) -> BuildOutput:
        try:
            raw = self._call(StageId.BUILD, build_prompt(submission, enhancement), self.settings.build_max_tokens)
            return parse_build(raw)
        except Exception as exc:
            logger.error("Build stage failed, falling back to notification-only delivery: %s", exc)
            return BuildOutput(html="", build_notes=f"Build failed: {exc}", edge=EdgeLabel.BUILD_FAILED)

    def build_validate(
        self, build: BuildOutput, enhancement: EnhancementOutput, style: StylePreferences
    ) -> BuildReviewOutput:
        try:
            raw = self._call(StageId.BUILD_VALIDATE, build_review_prompt(build.html, enhancement, style))
            return parse_build_review(raw)
        except Exception as exc:
            logger.error("Build review failed, falling back to notification-only delivery: %s", exc)
            return BuildReviewOutput(
                scores=BuildScores(structural_integrity=0, responsiveness=0, accessibility=0, brand_alignment=0),
                overall_score=0.0,
                issues=[f"Validation error: {exc}"],
                edge=EdgeLabel.HTML_FAILS,
            )


def _validate(schema: type[ModelT], payload: Any, *, label: str) -> ModelT:
    if not isinstance(payload, dict):
        raise StageResponseError(f"{label} payload must be a JSON object, got {type(payload).__name__}")
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise StageResponseError(f"{label} response failed schema validation: {exc}") from exc


def _schema(shape: dict[str, Any]) -> str:
    return json.dumps(shape, indent=2)


def _format_score(score: float) -> str:
    return f"{score:g}"
