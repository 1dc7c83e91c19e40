from __future__ import annotations

import uuid
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Mapping

from .models import IntakeSubmission

STYLE_PRESET_LABELS: Mapping[str, str] = MappingProxyType(
    {
        "warm": "Warm & Friendly",
        "cool": "Cool & Professional",
        "bold": "Bold & Modern",
        "earth": "Earthy & Natural",
        "minimal": "Minimal & Clean",
        "custom": "Custom Colors",
    }
)

_RULE_WIDTH = 50


def new_session_id() -> str:
    return uuid.uuid4().hex


def _optional(label: str, value: str) -> list[tuple[str, str]]:
    return [(label, value)] if value else []


def brief_sections(submission: IntakeSubmission) -> list[tuple[str, list[tuple[str, str]]]]:
    """Group the submission into headed ``(label, value)`` items. Empty optional fields are left out."""
    business = submission.business
    project = submission.project
    style = submission.style
    contact = submission.contact

    style_items = [("Style", STYLE_PRESET_LABELS.get(style.style_preset, style.style_preset))]
    if style.style_preset == "custom":
        style_items += [("Primary Color", style.primary_color), ("Secondary Color", style.secondary_color)]
    style_items += _optional("Notes", style.style_notes) + _optional("Inspiration", style.inspiration_urls)

    return [
        (
            "Business Details",
            [("Business Name", business.business_name), ("Type", business.business_type)]
            + _optional("Industry", business.industry)
            + _optional("Existing Website", business.website),
        ),
        (
            "Project Requirements",
            [
                ("Description", project.description),
                ("Site Goals", project.goals),
                ("Primary CTA", project.call_to_action),
            ]
            + _optional("Content", project.content)
            + _optional("Image Notes", project.image_notes),
        ),
        ("Style Preferences", style_items),
        (
            "Contact Information",
            [("Name", contact.name), ("Email", contact.email)]
            + _optional("Phone", contact.phone)
            + [("Preferred Contact", contact.preferred_contact)]
            + _optional("Additional Notes", contact.additional_notes),
        ),
    ]


def render_plain_text(submission: IntakeSubmission, *, generated_at: datetime | None = None) -> str:
    """Render the plain-text brief the web form submits alongside the structured data."""
    when = generated_at if generated_at is not None else datetime.now(UTC)
    lines = [
        f"Project Brief: {submission.business.business_name}",
        f"Generated: {when.date().isoformat()}",
        "═" * _RULE_WIDTH,
        "",
    ]
    for heading, items in brief_sections(submission):
        lines.append(f"── {heading} ──")
        lines.extend(f"{label}: {value}" for label, value in items)
        lines.append("")
    lines.append("─" * _RULE_WIDTH)
    return "\n".join(lines)
