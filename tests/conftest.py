from __future__ import annotations

import json
import threading
from typing import Any, Callable

import pytest

from intake_graph.delivery import NotificationRoute
from intake_graph.deploy import DeployCredentials, DeployResult
from intake_graph.engine import GraphEnvironment
from intake_graph.models import IntakeSubmission
from intake_graph.notifications import OutboundEmail
from intake_graph.settings import RuntimeSettings
from intake_graph.state_store import InMemoryKeyValueStore, IntakeStateStore

TEST_SETTINGS = RuntimeSettings(
    model_frontier="model-frontier",
    model_efficient="model-efficient",
    model_economy="model-economy",
)

HTML_DOCUMENT = "<!DOCTYPE html><html><head><title>Sunrise Bakery</title></head><body><main></main></body></html>"


class ScriptedGenerator:
    """Returns queued responses in call order; an Exception in the queue is raised instead."""

    def __init__(self, responses: list[str | Exception]) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def generate(self, prompt: str, *, model: str, max_tokens: int) -> str:
        self.calls.append({"prompt": prompt, "model": model, "max_tokens": max_tokens})
        if not self.responses:
            raise AssertionError(f"Unexpected generation call #{len(self.calls)}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeDeployer:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[str, str, DeployCredentials, int]] = []

    def __call__(self, business_name: str, html: str, credentials: DeployCredentials, timeout_seconds: int) -> DeployResult:
        self.calls.append((business_name, html, credentials, timeout_seconds))
        if self.error is not None:
            raise self.error
        return DeployResult(
            project_name="sunrise-bakery",
            deployment_url="https://sunrise-bakery.pages.dev",
            deployment_id="abc123",
        )


class FakeMailer:
    def __init__(self, failing_recipients: set[str] | None = None) -> None:
        self.failing_recipients = failing_recipients or set()
        self.sent: list[OutboundEmail] = []
        self._lock = threading.Lock()

    def send(self, email: OutboundEmail) -> None:
        if email.to in self.failing_recipients:
            raise RuntimeError(f"HTTP 500 sending to {email.to}")
        with self._lock:
            self.sent.append(email)

    def by_recipient(self, recipient: str) -> OutboundEmail:
        matches = [email for email in self.sent if email.to == recipient]
        assert len(matches) == 1, f"expected one email to {recipient}, got {len(matches)}"
        return matches[0]


def make_submission(**sections: dict[str, str]) -> IntakeSubmission:
    data: dict[str, dict[str, str]] = {
        "business": {
            "businessName": "Sunrise Bakery",
            "businessType": "Restaurant",
            "industry": "Food & Beverage",
            "website": "",
        },
        "project": {
            "description": "Family-owned bakery in Brooklyn specializing in artisan sourdough bread and pastries.",
            "goals": "Get more local customers to visit our shop and order online for pickup.",
            "callToAction": "Order Fresh Bread Today",
            "content": "Daily specials and seasonal items.",
            "imageNotes": "Warm, rustic photography of bread.",
        },
        "style": {
            "stylePreset": "warm",
            "primaryColor": "#F07D2E",
            "secondaryColor": "#FFB347",
            "styleNotes": "",
            "inspirationUrls": "",
        },
        "contact": {
            "name": "Maria Santos",
            "email": "maria@sunrisebakery.com",
            "phone": "718-555-0123",
            "preferredContact": "email",
            "additionalNotes": "",
        },
    }
    for section, overrides in sections.items():
        data[section].update(overrides)
    return IntakeSubmission.model_validate(data)


def assess_json(score: float = 7, edge: str = "proceed") -> str:
    return json.dumps(
        {
            "qualityScore": score,
            "missingElements": ["Target audience"],
            "qualityNotes": "Solid brief, audience implied.",
            "edge": edge,
        }
    )


def generate_json(section_count: int = 5, headline: str = "Fresh Sourdough Baked Every Morning") -> str:
    sections = [
        {
            "sectionName": name,
            "purpose": f"{name} purpose.",
            "suggestedContent": f"{name} content.",
        }
        for name in ["Hero", "About", "Menu", "Testimonials", "Contact", "Hours", "Gallery"][:section_count]
    ]
    return json.dumps(
        {
            "refinedBrief": "Sunrise Bakery is a family-owned bakery in Brooklyn.",
            "siteSpec": {
                "headline": headline,
                "subheadline": "Artisan bread and pastries from our family to yours.",
                "seoDescription": "Brooklyn bakery with artisan sourdough.",
                "sections": sections,
            },
            "edge": "generated",
        }
    )


def validate_json(score: float, overall: float | None = None) -> str:
    return json.dumps(
        {
            "scores": {"clarity": score, "completeness": score, "ctaStrength": score, "sectionFlow": score},
            "overallScore": overall if overall is not None else score,
            "critique": "CTA could be stronger." if score < 7 else "Clear and complete.",
            "suggestions": ["Make the CTA specific", "Add opening hours"] if score < 7 else [],
            "edge": "passes" if score >= 7 else "needs_revision",
        }
    )


def build_json(html: str = HTML_DOCUMENT, fenced: bool = False) -> str:
    body = json.dumps({"html": html, "buildNotes": "Warm palette, hero first.", "edge": "built"})
    return f"```json\n{body}\n```" if fenced else body


def build_review_json(score: float) -> str:
    return json.dumps(
        {
            "scores": {
                "structuralIntegrity": score,
                "responsiveness": score,
                "accessibility": score,
                "brandAlignment": score,
            },
            "overallScore": score,
            "issues": [] if score >= 7 else ["Missing media queries"],
            "edge": "html_passes" if score >= 7 else "html_fails",
        }
    )


def happy_path_responses() -> list[str | Exception]:
    return [assess_json(), generate_json(), validate_json(8), build_json(), build_review_json(8)]


@pytest.fixture
def kv() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def store(kv: InMemoryKeyValueStore) -> IntakeStateStore:
    return IntakeStateStore(kv, TEST_SETTINGS)


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def deployer() -> FakeDeployer:
    return FakeDeployer()


@pytest.fixture
def make_environment(
    store: IntakeStateStore,
    mailer: FakeMailer,
    deployer: FakeDeployer,
) -> Callable[..., GraphEnvironment]:
    def _make(
        generator: ScriptedGenerator,
        *,
        with_store: bool = True,
        with_email: bool = True,
        with_deploy: bool = True,
    ) -> GraphEnvironment:
        return GraphEnvironment(
            generator=generator,
            settings=TEST_SETTINGS,
            store=store if with_store else None,
            notifications=(
                NotificationRoute(mailer=mailer, notify_email="team@example.com", from_email="noreply@example.com")
                if with_email
                else None
            ),
            deploy_credentials=DeployCredentials(api_token="cf-token", account_id="cf-account") if with_deploy else None,
            deployer=deployer,
        )

    return _make
