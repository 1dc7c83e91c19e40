from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any, Protocol

from jinja2 import Environment, PackageLoader, StrictUndefined, select_autoescape

from .models import EligibilityOutput, EnhancementOutput, IntakeSubmission, QualityReviewOutput

logger = logging.getLogger(__name__)

DEFAULT_EMAIL_ENDPOINT = "https://api.resend.com/emails"
DEFAULT_EMAIL_TIMEOUT_SECONDS = 15


@dataclass(frozen=True)
class OutboundEmail:
    sender: str
    to: str
    subject: str
    html: str

    def to_payload(self) -> dict[str, str]:
        return {"from": self.sender, "to": self.to, "subject": self.subject, "html": self.html}


class Mailer(Protocol):
    def send(self, email: OutboundEmail) -> None:
        ...


def _http_post_json(
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    timeout_seconds: int = DEFAULT_EMAIL_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    """Send a JSON POST request and return the parsed JSON response.

    A 2xx response whose body is empty or not a JSON object yields ``{}``.

    Raises:
        RuntimeError: If the HTTP request fails or returns a non-2xx status.
    """
    request = urllib.request.Request(
        url,
        method="POST",
        headers={"Content-Type": "application/json", **headers},
        data=json.dumps(payload).encode("utf-8"),
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            data = response.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace")[:500]
        logger.error("HTTP %d from %s: %s", exc.code, url, body)
        raise RuntimeError(f"HTTP {exc.code} from {url}: {exc.reason}") from exc
    except urllib.error.URLError as exc:
        logger.error("URL error reaching %s: %s", url, exc.reason)
        raise RuntimeError(f"Failed to reach {url}: {exc.reason}") from exc
    if not data.strip():
        return {}
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Non-JSON success response from %s: %s", url, data[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ResendMailer:
    """Sends one email per HTTPS POST with bearer auth. Any non-2xx response raises ``RuntimeError``."""

    def __init__(
        self,
        api_key: str,
        *,
        endpoint: str = DEFAULT_EMAIL_ENDPOINT,
        timeout_seconds: int = DEFAULT_EMAIL_TIMEOUT_SECONDS,
    ) -> None:
        if not api_key.strip():
            raise ValueError("api_key must be a non-empty string")
        self.api_key = api_key
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds

    def send(self, email: OutboundEmail) -> None:
        response = _http_post_json(
            self.endpoint,
            email.to_payload(),
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout_seconds=self.timeout_seconds,
        )
        logger.debug("Email %r to %s accepted (id=%s)", email.subject, email.to, response.get("id"))


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _score_color(score: float) -> str:
    if score >= 7:
        return "#4ade80"
    if score >= 5:
        return "#fbbf24"
    return "#f87171"


@lru_cache(maxsize=1)
def template_environment() -> Environment:
    environment = Environment(
        loader=PackageLoader("intake_graph", "templates"),
        autoescape=select_autoescape(["html"]),
        undefined=StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    environment.filters["score_color"] = _score_color
    return environment


def _revision_suffix(iteration_count: int) -> str:
    return f" (Rev #{iteration_count})" if iteration_count > 0 else ""


def team_subject(business_name: str, iteration_count: int, site_url: str | None) -> str:
    prefix = "🚀 Auto-Built" if site_url else "🔥 New Lead"
    return f"{prefix}: {business_name}{_revision_suffix(iteration_count)}"


def client_subject(business_name: str, site_url: str | None) -> str:
    if site_url:
        return f"Your site for {business_name} is live!"
    return f"Your brief for {business_name} is ready ✓"


def render_team_notice(
    submission: IntakeSubmission,
    enhancement: EnhancementOutput,
    review: QualityReviewOutput | None,
    iteration_count: int,
    site_url: str | None,
    eligibility: EligibilityOutput | None = None,
) -> str:
    template = template_environment().get_template("team_notice.html")
    return template.render(
        submission=submission,
        enhancement=enhancement,
        review=review,
        iteration_count=iteration_count,
        site_url=site_url,
        eligibility=eligibility,
        sent_at=datetime.now(UTC).strftime("%Y-%m-%d %H:%M UTC"),
    )


def render_client_confirmation(
    submission: IntakeSubmission,
    enhancement: EnhancementOutput,
    credits_remaining: int,
    site_url: str | None,
) -> str:
    template = template_environment().get_template("client_confirmation.html")
    return template.render(
        submission=submission,
        enhancement=enhancement,
        credits_remaining=credits_remaining,
        site_url=site_url,
    )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def _send_quietly(mailer: Mailer, email: OutboundEmail, label: str) -> bool:
    try:
        mailer.send(email)
    except Exception:
        logger.exception("%s email to %s failed", label, email.to)
        return False
    logger.info("%s email sent to %s", label, email.to)
    return True


def dispatch_notifications(
    mailer: Mailer,
    team_email: OutboundEmail,
    client_email: OutboundEmail | None,
) -> tuple[bool, bool]:
    """Send both emails concurrently and report ``(team_sent, client_sent)``.

    Each send settles independently; one failure never cancels the other.
    A missing client email reports ``False``.
    """
    with ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify") as pool:
        team_future = pool.submit(_send_quietly, mailer, team_email, "Team")
        client_future = pool.submit(_send_quietly, mailer, client_email, "Client") if client_email else None
        team_sent = team_future.result()
        client_sent = client_future.result() if client_future is not None else False
    return team_sent, client_sent
