from __future__ import annotations

import logging
from dataclasses import dataclass

from .models import DeliveryOutput, EdgeLabel, EnhancementOutput, SessionContext
from .notifications import (
    Mailer,
    OutboundEmail,
    client_subject,
    dispatch_notifications,
    render_client_confirmation,
    render_team_notice,
    team_subject,
)
from .state_store import CreditsExhaustedError, IntakeStateStore, credits_remaining

logger = logging.getLogger(__name__)

DEFAULT_CREDITS = 3


@dataclass(frozen=True)
class NotificationRoute:
    """A mailer plus the addresses it sends from and notifies."""

    mailer: Mailer
    notify_email: str
    from_email: str


def resolve_credits(
    store: IntakeStateStore | None,
    email: str,
    iteration_count: int,
    default_credits: int = DEFAULT_CREDITS,
) -> int:
    """Return the submitter's remaining credits, spending one on a revision.

    Credits are advisory: exhaustion and any ledger failure are logged and the
    delivery goes ahead.
    """
    if store is None or not email.strip():
        return default_credits
    try:
        if iteration_count > 0:
            try:
                return credits_remaining(store.deduct_credit(email))
            except CreditsExhaustedError:
                logger.warning("No credits remaining for %s, delivering anyway", email)
        return credits_remaining(store.get_or_create_credits(email))
    except Exception:
        logger.exception("Credit ledger unavailable for %s, reporting the default grant", email)
        return default_credits


def run_delivery(
    context: SessionContext,
    *,
    store: IntakeStateStore | None = None,
    route: NotificationRoute | None = None,
    default_credits: int = DEFAULT_CREDITS,
) -> DeliveryOutput:
    """Terminal stage: settle credits, then notify the team and the submitter.

    Raises:
        MissingStageOutputError: If no enhancement exists; the run then fails.
    """
    enhancement: EnhancementOutput = context.require("enhancement")
    submission = context.submission
    contact_email = submission.contact.email.strip()
    business_name = submission.business.business_name

    site_url = None
    if context.deployment is not None and context.deployment.edge is EdgeLabel.DEPLOYED:
        site_url = context.deployment.deployment_url or None

    remaining = resolve_credits(store, contact_email, context.iteration_count, default_credits)

    team_sent = False
    client_sent = False
    if route is None:
        logger.warning("Email delivery not configured, skipping notifications")
    else:
        team_email = OutboundEmail(
            sender=route.from_email,
            to=route.notify_email,
            subject=team_subject(business_name, context.iteration_count, site_url),
            html=render_team_notice(
                submission,
                enhancement,
                context.validation,
                context.iteration_count,
                site_url,
                context.sanity_check,
            ),
        )
        client_email = None
        if contact_email:
            client_email = OutboundEmail(
                sender=route.from_email,
                to=contact_email,
                subject=client_subject(business_name, site_url),
                html=render_client_confirmation(submission, enhancement, remaining, site_url),
            )
        team_sent, client_sent = dispatch_notifications(route.mailer, team_email, client_email)

    return DeliveryOutput(
        team_email_sent=team_sent,
        client_email_sent=client_sent,
        credits_remaining=remaining,
        site_url=site_url,
        edge=EdgeLabel.DONE,
    )
