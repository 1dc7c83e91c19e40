"""Entry point for `python -m intake_graph` and the `intake-graph` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Sequence

from pydantic import ValidationError

from intake_graph.engine import GraphEnvironment
from intake_graph.models import IntakeSubmission, RunStatus
from intake_graph.service import refine_brief, resume_session, submit_intake
from intake_graph.utils import render_plain_text


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run an intake submission through the site-build graph")
    parser.add_argument(
        "--submission-file",
        type=Path,
        default=None,
        help="JSON intake submission, either bare or wrapped as {data, plainText, iterationCount}",
    )
    parser.add_argument("--brief-file", type=Path, default=None, help="Plain-text brief (default: rendered from the submission)")
    parser.add_argument("--iteration-count", type=int, default=None, help="Revision counter; > 0 spends a credit")
    parser.add_argument("--session-id", default=None, help="Session id to create, or to resume with --resume")
    parser.add_argument("--resume", action="store_true", help="Continue the persisted session named by --session-id")
    parser.add_argument("--retry-failed", action="store_true", help="With --resume, re-enter a failed session")
    parser.add_argument("--refine-only", action="store_true", help="Only run the one-shot brief enhancement")
    parser.add_argument("--no-store", action="store_true", help="Run without persisting sessions or credits")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def load_submission(path: Path) -> tuple[IntakeSubmission, str | None, int]:
    """Read a submission file. Returns the submission, any embedded brief and the revision counter."""
    if not path.is_file():
        raise FileNotFoundError(f"Submission file does not exist: {path}")
    payload: Any = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Submission file must contain a JSON object: {path}")
    if "data" in payload:
        plain_text = payload.get("plainText")
        iteration_count = payload.get("iterationCount", 0)
        if not isinstance(iteration_count, int):
            raise ValueError(f"iterationCount must be an integer, got: {iteration_count!r}")
        return (
            IntakeSubmission.model_validate(payload["data"]),
            plain_text if isinstance(plain_text, str) else None,
            iteration_count,
        )
    return IntakeSubmission.model_validate(payload), None, 0


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.resume and not args.session_id:
        logging.error("--resume requires --session-id")
        return 2

    try:
        environment = GraphEnvironment.from_env(use_store=not args.no_store)
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    if args.resume:
        try:
            result = resume_session(args.session_id, environment, retry_failed=args.retry_failed)
        except ValueError as exc:
            logging.error("Unable to resume session: %s", exc)
            return 1
        _print_json(result.to_wire())
        return 0 if result.status is RunStatus.COMPLETED else 1

    try:
        if args.submission_file is None:
            raise ValueError("--submission-file is required unless --resume is given")
        submission, embedded_brief, embedded_iteration = load_submission(args.submission_file)
        if args.brief_file is not None:
            plain_text = args.brief_file.read_text(encoding="utf-8")
        else:
            plain_text = embedded_brief or render_plain_text(submission)
        iteration_count = args.iteration_count if args.iteration_count is not None else embedded_iteration
    except (OSError, ValueError, ValidationError) as exc:
        logging.error("Unable to load submission input: %s", exc)
        return 1

    if args.refine_only:
        try:
            enhancement = refine_brief(plain_text, environment)
        except Exception as exc:  # noqa: BLE001
            logging.exception("Brief enhancement failed: %s", exc)
            return 1
        _print_json(enhancement.to_wire())
        return 0

    try:
        result = submit_intake(
            submission,
            plain_text,
            iteration_count=iteration_count,
            environment=environment,
            session_id=args.session_id,
        )
    except ValueError as exc:
        logging.error("Submission rejected: %s", exc)
        return 1
    _print_json(result.to_wire())
    return 0 if result.status is RunStatus.COMPLETED else 1


if __name__ == "__main__":
    raise SystemExit(main())
