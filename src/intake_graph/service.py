"""Entry points used by the web layer and the CLI."""

from __future__ import annotations

import logging

from .engine import GraphEnvironment, execute_graph
from .models import EnhancementOutput, ExecutionState, GraphResult, IntakeSubmission, RunStatus, SessionContext
from .stages import StageRunner
from .utils import new_session_id

logger = logging.getLogger(__name__)


def submit_intake(
    submission: IntakeSubmission,
    plain_text: str,
    iteration_count: int = 0,
    environment: GraphEnvironment | None = None,
    session_id: str | None = None,
) -> GraphResult:
    """Run a new submission through the graph.

    A fatal stage failure does not raise: the returned result carries
    ``status=failed``, the error message and the history recorded so far.

    Raises:
        ValueError: If the brief is blank or ``iteration_count`` is negative.
    """
    if not plain_text.strip():
        raise ValueError("plain_text must be a non-empty brief")
    if iteration_count < 0:
        raise ValueError(f"iteration_count must be >= 0, got: {iteration_count}")

    env = environment if environment is not None else GraphEnvironment.from_env()
    context = SessionContext(
        submission=submission,
        plain_text=plain_text.strip(),
        iteration_count=iteration_count,
    )
    sid = session_id or new_session_id()
    if env.store is not None:
        execution = env.store.create_session(sid, context)
        env.store.save_session(execution)
    else:
        execution = ExecutionState(session_id=sid, context=context)
    logger.info(
        "Accepted submission for %r as session %s (iteration %d)",
        submission.business.business_name,
        sid,
        iteration_count,
    )
    return _run(execution, env)


def resume_session(
    session_id: str,
    environment: GraphEnvironment,
    *,
    retry_failed: bool = False,
) -> GraphResult:
    """Continue a persisted session from the stage it stopped at.

    Completed sessions return their stored result. Failed sessions are only
    re-entered with ``retry_failed=True``, which resets the status and clears
    the error; the failed stage then runs again.

    Raises:
        ValueError: If no store is configured or the session does not exist.
    """
    if environment.store is None:
        raise ValueError("Resuming a session requires a state store")
    execution = environment.store.load_session(session_id)
    if execution is None:
        raise ValueError(f"Unknown or expired session: {session_id}")
    if execution.status is RunStatus.COMPLETED:
        return execution.to_result()
    if execution.status is RunStatus.FAILED:
        if not retry_failed:
            return execution.to_result()
        logger.info("Retrying failed session %s at %s", session_id, execution.current_stage.value)
        execution.status = RunStatus.RUNNING
        execution.error = None
        environment.store.save_session(execution)
    return _run(execution, environment)


def refine_brief(plain_text: str, environment: GraphEnvironment | None = None) -> EnhancementOutput:
    """One-shot enhancement of a brief with the generate stage, without a session."""
    if not plain_text.strip():
        raise ValueError("plain_text must be a non-empty brief")
    env = environment if environment is not None else GraphEnvironment.from_env(use_store=False)
    assert env.model_selection is not None
    runner = StageRunner(generator=env.generator, model_selection=env.model_selection, settings=env.settings)
    return runner.generate(plain_text.strip(), assessment=None, previous_review=None, attempt=1)


def _run(execution: ExecutionState, environment: GraphEnvironment) -> GraphResult:
    try:
        return execute_graph(execution, environment)
    except Exception:
        logger.exception("Session %s failed", execution.session_id)
        return execution.to_result()
