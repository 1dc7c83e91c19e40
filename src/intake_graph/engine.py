from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .delivery import NotificationRoute, run_delivery
from .deploy import DeployCredentials, Deployer, deploy_site, run_deploy_stage
from .gate import evaluate_eligibility
from .llm import ChatModelGenerator, TextGenerator
from .model_selection import RuntimeModelSelection
from .models import (
    EdgeLabel,
    ExecutionState,
    GraphResult,
    RunStatus,
    SessionContext,
    StageId,
    StageOutput,
    TERMINAL_STAGE,
    Transition,
    utc_now_iso,
)
from .notifications import ResendMailer
from .settings import RuntimeSettings, ServiceCredentials
from .stages import StageRunner
from .state_store import IntakeStateStore

logger = logging.getLogger(__name__)


class GraphRunState(TypedDict):
    execution: ExecutionState


@dataclass
class GraphEnvironment:
    """Collaborators for one run. Anything optional that is missing narrows the run instead of failing it."""

    generator: TextGenerator
    settings: RuntimeSettings = field(default_factory=RuntimeSettings)
    model_selection: RuntimeModelSelection | None = None
    store: IntakeStateStore | None = None
    notifications: NotificationRoute | None = None
    deploy_credentials: DeployCredentials | None = None
    deployer: Deployer = deploy_site

    def __post_init__(self) -> None:
        if self.model_selection is None:
            self.model_selection = RuntimeModelSelection.from_settings(self.settings)

    @classmethod
    def from_env(cls, *, repo_root: Path | None = None, use_store: bool = True) -> "GraphEnvironment":
        root = repo_root if repo_root is not None else Path.cwd()
        credentials = ServiceCredentials.from_env(root)
        settings = RuntimeSettings.from_env()

        notifications = None
        if credentials.can_email:
            notifications = NotificationRoute(
                mailer=ResendMailer(
                    credentials.resend_api_key or "",
                    endpoint=settings.email_endpoint,
                    timeout_seconds=settings.email_timeout_seconds,
                ),
                notify_email=credentials.notify_email or "",
                from_email=credentials.from_email or "",
            )
        deploy_credentials = None
        if credentials.can_deploy:
            deploy_credentials = DeployCredentials(
                api_token=credentials.cloudflare_api_token or "",
                account_id=credentials.cloudflare_account_id or "",
            )

        return cls(
            generator=ChatModelGenerator(
                timeout=settings.llm_timeout_seconds,
                max_retries=settings.llm_max_retries,
                repo_root=root,
            ),
            settings=settings,
            store=IntakeStateStore.from_settings(settings, root) if use_store else None,
            notifications=notifications,
            deploy_credentials=deploy_credentials,
        )


class IntakeGraph:
    """Eight-stage intake graph as a LangGraph ``StateGraph``.

    Each node runs one stage, records the transition selected by the output's
    edge, persists the execution state and jumps to the next stage with a
    ``Command``. The entry edge routes to ``execution.current_stage`` so a
    persisted run resumes where it stopped.
    """

    def __init__(self, environment: GraphEnvironment) -> None:
        self.environment = environment
        assert environment.model_selection is not None
        self.stages = StageRunner(
            generator=environment.generator,
            model_selection=environment.model_selection,
            settings=environment.settings,
        )
        self._handlers: dict[StageId, Callable[[SessionContext], StageOutput]] = {
            StageId.ASSESS: self._assess,
            StageId.GENERATE: self._generate,
            StageId.VALIDATE: self._validate,
            StageId.SANITY_CHECK: self._sanity_check,
            StageId.BUILD: self._build,
            StageId.BUILD_VALIDATE: self._build_validate,
            StageId.DEPLOY: self._deploy,
        }
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(GraphRunState)
        for stage in StageId:
            if stage is TERMINAL_STAGE:
                graph.add_node(stage.value, self._deliver_node)
            else:
                graph.add_node(stage.value, self._make_node(stage))
        graph.add_conditional_edges(
            START,
            self._entry_route,
            {stage.value: stage.value for stage in StageId},
        )
        return graph

    @staticmethod
    def _entry_route(state: GraphRunState) -> str:
        return state["execution"].current_stage.value

    # -- stage handlers ----------------------------------------------------

    def _assess(self, context: SessionContext) -> StageOutput:
        return self.stages.assess(context.plain_text)

    def _generate(self, context: SessionContext) -> StageOutput:
        # Only a successful generation counts, so a retried session starts the same attempt over.
        attempt = context.generate_attempts + 1
        output = self.stages.generate(
            context.plain_text,
            assessment=context.assessment,
            previous_review=context.validation,
            attempt=attempt,
        )
        context.generate_attempts = attempt
        return output

    def _validate(self, context: SessionContext) -> StageOutput:
        return self.stages.validate(context.require("enhancement"), generate_attempts=context.generate_attempts)

    def _sanity_check(self, context: SessionContext) -> StageOutput:
        return evaluate_eligibility(
            context.submission,
            context.require("enhancement"),
            context.require("validation"),
        )

    def _build(self, context: SessionContext) -> StageOutput:
        return self.stages.build(context.submission, context.require("enhancement"))

    def _build_validate(self, context: SessionContext) -> StageOutput:
        return self.stages.build_validate(
            context.require("build"),
            context.require("enhancement"),
            context.submission.style,
        )

    def _deploy(self, context: SessionContext) -> StageOutput:
        return run_deploy_stage(
            context.submission.business.business_name,
            context.require("build").html,
            self.environment.deploy_credentials,
            deployer=self.environment.deployer,
            timeout_seconds=self.environment.settings.deploy_timeout_seconds,
        )

    # -- nodes -------------------------------------------------------------

    def _make_node(self, stage: StageId) -> Callable[[GraphRunState], Command[str]]:
        handler = self._handlers[stage]

        def node(state: GraphRunState) -> Command[str]:
            execution = state["execution"]
            started = time.monotonic()
            output = handler(execution.context)
            execution.context.apply_output(stage, output)
            next_stage = output.next_stage
            self._record(execution, stage, next_stage, output.edge, started)
            execution.current_stage = next_stage
            self._persist(execution)
            return Command(goto=next_stage.value, update={"execution": execution})

        node.__name__ = f"{stage.value}_node"
        return node

    def _deliver_node(self, state: GraphRunState) -> Command[str]:
        execution = state["execution"]
        started = time.monotonic()
        environment = self.environment
        output = run_delivery(
            execution.context,
            store=environment.store,
            route=environment.notifications,
            default_credits=environment.settings.credits_included,
        )
        execution.context.apply_output(TERMINAL_STAGE, output)
        self._record(execution, TERMINAL_STAGE, TERMINAL_STAGE, EdgeLabel.DONE, started)
        execution.status = RunStatus.COMPLETED
        self._persist(execution)
        return Command(goto=END, update={"execution": execution})

    @staticmethod
    def _record(
        execution: ExecutionState,
        from_stage: StageId,
        to_stage: StageId,
        edge: EdgeLabel,
        started: float,
    ) -> None:
        duration_ms = max(0, int((time.monotonic() - started) * 1000))
        execution.history.append(
            Transition(
                from_stage=from_stage,
                to_stage=to_stage,
                edge=edge,
                timestamp=utc_now_iso(),
                duration_ms=duration_ms,
            )
        )
        logger.info(
            "Session %s: %s -[%s]-> %s (%d ms)",
            execution.session_id,
            from_stage.value,
            edge.value,
            to_stage.value,
            duration_ms,
        )

    def _persist(self, execution: ExecutionState) -> None:
        if self.environment.store is not None:
            self.environment.store.save_session(execution)

    # -- entry -------------------------------------------------------------

    def run(self, execution: ExecutionState) -> GraphResult:
        if execution.status is not RunStatus.RUNNING:
            raise ValueError(
                f"Session {execution.session_id} has status {execution.status.value}; only running sessions execute"
            )
        logger.info("Session %s: starting at %s", execution.session_id, execution.current_stage.value)
        try:
            self.graph.invoke(
                {"execution": execution},
                config={"recursion_limit": self.environment.settings.recursion_limit},
            )
        except Exception as exc:
            execution.status = RunStatus.FAILED
            execution.error = str(exc) or type(exc).__name__
            logger.error(
                "Session %s failed at %s: %s",
                execution.session_id,
                execution.current_stage.value,
                execution.error,
            )
            try:
                self._persist(execution)
            except Exception:
                logger.exception("Failed to persist failed session %s", execution.session_id)
            raise
        return execution.to_result()


def execute_graph(execution: ExecutionState, environment: GraphEnvironment) -> GraphResult:
    """Drive ``execution`` to a terminal status and return the result.

    Raises:
        ValueError: If the execution is not running.
        Exception: Whatever a fatal stage raised, after the failed state is persisted.
    """
    return IntakeGraph(environment).run(execution)
