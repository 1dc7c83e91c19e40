from importlib.metadata import version

from .delivery import NotificationRoute, run_delivery
from .deploy import DeployCredentials, DeployError, DeployResult, deploy_site, slugify_project_name
from .engine import GraphEnvironment, IntakeGraph, execute_graph
from .gate import evaluate_eligibility
from .llm import ChatModelGenerator, StageResponseError, TextGenerator
from .model_selection import RuntimeModelSelection, classify_stage, resolve_stage_models
from .models import (
    EDGE_TARGETS,
    AssessmentOutput,
    BuildOutput,
    BuildReviewOutput,
    CreditRecord,
    DeliveryOutput,
    DeployOutput,
    EdgeLabel,
    EligibilityOutput,
    EnhancementOutput,
    ExecutionState,
    GraphResult,
    IntakeSubmission,
    MissingStageOutputError,
    QualityReviewOutput,
    RunStatus,
    SessionContext,
    SiteSpec,
    StageId,
    Transition,
)
from .notifications import OutboundEmail, ResendMailer
from .service import refine_brief, resume_session, submit_intake
from .settings import RuntimeSettings, ServiceCredentials
from .state_store import (
    CreditsExhaustedError,
    FileKeyValueStore,
    InMemoryKeyValueStore,
    IntakeStateStore,
    StateStoreError,
    credits_remaining,
)
from .utils import render_plain_text


def get_version() -> str:
    try:
        return version("intake-graph")
    except Exception:
        return "0.0.0"


__all__ = [
    "AssessmentOutput",
    "BuildOutput",
    "BuildReviewOutput",
    "ChatModelGenerator",
    "CreditRecord",
    "CreditsExhaustedError",
    "DeliveryOutput",
    "DeployCredentials",
    "DeployError",
    "DeployOutput",
    "DeployResult",
    "EdgeLabel",
    "EligibilityOutput",
    "EnhancementOutput",
    "ExecutionState",
    "FileKeyValueStore",
    "GraphEnvironment",
    "GraphResult",
    "InMemoryKeyValueStore",
    "IntakeGraph",
    "IntakeStateStore",
    "IntakeSubmission",
    "MissingStageOutputError",
    "NotificationRoute",
    "OutboundEmail",
    "QualityReviewOutput",
    "ResendMailer",
    "RunStatus",
    "RuntimeModelSelection",
    "RuntimeSettings",
    "ServiceCredentials",
    "SessionContext",
    "SiteSpec",
    "StageId",
    "StageResponseError",
    "StateStoreError",
    "TextGenerator",
    "Transition",
    "EDGE_TARGETS",
    "classify_stage",
    "credits_remaining",
    "deploy_site",
    "evaluate_eligibility",
    "execute_graph",
    "refine_brief",
    "render_plain_text",
    "resolve_stage_models",
    "resume_session",
    "run_delivery",
    "slugify_project_name",
    "submit_intake",
]
