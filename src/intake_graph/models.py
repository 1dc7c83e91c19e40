from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Mapping

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class MissingStageOutputError(RuntimeError):
    """Raised when a stage runs before the predecessor output it depends on exists."""


class WireModel(BaseModel):
    """Base for every model that crosses the web, generation, or storage boundary.

    Fields are snake_case in Python and camelCase on the wire; both spellings
    are accepted on input.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Intake submission
# ---------------------------------------------------------------------------

class BusinessInfo(WireModel):
    business_name: str = ""
    business_type: str = ""
    industry: str = ""
    website: str = ""


class ProjectDescription(WireModel):
    description: str = ""
    goals: str = ""
    call_to_action: str = ""
    content: str = ""
    image_notes: str = ""


class StylePreferences(WireModel):
    style_preset: str = ""
    primary_color: str = ""
    secondary_color: str = ""
    style_notes: str = ""
    inspiration_urls: str = ""


class ContactInfo(WireModel):
    name: str = ""
    email: str = ""
    phone: str = ""
    preferred_contact: str = ""
    additional_notes: str = ""


class IntakeSubmission(WireModel):
    business: BusinessInfo = Field(default_factory=BusinessInfo)
    project: ProjectDescription = Field(default_factory=ProjectDescription)
    style: StylePreferences = Field(default_factory=StylePreferences)
    contact: ContactInfo = Field(default_factory=ContactInfo)


class SiteSection(WireModel):
    section_name: str
    purpose: str = ""
    suggested_content: str = ""


class SiteSpec(WireModel):
    headline: str = ""
    subheadline: str = ""
    seo_description: str = ""
    sections: list[SiteSection] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Graph topology
# ---------------------------------------------------------------------------

class StageId(str, Enum):
    ASSESS = "assess"
    GENERATE = "generate"
    VALIDATE = "validate"
    SANITY_CHECK = "sanity_check"
    BUILD = "build"
    BUILD_VALIDATE = "build_validate"
    DEPLOY = "deploy"
    DELIVER = "deliver"


class EdgeLabel(str, Enum):
    PROCEED = "proceed"
    GENERATED = "generated"
    PASSES = "passes"
    NEEDS_REVISION = "needs_revision"
    MAX_RETRIES = "max_retries"
    AUTO_BUILD = "auto_build"
    SKIP_BUILD = "skip_build"
    BUILT = "built"
    BUILD_FAILED = "build_failed"
    HTML_PASSES = "html_passes"
    HTML_FAILS = "html_fails"
    DEPLOYED = "deployed"
    DEPLOY_FAILED = "deploy_failed"
    DONE = "done"


TERMINAL_STAGE = StageId.DELIVER

# Every edge names exactly one destination.
EDGE_TARGETS: Mapping[EdgeLabel, StageId] = MappingProxyType(
    {
        EdgeLabel.PROCEED: StageId.GENERATE,
        EdgeLabel.GENERATED: StageId.VALIDATE,
        EdgeLabel.PASSES: StageId.SANITY_CHECK,
        EdgeLabel.NEEDS_REVISION: StageId.GENERATE,
        EdgeLabel.MAX_RETRIES: StageId.SANITY_CHECK,
        EdgeLabel.AUTO_BUILD: StageId.BUILD,
        EdgeLabel.SKIP_BUILD: StageId.DELIVER,
        EdgeLabel.BUILT: StageId.BUILD_VALIDATE,
        EdgeLabel.BUILD_FAILED: StageId.DELIVER,
        EdgeLabel.HTML_PASSES: StageId.DEPLOY,
        EdgeLabel.HTML_FAILS: StageId.DELIVER,
        EdgeLabel.DEPLOYED: StageId.DELIVER,
        EdgeLabel.DEPLOY_FAILED: StageId.DELIVER,
        EdgeLabel.DONE: StageId.DELIVER,
    }
)


# ---------------------------------------------------------------------------
# Stage outputs
# ---------------------------------------------------------------------------

class StageOutput(WireModel):
    """A stage result. ``edge`` names the transition the result selects."""

    allowed_edges: ClassVar[frozenset[EdgeLabel]] = frozenset()

    edge: EdgeLabel

    @model_validator(mode="after")
    def _check_edge(self) -> "StageOutput":
        if self.edge not in self.allowed_edges:
            allowed = ", ".join(sorted(edge.value for edge in self.allowed_edges))
            raise ValueError(f"{type(self).__name__} cannot carry edge '{self.edge.value}' (allowed: {allowed})")
        return self

    @property
    def next_stage(self) -> StageId:
        return EDGE_TARGETS[self.edge]


class AssessmentOutput(StageOutput):
    allowed_edges: ClassVar[frozenset[EdgeLabel]] = frozenset({EdgeLabel.PROCEED})

    quality_score: float = Field(ge=0, le=10)
    missing_elements: list[str] = Field(default_factory=list)
    quality_notes: str = ""
    edge: EdgeLabel = EdgeLabel.PROCEED


class EnhancementOutput(StageOutput):
    allowed_edges: ClassVar[frozenset[EdgeLabel]] = frozenset({EdgeLabel.GENERATED})

    refined_brief: str
    site_spec: SiteSpec
    edge: EdgeLabel = EdgeLabel.GENERATED


class QualityScores(WireModel):
    clarity: float = Field(ge=0, le=10)
    completeness: float = Field(ge=0, le=10)
    cta_strength: float = Field(ge=0, le=10)
    section_flow: float = Field(ge=0, le=10)

    def mean(self) -> float:
        return (self.clarity + self.completeness + self.cta_strength + self.section_flow) / 4


class QualityReviewOutput(StageOutput):
    allowed_edges: ClassVar[frozenset[EdgeLabel]] = frozenset(
        {EdgeLabel.PASSES, EdgeLabel.NEEDS_REVISION, EdgeLabel.MAX_RETRIES}
    )

    scores: QualityScores
    overall_score: float = 0.0
    critique: str = ""
    suggestions: list[str] = Field(default_factory=list)
    edge: EdgeLabel = EdgeLabel.PASSES


class EligibilityOutput(StageOutput):
    allowed_edges: ClassVar[frozenset[EdgeLabel]] = frozenset({EdgeLabel.AUTO_BUILD, EdgeLabel.SKIP_BUILD})

    qualifies: bool
    reasons: list[str] = Field(default_factory=list)
    edge: EdgeLabel


class BuildOutput(StageOutput):
    allowed_edges: ClassVar[frozenset[EdgeLabel]] = frozenset({EdgeLabel.BUILT, EdgeLabel.BUILD_FAILED})

    html: str = ""
    build_notes: str = ""
    edge: EdgeLabel = EdgeLabel.BUILT


class BuildScores(WireModel):
    structural_integrity: float = Field(ge=0, le=10)
    responsiveness: float = Field(ge=0, le=10)
    accessibility: float = Field(ge=0, le=10)
    brand_alignment: float = Field(ge=0, le=10)

    def mean(self) -> float:
        return (self.structural_integrity + self.responsiveness + self.accessibility + self.brand_alignment) / 4


class BuildReviewOutput(StageOutput):
    allowed_edges: ClassVar[frozenset[EdgeLabel]] = frozenset({EdgeLabel.HTML_PASSES, EdgeLabel.HTML_FAILS})

    scores: BuildScores
    overall_score: float = 0.0
    issues: list[str] = Field(default_factory=list)
    edge: EdgeLabel = EdgeLabel.HTML_FAILS


class DeployOutput(StageOutput):
    allowed_edges: ClassVar[frozenset[EdgeLabel]] = frozenset({EdgeLabel.DEPLOYED, EdgeLabel.DEPLOY_FAILED})

    project_name: str = ""
    deployment_url: str = ""
    deployment_id: str = ""
    error: str | None = None
    edge: EdgeLabel


class DeliveryOutput(StageOutput):
    allowed_edges: ClassVar[frozenset[EdgeLabel]] = frozenset({EdgeLabel.DONE})

    team_email_sent: bool = False
    client_email_sent: bool = False
    credits_remaining: int
    site_url: str | None = None
    edge: EdgeLabel = EdgeLabel.DONE


# ---------------------------------------------------------------------------
# Execution context and state
# ---------------------------------------------------------------------------

STAGE_SLOTS: Mapping[StageId, str] = MappingProxyType(
    {
        StageId.ASSESS: "assessment",
        StageId.GENERATE: "enhancement",
        StageId.VALIDATE: "validation",
        StageId.SANITY_CHECK: "sanity_check",
        StageId.BUILD: "build",
        StageId.BUILD_VALIDATE: "build_validation",
        StageId.DEPLOY: "deployment",
        StageId.DELIVER: "delivery",
    }
)


class SessionContext(WireModel):
    """Accumulator threaded through one run: the submission plus one slot per stage."""

    submission: IntakeSubmission
    plain_text: str

    assessment: AssessmentOutput | None = None
    enhancement: EnhancementOutput | None = None
    validation: QualityReviewOutput | None = None
    sanity_check: EligibilityOutput | None = None
    build: BuildOutput | None = None
    build_validation: BuildReviewOutput | None = None
    deployment: DeployOutput | None = None
    delivery: DeliveryOutput | None = None

    generate_attempts: int = Field(default=0, ge=0)
    iteration_count: int = Field(default=0, ge=0)

    def require(self, slot: str) -> Any:
        value = getattr(self, slot)
        if value is None:
            raise MissingStageOutputError(f"Stage output '{slot}' has not been produced yet")
        return value

    def apply_output(self, stage: StageId, output: StageOutput) -> None:
        slot = STAGE_SLOTS[stage]
        if not isinstance(output, STAGE_OUTPUT_TYPES[stage]):
            raise TypeError(f"Stage {stage.value} produced {type(output).__name__}, not a valid '{slot}' output")
        setattr(self, slot, output)


STAGE_OUTPUT_TYPES: Mapping[StageId, type[StageOutput]] = MappingProxyType(
    {
        StageId.ASSESS: AssessmentOutput,
        StageId.GENERATE: EnhancementOutput,
        StageId.VALIDATE: QualityReviewOutput,
        StageId.SANITY_CHECK: EligibilityOutput,
        StageId.BUILD: BuildOutput,
        StageId.BUILD_VALIDATE: BuildReviewOutput,
        StageId.DEPLOY: DeployOutput,
        StageId.DELIVER: DeliveryOutput,
    }
)


class Transition(WireModel):
    model_config = ConfigDict(frozen=True)

    from_stage: StageId = Field(alias="from")
    to_stage: StageId = Field(alias="to")
    edge: EdgeLabel
    timestamp: str
    duration_ms: int = Field(ge=0)


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionState(WireModel):
    session_id: str
    current_stage: StageId = StageId.ASSESS
    context: SessionContext
    history: list[Transition] = Field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    error: str | None = None

    def to_result(self) -> "GraphResult":
        context = self.context
        deployment_url = context.deployment.deployment_url if context.deployment is not None else ""
        return GraphResult(
            session_id=self.session_id,
            status=self.status,
            enhancement=context.enhancement,
            validation_score=context.validation.overall_score if context.validation is not None else None,
            credits_remaining=context.delivery.credits_remaining if context.delivery is not None else None,
            site_url=deployment_url or None,
            history=list(self.history),
            error=self.error,
        )


class GraphResult(WireModel):
    session_id: str
    status: RunStatus
    enhancement: EnhancementOutput | None = None
    validation_score: float | None = None
    credits_remaining: int | None = None
    site_url: str | None = None
    history: list[Transition] = Field(default_factory=list)
    error: str | None = None

    @property
    def edges(self) -> list[EdgeLabel]:
        return [transition.edge for transition in self.history]


class CreditRecord(WireModel):
    email: str
    total: int = Field(ge=0)
    used: int = Field(default=0, ge=0)
    plan: str = "standard"
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
