from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from .models import StageId
from .settings import RuntimeSettings


VALID_TIERS: frozenset[str] = frozenset({"frontier", "efficient", "economy"})


@dataclass(frozen=True)
class StageClassification:
    """Precomputed routing decision for one generation-backed stage.

    Dimension scores run 1-5 (complexity, reasoning depth, domain specificity,
    ambiguity, stakes). An average up to 2.0 maps to ``economy``, up to 3.5 to
    ``efficient``, above that to ``frontier``; any dimension at 5 upgrades one
    tier unless a latency budget rules it out (see ``reasoning``).
    """

    tier: str
    confidence: float
    complexity: int
    reasoning_depth: int
    domain_specificity: int
    ambiguity: int
    stakes: int
    reasoning: str

    @property
    def average(self) -> float:
        total = self.complexity + self.reasoning_depth + self.domain_specificity + self.ambiguity + self.stakes
        return round(total / 5, 2)


STAGE_CLASSIFICATIONS: Mapping[StageId, StageClassification] = MappingProxyType(
    {
        StageId.ASSESS: StageClassification(
            tier="economy",
            confidence=0.95,
            complexity=2,
            reasoning_depth=2,
            domain_specificity=2,
            ambiguity=1,
            stakes=1,
            reasoning="Checklist scoring with a rigid JSON schema; advisory only, always routes forward.",
        ),
        StageId.GENERATE: StageClassification(
            tier="efficient",
            confidence=0.85,
            complexity=3,
            reasoning_depth=3,
            domain_specificity=3,
            ambiguity=3,
            stakes=4,
            reasoning="Polished prose plus a structured site spec in one call; client-visible output.",
        ),
        StageId.VALIDATE: StageClassification(
            tier="economy",
            confidence=0.80,
            complexity=2,
            reasoning_depth=3,
            domain_specificity=2,
            ambiguity=1,
            stakes=3,
            reasoning="Rubric scoring on four dimensions; the two-attempt circuit breaker bounds a wrong score.",
        ),
        StageId.BUILD: StageClassification(
            tier="efficient",
            confidence=0.85,
            complexity=5,
            reasoning_depth=4,
            domain_specificity=4,
            ambiguity=3,
            stakes=5,
            reasoning=(
                "Full responsive HTML+CSS page. Frontier latency does not fit the request deadline; "
                "build review and notification-only fallback bound the quality risk."
            ),
        ),
        StageId.BUILD_VALIDATE: StageClassification(
            tier="economy",
            confidence=0.80,
            complexity=3,
            reasoning_depth=3,
            domain_specificity=3,
            ambiguity=2,
            stakes=3,
            reasoning="Concrete HTML against an explicit rubric; failure falls back to notification-only delivery.",
        ),
    }
)

DEFAULT_CLASSIFICATION = StageClassification(
    tier="efficient",
    confidence=0.5,
    complexity=3,
    reasoning_depth=3,
    domain_specificity=3,
    ambiguity=3,
    stakes=3,
    reasoning="Unclassified stage; defaulting to the efficient tier.",
)


def classify_stage(stage: StageId | str) -> StageClassification:
    """Return the classification for ``stage``, or the default for stages without one."""
    try:
        key = StageId(stage)
    except ValueError:
        return DEFAULT_CLASSIFICATION
    return STAGE_CLASSIFICATIONS.get(key, DEFAULT_CLASSIFICATION)


@dataclass(frozen=True)
class RuntimeModelSelection:
    """Maps model tier names to concrete model identifiers for stage routing."""

    by_tier: Mapping[str, str]

    def __post_init__(self) -> None:
        """Validate that all required tiers are present and no tier maps to an empty model name."""
        missing = VALID_TIERS - set(self.by_tier)
        if missing:
            raise ValueError(
                f"RuntimeModelSelection missing required tiers: {', '.join(sorted(missing))}. "
                f"All of {sorted(VALID_TIERS)} must be configured."
            )
        for tier, model_name in self.by_tier.items():
            if not model_name or not model_name.strip():
                raise ValueError(f"RuntimeModelSelection tier '{tier}' has empty model name")

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "RuntimeModelSelection":
        return cls(
            by_tier=MappingProxyType(
                {
                    "frontier": settings.model_frontier,
                    "efficient": settings.model_efficient,
                    "economy": settings.model_economy,
                }
            )
        )

    def resolve(self, model_tier: str) -> str:
        """Resolve a model tier to a concrete model name.

        Raises:
            ValueError: If model_tier is not a recognized tier.
        """
        if model_tier not in self.by_tier:
            available = ", ".join(sorted(self.by_tier))
            raise ValueError(f"Unknown model tier '{model_tier}'. Valid tiers: {available}")
        return self.by_tier[model_tier]

    def model_for_stage(self, stage: StageId | str) -> str:
        return self.resolve(classify_stage(stage).tier)


def resolve_stage_models(model_selection: RuntimeModelSelection) -> dict[str, str]:
    """Return the concrete model id for every classified stage, keyed by stage name."""
    return {
        stage.value: model_selection.model_for_stage(stage)
        for stage in sorted(STAGE_CLASSIFICATIONS, key=lambda item: item.value)
    }
