from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    model_frontier: str = "gpt-4o"
    model_efficient: str = "gpt-4o-mini"
    model_economy: str = "gpt-4o-mini"
    llm_timeout_seconds: int = 50
    llm_max_retries: int = 0
    default_max_tokens: int = 4_096
    build_max_tokens: int = 8_192
    deploy_timeout_seconds: int = 30
    session_ttl_seconds: int = 30 * 24 * 60 * 60
    credits_included: int = 3
    state_store_root: str = "state_store"
    recursion_limit: int = 50
    email_endpoint: str = "https://api.resend.com/emails"
    email_timeout_seconds: int = 15

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            model_frontier=os.getenv("INTAKE_MODEL_FRONTIER", "gpt-4o"),
            model_efficient=os.getenv("INTAKE_MODEL_EFFICIENT", "gpt-4o-mini"),
            model_economy=os.getenv("INTAKE_MODEL_ECONOMY", "gpt-4o-mini"),
            llm_timeout_seconds=_get_env_int("INTAKE_LLM_TIMEOUT_SECONDS", default=50, minimum=1, maximum=600),
            llm_max_retries=_get_env_int("INTAKE_LLM_MAX_RETRIES", default=0, minimum=0, maximum=10),
            default_max_tokens=_get_env_int("INTAKE_DEFAULT_MAX_TOKENS", default=4_096, minimum=256),
            build_max_tokens=_get_env_int("INTAKE_BUILD_MAX_TOKENS", default=8_192, minimum=1_024),
            deploy_timeout_seconds=_get_env_int("INTAKE_DEPLOY_TIMEOUT_SECONDS", default=30, minimum=1, maximum=600),
            session_ttl_seconds=_get_env_int(
                "INTAKE_SESSION_TTL_SECONDS", default=30 * 24 * 60 * 60, minimum=60
            ),
            credits_included=_get_env_int("INTAKE_CREDITS_INCLUDED", default=3, minimum=0, maximum=1_000),
            state_store_root=os.getenv("INTAKE_STATE_STORE_ROOT", "state_store"),
            recursion_limit=_get_env_int("INTAKE_RECURSION_LIMIT", default=50, minimum=20, maximum=10_000),
            email_endpoint=os.getenv("INTAKE_EMAIL_ENDPOINT", "https://api.resend.com/emails"),
            email_timeout_seconds=_get_env_int("INTAKE_EMAIL_TIMEOUT_SECONDS", default=15, minimum=1, maximum=300),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model_frontier = self.model_frontier.strip()
        if not model_frontier:
            raise ValueError("INTAKE_MODEL_FRONTIER must be non-empty")
        model_efficient = self.model_efficient.strip()
        if not model_efficient:
            raise ValueError("INTAKE_MODEL_EFFICIENT must be non-empty")
        model_economy = self.model_economy.strip()
        if not model_economy:
            raise ValueError("INTAKE_MODEL_ECONOMY must be non-empty")

        if self.build_max_tokens < self.default_max_tokens:
            raise ValueError(
                "INTAKE_BUILD_MAX_TOKENS must be >= INTAKE_DEFAULT_MAX_TOKENS, "
                f"got: {self.build_max_tokens} < {self.default_max_tokens}"
            )
        if not self.state_store_root.strip():
            raise ValueError("INTAKE_STATE_STORE_ROOT must be non-empty")

        email_endpoint = self.email_endpoint.strip()
        if not email_endpoint.startswith(("https://", "http://")):
            raise ValueError(f"INTAKE_EMAIL_ENDPOINT must be an http(s) URL, got: {self.email_endpoint!r}")

        return RuntimeSettings(
            model_frontier=model_frontier,
            model_efficient=model_efficient,
            model_economy=model_economy,
            llm_timeout_seconds=self.llm_timeout_seconds,
            llm_max_retries=self.llm_max_retries,
            default_max_tokens=self.default_max_tokens,
            build_max_tokens=self.build_max_tokens,
            deploy_timeout_seconds=self.deploy_timeout_seconds,
            session_ttl_seconds=self.session_ttl_seconds,
            credits_included=self.credits_included,
            state_store_root=self.state_store_root,
            recursion_limit=self.recursion_limit,
            email_endpoint=email_endpoint,
            email_timeout_seconds=self.email_timeout_seconds,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


@dataclass(frozen=True)
class ServiceCredentials:
    """Credentials for the external collaborators. Every field is optional.

    Missing email or deploy credentials narrow the run (no notifications, no
    deployment) instead of failing it. Only the generation key is checked,
    and only when a generation call is actually made.
    """

    openai_api_key: str | None = None
    resend_api_key: str | None = None
    notify_email: str | None = None
    from_email: str | None = None
    cloudflare_api_token: str | None = None
    cloudflare_account_id: str | None = None

    @classmethod
    def from_env(cls, repo_root: Path | None = None) -> "ServiceCredentials":
        """Read credentials from the process environment, after loading ``.env`` if present."""
        env_path = (repo_root if repo_root is not None else Path.cwd()) / ".env"
        if env_path.is_file():
            load_dotenv(env_path)
        return cls(
            openai_api_key=_get_env_str("OPENAI_API_KEY"),
            resend_api_key=_get_env_str("RESEND_API_KEY"),
            notify_email=_get_env_str("NOTIFY_EMAIL"),
            from_email=_get_env_str("FROM_EMAIL"),
            cloudflare_api_token=_get_env_str("CLOUDFLARE_API_TOKEN"),
            cloudflare_account_id=_get_env_str("CLOUDFLARE_ACCOUNT_ID"),
        )

    @property
    def can_email(self) -> bool:
        return bool(self.resend_api_key and self.notify_email and self.from_email)

    @property
    def can_deploy(self) -> bool:
        return bool(self.cloudflare_api_token and self.cloudflare_account_id)


def _get_env_str(name: str) -> str | None:
    raw = os.getenv(name, "").strip()
    return raw or None


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
