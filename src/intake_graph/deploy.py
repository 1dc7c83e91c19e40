from __future__ import annotations

import logging
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .models import DeployOutput, EdgeLabel

logger = logging.getLogger(__name__)

MAX_PROJECT_NAME_LENGTH = 58
FALLBACK_PROJECT_NAME = "site"
DEFAULT_DEPLOY_TIMEOUT_SECONDS = 30

_NON_ALNUM_RUN = re.compile(r"[^a-z0-9]+")
_DEPLOYMENT_URL = re.compile(r"https://[^\s]+\.pages\.dev")
_DEPLOYMENT_ID = re.compile(r"https://([^.]+)\.")
_STDERR_EXCERPT_CHARS = 500


class DeployError(RuntimeError):
    """Raised when the hosting CLI cannot publish the page."""


@dataclass(frozen=True)
class DeployCredentials:
    api_token: str
    account_id: str

    def as_env(self) -> dict[str, str]:
        return {"CLOUDFLARE_API_TOKEN": self.api_token, "CLOUDFLARE_ACCOUNT_ID": self.account_id}


@dataclass(frozen=True)
class DeployResult:
    project_name: str
    deployment_url: str
    deployment_id: str


Deployer = Callable[[str, str, DeployCredentials, int], DeployResult]


def slugify_project_name(business_name: str) -> str:
    """Derive a hosting project name: lowercase ``[a-z0-9-]``, no edge hyphens, at most 58 chars.

    Hyphens are trimmed again after truncation so the result is a fixed point.
    """
    slug = _NON_ALNUM_RUN.sub("-", business_name.lower()).strip("-")
    slug = slug[:MAX_PROJECT_NAME_LENGTH].strip("-")
    return slug or FALLBACK_PROJECT_NAME


def wrangler_command(directory: Path, project_name: str) -> list[str]:
    return [
        "npx",
        "wrangler",
        "pages",
        "deploy",
        str(directory),
        f"--project-name={project_name}",
        "--branch=main",
        "--commit-dirty=true",
    ]


def deploy_site(
    business_name: str,
    html: str,
    credentials: DeployCredentials,
    timeout_seconds: int = DEFAULT_DEPLOY_TIMEOUT_SECONDS,
) -> DeployResult:
    """Publish ``html`` as ``index.html`` of a Pages project named after the business.

    Runs the wrangler CLI once. Credentials only reach the child process
    environment, never its arguments.

    Raises:
        DeployError: On non-zero exit, timeout, or a missing ``npx`` executable.
    """
    project_name = slugify_project_name(business_name)
    with tempfile.TemporaryDirectory(prefix="site-deploy-") as scratch:
        directory = Path(scratch)
        (directory / "index.html").write_text(html, encoding="utf-8")
        try:
            completed = subprocess.run(
                wrangler_command(directory, project_name),
                env={**os.environ, **credentials.as_env()},
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise DeployError(f"Wrangler deploy timed out after {timeout_seconds}s") from exc
        except FileNotFoundError as exc:
            raise DeployError("Wrangler deploy failed: npx executable not found") from exc

    if completed.returncode != 0:
        raise DeployError(
            f"Wrangler deploy failed with exit code {completed.returncode}\n"
            f"stderr: {completed.stderr[:_STDERR_EXCERPT_CHARS]}"
        )

    # Progress goes to stderr, the deployment URL to stdout.
    combined = f"{completed.stdout}\n{completed.stderr}"
    return parse_deploy_output(project_name, combined)


def parse_deploy_output(project_name: str, output: str) -> DeployResult:
    url_match = _DEPLOYMENT_URL.search(output)
    deployment_id = ""
    if url_match is None:
        logger.warning("Wrangler output for project %s carried no deployment URL", project_name)
    else:
        id_match = _DEPLOYMENT_ID.match(url_match.group(0))
        deployment_id = id_match.group(1) if id_match else ""
    return DeployResult(
        project_name=project_name,
        deployment_url=f"https://{project_name}.pages.dev",
        deployment_id=deployment_id,
    )


def run_deploy_stage(
    business_name: str,
    html: str,
    credentials: DeployCredentials | None,
    *,
    deployer: Deployer = deploy_site,
    timeout_seconds: int = DEFAULT_DEPLOY_TIMEOUT_SECONDS,
) -> DeployOutput:
    """Deploy stage handler. Missing credentials and deploy errors both route to ``deploy_failed``."""
    if credentials is None:
        logger.warning("Deploy credentials not configured, skipping deployment")
        return DeployOutput(error="Deploy credentials not configured", edge=EdgeLabel.DEPLOY_FAILED)
    try:
        result = deployer(business_name, html, credentials, timeout_seconds)
    except Exception as exc:
        logger.error("Deploy failed, falling back to notification-only delivery: %s", exc)
        return DeployOutput(error=str(exc), edge=EdgeLabel.DEPLOY_FAILED)
    logger.info("Deployed project %s to %s", result.project_name, result.deployment_url)
    return DeployOutput(
        project_name=result.project_name,
        deployment_url=result.deployment_url,
        deployment_id=result.deployment_id,
        edge=EdgeLabel.DEPLOYED,
    )
