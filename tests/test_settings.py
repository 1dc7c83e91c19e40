from __future__ import annotations

from pathlib import Path
from types import MappingProxyType

import pytest
from langchain_core.messages import AIMessage

from conftest import TEST_SETTINGS
from intake_graph import llm
from intake_graph.llm import ChatModelGenerator, ensure_openai_api_key, message_text
from intake_graph.model_selection import (
    DEFAULT_CLASSIFICATION,
    RuntimeModelSelection,
    classify_stage,
    resolve_stage_models,
)
from intake_graph.models import StageId
from intake_graph.settings import RuntimeSettings, ServiceCredentials

_INTAKE_VARS = [
    "INTAKE_MODEL_FRONTIER",
    "INTAKE_MODEL_EFFICIENT",
    "INTAKE_MODEL_ECONOMY",
    "INTAKE_LLM_TIMEOUT_SECONDS",
    "INTAKE_LLM_MAX_RETRIES",
    "INTAKE_DEFAULT_MAX_TOKENS",
    "INTAKE_BUILD_MAX_TOKENS",
    "INTAKE_DEPLOY_TIMEOUT_SECONDS",
    "INTAKE_SESSION_TTL_SECONDS",
    "INTAKE_CREDITS_INCLUDED",
    "INTAKE_STATE_STORE_ROOT",
    "INTAKE_RECURSION_LIMIT",
    "INTAKE_EMAIL_ENDPOINT",
    "INTAKE_EMAIL_TIMEOUT_SECONDS",
]

_CREDENTIAL_VARS = [
    "OPENAI_API_KEY",
    "RESEND_API_KEY",
    "NOTIFY_EMAIL",
    "FROM_EMAIL",
    "CLOUDFLARE_API_TOKEN",
    "CLOUDFLARE_ACCOUNT_ID",
]


def _clear_env(monkeypatch: pytest.MonkeyPatch, names: list[str]) -> None:
    # setenv first so anything a .env file loads later is removed on teardown
    for name in names:
        monkeypatch.setenv(name, "unset")
        monkeypatch.delenv(name)


def test_runtime_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch, _INTAKE_VARS)

    settings = RuntimeSettings.from_env()

    assert settings == RuntimeSettings()
    assert settings.default_max_tokens == 4096
    assert settings.build_max_tokens == 8192
    assert settings.credits_included == 3
    assert settings.session_ttl_seconds == 2_592_000


def test_runtime_settings_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch, _INTAKE_VARS)
    monkeypatch.setenv("INTAKE_MODEL_EFFICIENT", "  gpt-4.1-mini  ")
    monkeypatch.setenv("INTAKE_CREDITS_INCLUDED", "5")
    monkeypatch.setenv("INTAKE_DEPLOY_TIMEOUT_SECONDS", "90")

    settings = RuntimeSettings.from_env()

    assert settings.model_efficient == "gpt-4.1-mini"
    assert settings.credits_included == 5
    assert settings.deploy_timeout_seconds == 90


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("INTAKE_CREDITS_INCLUDED", "three", "must be an integer"),
        ("INTAKE_LLM_TIMEOUT_SECONDS", "0", "must be >= 1"),
        ("INTAKE_RECURSION_LIMIT", "5", "must be >= 20"),
        ("INTAKE_BUILD_MAX_TOKENS", "2048", "INTAKE_BUILD_MAX_TOKENS must be >= INTAKE_DEFAULT_MAX_TOKENS"),
        ("INTAKE_MODEL_ECONOMY", "   ", "INTAKE_MODEL_ECONOMY must be non-empty"),
        ("INTAKE_EMAIL_ENDPOINT", "ftp://mail", "must be an http"),
    ],
)
def test_runtime_settings_reject_invalid_values(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str
) -> None:
    _clear_env(monkeypatch, _INTAKE_VARS)
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        RuntimeSettings.from_env()


def test_state_store_path_resolves_relative_to_repo_root(tmp_path: Path) -> None:
    assert RuntimeSettings().state_store_path(tmp_path) == tmp_path / "state_store"
    assert RuntimeSettings(state_store_root="/var/intake").state_store_path(tmp_path) == Path("/var/intake")


def test_service_credentials_from_dotenv(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _clear_env(monkeypatch, _CREDENTIAL_VARS)
    (tmp_path / ".env").write_text(
        "RESEND_API_KEY=re_test\nNOTIFY_EMAIL=team@example.com\nFROM_EMAIL=noreply@example.com\n",
        encoding="utf-8",
    )

    credentials = ServiceCredentials.from_env(tmp_path)

    assert credentials.can_email is True
    assert credentials.can_deploy is False
    assert credentials.resend_api_key == "re_test"


def test_service_credentials_blank_values_are_missing(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _clear_env(monkeypatch, _CREDENTIAL_VARS)
    monkeypatch.setenv("CLOUDFLARE_API_TOKEN", "cf-token")
    monkeypatch.setenv("CLOUDFLARE_ACCOUNT_ID", "  ")

    credentials = ServiceCredentials.from_env(tmp_path)

    assert credentials.cloudflare_account_id is None
    assert credentials.can_deploy is False
    assert credentials.can_email is False


def test_stage_classifications_pick_cheapest_adequate_tier() -> None:
    assert classify_stage(StageId.ASSESS).tier == "economy"
    assert classify_stage("generate").tier == "efficient"
    assert classify_stage(StageId.VALIDATE).tier == "economy"
    assert classify_stage(StageId.BUILD).tier == "efficient"
    assert classify_stage(StageId.BUILD_VALIDATE).tier == "economy"
    assert classify_stage(StageId.BUILD).average == 4.2


def test_unclassified_stages_default_to_efficient() -> None:
    assert classify_stage("translate") is DEFAULT_CLASSIFICATION
    assert classify_stage(StageId.DELIVER) is DEFAULT_CLASSIFICATION
    assert DEFAULT_CLASSIFICATION.tier == "efficient"


def test_resolve_stage_models_uses_configured_names() -> None:
    selection = RuntimeModelSelection.from_settings(TEST_SETTINGS)

    assert resolve_stage_models(selection) == {
        "assess": "model-economy",
        "build": "model-efficient",
        "build_validate": "model-economy",
        "generate": "model-efficient",
        "validate": "model-economy",
    }


def test_model_selection_requires_every_tier() -> None:
    with pytest.raises(ValueError, match="missing required tiers: frontier"):
        RuntimeModelSelection(by_tier=MappingProxyType({"efficient": "a", "economy": "b"}))
    with pytest.raises(ValueError, match="tier 'economy' has empty model name"):
        RuntimeModelSelection(by_tier=MappingProxyType({"frontier": "a", "efficient": "b", "economy": " "}))


def test_model_selection_rejects_unknown_tier() -> None:
    with pytest.raises(ValueError, match="Unknown model tier 'premium'"):
        RuntimeModelSelection.from_settings(TEST_SETTINGS).resolve("premium")


def test_model_selection_follows_runtime_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch, _INTAKE_VARS)
    monkeypatch.setenv("INTAKE_MODEL_ECONOMY", "  tiny-model ")

    selection = RuntimeModelSelection.from_settings(RuntimeSettings.from_env())

    assert not hasattr(RuntimeModelSelection, "from_env")

    assert selection.model_for_stage(StageId.ASSESS) == "tiny-model"
    assert selection.model_for_stage(StageId.BUILD) == "gpt-4o-mini"


def test_missing_openai_key_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _clear_env(monkeypatch, ["OPENAI_API_KEY"])

    with pytest.raises(RuntimeError, match="OPENAI_API_KEY is required"):
        ensure_openai_api_key(tmp_path)


def test_chat_model_generator_caches_per_model_and_budget(monkeypatch: pytest.MonkeyPatch) -> None:
    built: list[dict] = []

    class _FakeChat:
        def __init__(self, name: str) -> None:
            self.name = name

        def invoke(self, prompt: str) -> AIMessage:
            return AIMessage(content=f"{self.name}:{prompt}")

    def _fake_get_chat_model(**kwargs) -> _FakeChat:
        built.append(kwargs)
        return _FakeChat(kwargs["model_name"])

    monkeypatch.setattr(llm, "get_chat_model", _fake_get_chat_model)
    generator = ChatModelGenerator(timeout=20, max_retries=1)

    assert generator.generate("a", model="m1", max_tokens=100) == "m1:a"
    assert generator.generate("b", model="m1", max_tokens=100) == "m1:b"
    assert generator.generate("c", model="m1", max_tokens=200) == "m1:c"

    assert [(kw["model_name"], kw["max_completion_tokens"]) for kw in built] == [("m1", 100), ("m1", 200)]
    assert built[0]["timeout"] == 20
    assert built[0]["max_retries"] == 1


def test_message_text_joins_text_blocks() -> None:
    message = AIMessage(content=[{"type": "text", "text": "{\"a\": "}, {"type": "image_url"}, "1}"])

    assert message_text(message) == "{\"a\": 1}"
    assert message_text("plain") == "plain"
