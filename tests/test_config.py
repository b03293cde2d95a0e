from pathlib import Path

import pytest
from pydantic import ValidationError

from web_agent.config import AgentConfig, load_config


def test_load_config_reads_env_file(tmp_path: Path) -> None:
    env_path = tmp_path / ".env"
    env_path.write_text(
        "\n".join(
            [
                "WEB_AGENT_LLM__PROVIDER=mock",
                "WEB_AGENT_LLM__MODEL=test-model",
                "WEB_AGENT_BROWSER__HEADLESS=false",
                "WEB_AGENT_LOOP__MAX_STEPS=7",
            ]
        )
    )

    config = load_config(env_file=env_path)

    assert config.llm.provider == "mock"
    assert config.llm.model == "test-model"
    assert config.browser.headless is False
    assert config.loop.max_steps == 7


def test_load_config_prioritises_overrides(tmp_path: Path) -> None:
    env_path = tmp_path / ".env"
    env_path.write_text(
        "\n".join(
            [
                "WEB_AGENT_LLM__PROVIDER=mock",
                "WEB_AGENT_LLM__MODEL=env-model",
            ]
        )
    )

    config_path = tmp_path / "agent.yaml"
    config_path.write_text(
        "\n".join(
            [
                "browser:",
                "  connect_url_template: wss://remote/{session_id}",
                "  navigate_timeout_ms: 1000",
                "loop:",
                "  max_steps: 3",
            ]
        )
    )

    config = load_config(config_path, env_file=env_path, loop={"max_steps": 9})

    assert config.browser.connect_url_template == "wss://remote/{session_id}"
    assert config.browser.navigate_timeout_ms == 1000
    assert config.browser.action_timeout_ms == 60_000
    assert config.loop.max_steps == 9
    assert config.llm.provider == "mock"


def test_defaults_match_documented_timeouts(tmp_path: Path) -> None:
    config = load_config(env_file=tmp_path / "missing.env")

    assert config.browser.navigate_timeout_ms == 60_000
    assert config.browser.action_timeout_ms == 60_000
    assert config.loop.max_steps == 50
    assert config.live_view.provider == "none"


def test_max_steps_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        AgentConfig.model_validate({"loop": {"max_steps": 0}})
