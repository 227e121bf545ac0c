from pathlib import Path

import pytest

from changegate.config_loader import ConfigError, load_config


def _write(project: Path, text: str) -> None:
    (project / ".changegate").mkdir(exist_ok=True)
    (project / ".changegate" / "config.yaml").write_text(text)


def test_defaults():
    config = load_config(env={})

    assert config.limits.max_review_retries == 2
    assert config.limits.max_schema_retries == 3
    assert config.limits.max_import_retries == 1
    assert config.pipeline.enable_import_validation is True
    assert config.pipeline.auto_install is False
    assert config.consent.filename == ".changegate-consent.json"
    assert config.consent.max_decisions == 100
    assert config.consent.non_interactive is False
    assert config.model_for("coder") == config.llm.model


def test_project_overrides_merge_deeply(tmp_path: Path):
    _write(tmp_path, "limits:\n  max_review_retries: 5\nrouting:\n  reviewer: openai/gpt-4o\n")

    config = load_config(tmp_path, env={})

    assert config.limits.max_review_retries == 5
    assert config.limits.max_import_retries == 1
    assert config.model_for("reviewer") == "openai/gpt-4o"
    assert config.model_for("planner") == config.llm.model


def test_environment_wins_over_project(tmp_path: Path):
    _write(tmp_path, "llm:\n  model: openai/from-file\n")

    config = load_config(tmp_path, env={"LLM_MODEL": "openai/from-env", "LLM_MAX_TOKENS": "2048"})

    assert config.llm.model == "openai/from-env"
    assert config.llm.max_tokens == 2048


@pytest.mark.parametrize("env", [{"CI": "true"}, {"CHANGEGATE_NON_INTERACTIVE": "1"}])
def test_non_interactive_from_environment(env):
    assert load_config(env=env).consent.non_interactive is True


def test_invalid_yaml(tmp_path: Path):
    _write(tmp_path, "limits: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(tmp_path, env={})


def test_invalid_values(tmp_path: Path):
    _write(tmp_path, "limits:\n  max_review_retries: -1\n")
    with pytest.raises(ConfigError):
        load_config(tmp_path, env={})


def test_invalid_env_integer():
    with pytest.raises(ConfigError):
        load_config(env={"LLM_MAX_TOKENS": "lots"})
