"""Tests for configuration loading."""

import os

import pytest
from pydantic import ValidationError

from agent_pipeline.core.config import (
    CLIConfig,
    FrameworkConfig,
    _expand_env_vars,
    clear_config_cache,
    load_config,
)


@pytest.fixture(autouse=True)
def fresh_cache():
    clear_config_cache()
    yield
    clear_config_cache()


class TestLoadConfig:

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")

        assert config.execution.mode == "auto"
        assert config.cli.protocol == "stream_json"
        assert config.cli.idle_timeout == 300.0
        assert config.scheduler.fallback_recheck_seconds == 900.0
        assert config.scheduler.usage_file is None
        assert config.scheduler.usage_command == ["codex", "app-server"]

    def test_yaml_sections(self, tmp_path):
        path = tmp_path / "agent-pipeline.yaml"
        path.write_text(
            "execution:\n"
            "  mode: cli\n"
            "  auth_lookup_timeout: 2.5\n"
            "cli:\n"
            "  protocol: text\n"
            "  startup_timeout: 0\n"
            "  extra_args: ['--dangerously-skip-permissions']\n"
            "pipeline:\n"
            f"  memory_dir: {tmp_path / 'memory'}\n"
        )

        config = load_config(path)

        assert config.execution.mode == "cli"
        assert config.execution.auth_lookup_timeout == 2.5
        assert config.cli.protocol == "text"
        assert config.cli.startup_timeout == 0
        assert config.cli.extra_args == ["--dangerously-skip-permissions"]
        assert config.pipeline.memory_dir == tmp_path / "memory"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_config(path).execution.mode == "auto"

    def test_env_var_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_PIPELINE_KEY", "sk-ant-from-env")
        path = tmp_path / "config.yaml"
        path.write_text("api:\n  api_key: ${TEST_PIPELINE_KEY}\n")

        assert load_config(path).api.api_key == "sk-ant-from-env"

    def test_cached_until_file_changes(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("cli:\n  max_turns: 5\n")

        first = load_config(path)
        assert load_config(path) is first

        path.write_text("cli:\n  max_turns: 9\n")
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 10))

        assert load_config(path).cli.max_turns == 9

    def test_invalid_values_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("execution:\n  mode: telepathy\n")

        with pytest.raises(ValidationError):
            load_config(path)


class TestValidation:

    def test_negative_timeouts(self):
        with pytest.raises(ValidationError):
            CLIConfig(idle_timeout=-1)

    def test_lookup_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            FrameworkConfig(execution={"auth_lookup_timeout": 0})

    def test_api_base_scheme(self):
        with pytest.raises(ValidationError):
            FrameworkConfig(api={"api_base": "localhost:4000"})
        assert FrameworkConfig(api={"api_base": "http://localhost:4000"}).api.api_base == "http://localhost:4000"


class TestExpandEnvVars:

    def test_nested(self, monkeypatch):
        monkeypatch.setenv("TEST_PIPELINE_A", "a")

        data = {"x": ["${TEST_PIPELINE_A}", "plain"], "y": {"z": "${TEST_PIPELINE_A}"}, "n": 3}

        assert _expand_env_vars(data) == {"x": ["a", "plain"], "y": {"z": "a"}, "n": 3}

    def test_unset_variable_kept_literally(self, monkeypatch):
        monkeypatch.delenv("TEST_PIPELINE_MISSING", raising=False)

        assert _expand_env_vars({"k": "${TEST_PIPELINE_MISSING}"}) == {"k": "${TEST_PIPELINE_MISSING}"}
