"""Tests for repo_intern/config/settings.py."""

from pathlib import Path

import pytest

from repo_intern.config.settings import InternSettings
from repo_intern.enums import ReviewPriority
from repo_intern.exceptions import ConfigurationError


class TestDefaults:
    def test_empty_configuration_is_usable(self):
        """Should build a complete configuration from defaults alone."""
        settings = InternSettings()

        assert settings.agent.command == "claude"
        assert settings.git.remote == "origin"
        assert "main" in settings.git.protected_branches
        assert settings.recovery.max_attempts == 3
        assert settings.review.min_priority == ReviewPriority.MEDIUM
        assert settings.queue.max_retries == 3
        assert settings.webhook.secret is None
        assert settings.output_dir == Path(".repo-intern/runs")

    def test_environment_override(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("REPO_INTERN_REVIEW__MAX_ITERATIONS", "2")
        monkeypatch.setenv("REPO_INTERN_WEBHOOK__SECRET", "from-env")

        settings = InternSettings()

        assert settings.review.max_iterations == 2
        assert settings.webhook.secret == "from-env"


class TestFromYaml:
    def test_load_sections(self, tmp_path: Path):
        config = tmp_path / "repo-intern.yaml"
        config.write_text(
            "git:\n"
            "  remote: upstream\n"
            "  protected_branches: [main, release]\n"
            "review:\n"
            "  enabled: true\n"
            "  min_priority: high\n"
        )

        settings = InternSettings.from_yaml(config)

        assert settings.git.remote == "upstream"
        assert settings.git.protected_branches == ["main", "release"]
        assert settings.review.enabled is True
        assert settings.review.min_priority == ReviewPriority.HIGH
        assert settings.agent.command == "claude"

    def test_empty_file(self, tmp_path: Path):
        config = tmp_path / "empty.yaml"
        config.write_text("")

        assert InternSettings.from_yaml(config).queue.max_retries == 3

    def test_env_interpolation(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("INTERN_TEST_SECRET", "hunter2")
        config = tmp_path / "config.yaml"
        config.write_text("webhook:\n  secret: ${INTERN_TEST_SECRET}\n  bot_name: ${INTERN_TEST_BOT:-intern}\n")

        settings = InternSettings.from_yaml(config)

        assert settings.webhook.secret == "hunter2"
        assert settings.webhook.bot_name == "intern"

    def test_missing_env_var(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("INTERN_TEST_UNSET", raising=False)
        config = tmp_path / "config.yaml"
        config.write_text("webhook:\n  secret: ${INTERN_TEST_UNSET}\n")

        with pytest.raises(ConfigurationError, match="INTERN_TEST_UNSET"):
            InternSettings.from_yaml(config)

    def test_comment_lines_are_not_interpolated(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        """Should ignore placeholders in YAML comments."""
        monkeypatch.delenv("INTERN_TEST_UNSET", raising=False)
        config = tmp_path / "config.yaml"
        config.write_text("# secret: ${INTERN_TEST_UNSET}\nagent:\n  max_turns: 10\n")

        assert InternSettings.from_yaml(config).agent.max_turns == 10

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="not found"):
            InternSettings.from_yaml(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path: Path):
        config = tmp_path / "bad.yaml"
        config.write_text("agent: [unclosed\n")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            InternSettings.from_yaml(config)

    def test_non_mapping_document(self, tmp_path: Path):
        config = tmp_path / "list.yaml"
        config.write_text("- one\n- two\n")

        with pytest.raises(ConfigurationError, match="YAML object"):
            InternSettings.from_yaml(config)

    @pytest.mark.parametrize(
        "content",
        [
            "review:\n  max_iterations: 0\n",
            "recovery:\n  max_attempts: 50\n",
            "review:\n  min_priority: urgent\n",
            "webhook:\n  port: 70000\n",
        ],
    )
    def test_invalid_values(self, tmp_path: Path, content: str):
        config = tmp_path / "config.yaml"
        config.write_text(content)

        with pytest.raises(ConfigurationError, match="Failed to validate"):
            InternSettings.from_yaml(config)


class TestLoad:
    def test_without_path_uses_defaults(self):
        assert InternSettings.load(None).worktree.install_dependencies is True

    def test_with_path_reads_file(self, tmp_path: Path):
        config = tmp_path / "config.yaml"
        config.write_text("worktree:\n  install_dependencies: false\n")

        assert InternSettings.load(config).worktree.install_dependencies is False
