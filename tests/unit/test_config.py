"""
Unit tests for configuration loading and validation.
"""

import pytest
import yaml

from huddle.lib.config import ConfigurationError, ConfigurationManager
from huddle.models.routing_state import ConversationMode
from huddle.models.team_config import PermissionMode


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "huddle.yaml"
    path.write_text(yaml.safe_dump({
        "logging": {"level": "DEBUG", "directory": str(tmp_path / "logs")},
        "team": {
            "team_id": "parsers",
            "conversation_mode": "sequential",
            "agents": [
                {"id": "a", "name": "Alpha", "provider": {"provider": "fake", "model": "m"}},
                {"id": "b", "name": "Beta", "skills": ["review"], "provider": {"provider": "fake", "model": "m"}}
            ],
            "budgets": {"max_tokens_per_session": 5000},
            "tool_approval": {"permission_mode": "deny"}
        }
    }))
    return path


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ConfigurationManager.ENV_MAPPINGS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("HUDDLE_CONFIG_PATH", raising=False)


class TestConfigurationManager:
    """Loading, defaults and environment overrides."""

    def test_load_team(self, config_file):
        config = ConfigurationManager(str(config_file)).load_config()

        assert config.team.team_id == "parsers"
        assert config.team.conversation_mode == ConversationMode.SEQUENTIAL
        assert [a.id for a in config.team.agents] == ["a", "b"]
        assert config.team.budgets.max_tokens_per_session == 5000
        assert config.team.tool_approval.permission_mode == PermissionMode.DENY
        assert config.logging.level == "DEBUG"
        assert config.config_file_path == str(config_file)

    def test_environment_overrides(self, config_file, monkeypatch, tmp_path):
        monkeypatch.setenv("HUDDLE_CONVERSATION_MODE", "tag_only")
        monkeypatch.setenv("HUDDLE_STORAGE_DIR", str(tmp_path / "store"))

        config = ConfigurationManager(str(config_file)).load_config()

        assert config.team.conversation_mode == ConversationMode.TAG_ONLY
        assert config.team.persistence.directory == str(tmp_path / "store")

    def test_config_path_from_environment(self, config_file, monkeypatch):
        monkeypatch.setenv("HUDDLE_CONFIG_PATH", str(config_file))

        assert ConfigurationManager().config_path == str(config_file)

    def test_missing_file_gets_default(self, tmp_path):
        path = tmp_path / "nested" / "huddle.yaml"

        config = ConfigurationManager(str(path)).load_config()

        assert path.exists()
        assert [a.id for a in config.team.agents] == ["architect", "builder"]
        assert config.team.default_agent_id == "architect"

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("team: [unclosed")

        with pytest.raises(ConfigurationError):
            ConfigurationManager(str(path)).load_config()

    def test_validation_failure(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"team": {"agents": [], "default_agent_id": "ghost"}}))

        with pytest.raises(ConfigurationError, match="validation failed"):
            ConfigurationManager(str(path)).load_config()

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- one\n- two\n")

        with pytest.raises(ConfigurationError):
            ConfigurationManager(str(path)).load_config()

    def test_get_config_before_load(self, config_file):
        with pytest.raises(ConfigurationError):
            ConfigurationManager(str(config_file)).get_config()


class TestValidationWarnings:
    """Non-fatal configuration warnings."""

    def test_role_based_agents_without_skills(self, config_file, monkeypatch):
        monkeypatch.setenv("HUDDLE_CONVERSATION_MODE", "role_based")
        manager = ConfigurationManager(str(config_file))
        manager.load_config()

        warnings = manager.validate_config()

        assert any("lacking skills: a" in w for w in warnings)

    def test_agent_ceiling_above_session_ceiling(self, tmp_path):
        path = tmp_path / "ceilings.yaml"
        path.write_text(yaml.safe_dump({
            "team": {
                "agents": [{"id": "a", "name": "A", "provider": {"provider": "fake", "model": "m"}}],
                "budgets": {"max_tokens_per_agent_per_session": 900, "max_tokens_per_session": 100}
            }
        }))
        manager = ConfigurationManager(str(path))
        manager.load_config()

        assert "Per-agent token ceiling exceeds the session ceiling" in manager.validate_config()
