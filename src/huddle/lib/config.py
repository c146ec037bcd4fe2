"""
Configuration management and validation for huddle.

Loads the YAML configuration file, merges environment overrides and
validates the result with pydantic before the orchestrator starts.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from huddle.models.routing_state import ConversationMode
from huddle.models.team_config import PermissionMode, TeamConfig


class ObservabilityConfig(BaseModel):
    """Configuration for observability settings."""
    enabled: bool = False
    service_name: str = "huddle"
    service_version: str = "0.1.0"
    environment: str = "development"
    otlp_endpoint: str = "http://localhost:4317"
    trace_sampling_ratio: float = Field(default=1.0, ge=0.0, le=1.0)
    export_timeout: int = Field(default=30, gt=0)
    resource_attributes: Dict[str, str] = Field(default_factory=dict)


class LoggingConfig(BaseModel):
    """Configuration for logging settings."""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    format: str = Field(default="structured", pattern="^(structured|simple)$")
    directory: str = "~/.huddle/logs"
    max_file_size: int = Field(default=10 * 1024 * 1024, gt=0)
    backup_count: int = Field(default=5, ge=1)
    include_trace: bool = True
    environment: str = "development"


class HuddleConfig(BaseModel):
    """Main huddle configuration."""
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    team: TeamConfig = Field(default_factory=TeamConfig)
    config_file_path: Optional[str] = None


class ConfigurationError(Exception):
    """Exception raised for configuration-related errors."""
    pass


class ConfigurationManager:
    """Manages huddle configuration loading and validation."""

    ENV_MAPPINGS = {
        "HUDDLE_LOG_LEVEL": ["logging", "level"],
        "HUDDLE_STORAGE_DIR": ["team", "persistence", "directory"],
        "HUDDLE_CONVERSATION_MODE": ["team", "conversation_mode"],
        "OTEL_EXPORTER_OTLP_ENDPOINT": ["observability", "otlp_endpoint"]
    }

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._get_default_config_path()
        self.config: Optional[HuddleConfig] = None

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path."""
        if "HUDDLE_CONFIG_PATH" in os.environ:
            return os.environ["HUDDLE_CONFIG_PATH"]

        candidates = [
            "./huddle.yaml",
            "./config/huddle.yaml",
            "~/.huddle/config.yaml"
        ]

        for candidate in candidates:
            path = Path(candidate).expanduser()
            if path.exists():
                return str(path)

        return "~/.huddle/config.yaml"

    def load_config(self, config_path: Optional[str] = None) -> HuddleConfig:
        """Load and validate configuration from file."""
        if config_path:
            self.config_path = config_path

        config_file = Path(self.config_path).expanduser()

        if not config_file.exists():
            self.write_default_config(config_file)

        try:
            with open(config_file, 'r') as f:
                config_data = yaml.safe_load(f) or {}

            if not isinstance(config_data, dict):
                raise ConfigurationError(f"Config file {config_file} must contain a mapping")

            config_data = self._merge_environment_config(config_data)

            self.config = HuddleConfig(**config_data)
            self.config.config_file_path = str(config_file)

            return self.config

        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {config_file}: {e}") from e
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Error reading configuration {config_file}: {e}") from e

    @staticmethod
    def default_config_data() -> Dict[str, Any]:
        """Starter configuration with a two-agent team."""
        return {
            "observability": {
                "enabled": False,
                "service_name": "huddle",
                "otlp_endpoint": os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
            },
            "logging": {
                "level": os.getenv("HUDDLE_LOG_LEVEL", "INFO"),
                "directory": "~/.huddle/logs"
            },
            "team": {
                "team_id": "default",
                "mission": "Pair on software tasks",
                "conversation_mode": ConversationMode.FREE_CHAT.value,
                "default_agent_id": "architect",
                "agents": [
                    {
                        "id": "architect",
                        "name": "Architect",
                        "role": "Designs solutions",
                        "skills": ["design", "architecture", "review"],
                        "aliases": ["arch"],
                        "provider": {"provider": "anthropic", "model": "claude-sonnet"}
                    },
                    {
                        "id": "builder",
                        "name": "Builder",
                        "role": "Writes and tests code",
                        "skills": ["code", "testing", "debugging"],
                        "aliases": ["dev"],
                        "provider": {"provider": "openai", "model": "gpt-4o"}
                    }
                ],
                "budgets": {
                    "max_tokens_per_agent_per_session": None,
                    "max_tokens_per_session": None,
                    "max_invocations_per_minute": None
                },
                "tool_approval": {"permission_mode": PermissionMode.PROMPT.value},
                "compaction": {"enabled": True, "checkpoint_interval": 20},
                "persistence": {"enabled": True, "directory": "~/.huddle/sessions"},
                "supervision": {"max_rounds": 5, "parallel_fan_out": True}
            }
        }

    def write_default_config(self, config_file: Path) -> None:
        """Create a default configuration file."""
        config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(config_file, 'w') as f:
            yaml.safe_dump(self.default_config_data(), f, default_flow_style=False, indent=2, sort_keys=False)

    def _merge_environment_config(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Merge configuration with environment variables."""
        for env_var, config_path in self.ENV_MAPPINGS.items():
            if env_var in os.environ:
                current = config_data
                for key in config_path[:-1]:
                    current = current.setdefault(key, {})
                current[config_path[-1]] = os.environ[env_var]

        return config_data

    def get_config(self) -> HuddleConfig:
        """Get the loaded configuration."""
        if self.config is None:
            raise ConfigurationError("Configuration not loaded. Call load_config() first.")
        return self.config

    def validate_config(self) -> List[str]:
        """Validate the current configuration and return any warnings."""
        warnings = []
        config = self.get_config()
        team = config.team

        if not team.agents:
            warnings.append("Team has no agents; every message will route to nobody")

        if team.conversation_mode == ConversationMode.ROLE_BASED:
            unskilled = [a.id for a in team.agents if not a.skills]
            if unskilled:
                warnings.append(f"Role-based routing with agents lacking skills: {', '.join(unskilled)}")

        if team.tool_approval.permission_mode == PermissionMode.AUTO and not team.tool_approval.dangerous:
            warnings.append("Auto permission mode with no dangerous-tier patterns approves every tool")

        if not team.persistence.enabled:
            warnings.append("Persistence disabled; sessions cannot be resumed after a restart")

        budgets = team.budgets
        if (
            budgets.max_tokens_per_session is not None
            and budgets.max_tokens_per_agent_per_session is not None
            and budgets.max_tokens_per_agent_per_session > budgets.max_tokens_per_session
        ):
            warnings.append("Per-agent token ceiling exceeds the session ceiling")

        return warnings


# Global configuration manager instance
_config_manager: Optional[ConfigurationManager] = None


def initialize_config(config_path: Optional[str] = None) -> ConfigurationManager:
    """Initialize global configuration manager."""
    global _config_manager
    _config_manager = ConfigurationManager(config_path)
    _config_manager.load_config()
    return _config_manager


def get_config_manager() -> ConfigurationManager:
    """Get the global configuration manager instance."""
    if _config_manager is None:
        raise ConfigurationError("Configuration not initialized. Call initialize_config() first.")
    return _config_manager


def get_config() -> HuddleConfig:
    """Get the global configuration."""
    return get_config_manager().get_config()
