"""Configuration loading for Tendril.

Settings come from a YAML file found on the search path:

    ./config/config.yaml
    $TENDRIL_HOME/config/config.yaml      (default ~/.tendril)

Environment variables are loaded from ``$TENDRIL_HOME/.env`` first, then
from a project ``.env``. ``TENDRIL_API_KEY`` supplies the API key when the
YAML file has none (or still holds the placeholder).

Relative ``system_prompt_path``, ``mcp_config_path`` and ``skills_dir`` values
are resolved against the directory holding the config file.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv

from agent.retry import RetryConfig
from tendril_constants import (
    API_KEY_ENV,
    DEFAULT_API_BASE,
    DEFAULT_MODEL,
    DEFAULT_PROVIDER,
    get_tendril_home,
)

logger = logging.getLogger(__name__)

API_KEY_PLACEHOLDER = "YOUR_API_KEY_HERE"
VALID_PROVIDERS = ("anthropic", "openai")


class ConfigError(ValueError):
    """Configuration is missing or invalid."""


def load_env() -> None:
    """Load ``.env`` files without overriding variables already set."""
    user_env = get_tendril_home() / ".env"
    if user_env.exists():
        try:
            load_dotenv(dotenv_path=user_env, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(dotenv_path=user_env, encoding="latin-1")
    project_env = Path.cwd() / ".env"
    if project_env.exists():
        load_dotenv(dotenv_path=project_env, encoding="utf-8")


def config_search_paths() -> List[Path]:
    return [
        Path.cwd() / "config" / "config.yaml",
        get_tendril_home() / "config" / "config.yaml",
    ]


def find_config_file(explicit: Optional[Union[str, Path]] = None) -> Optional[Path]:
    if explicit:
        path = Path(explicit).expanduser()
        if not path.is_file():
            raise ConfigError(f"Configuration file not found: {path}")
        return path
    for candidate in config_search_paths():
        if candidate.is_file():
            return candidate
    return None


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Invalid config: '{key}' must be a mapping")
    return value


def _typed(data: Dict[str, Any], key: str, kind, default):
    value = data.get(key, default)
    if kind is float and isinstance(value, int) and not isinstance(value, bool):
        value = float(value)
    if kind is int and isinstance(value, bool):
        raise ConfigError(f"Invalid config: '{key}' must be int")
    if not isinstance(value, kind):
        raise ConfigError(f"Invalid config: '{key}' must be {kind.__name__}")
    return value


@dataclass
class LLMConfig:
    api_key: str = ""
    api_base: str = DEFAULT_API_BASE
    model: str = DEFAULT_MODEL
    provider: str = DEFAULT_PROVIDER
    retry: RetryConfig = field(default_factory=RetryConfig)


@dataclass
class AgentConfig:
    max_steps: int = 50
    token_limit: int = 80_000
    workspace_dir: str = "./workspace"
    system_prompt_path: str = "system_prompt.md"


@dataclass
class ToolsConfig:
    enable_file_tools: bool = True
    enable_bash: bool = True
    enable_note: bool = True
    enable_skills: bool = True
    skills_dir: str = "./skills"
    enable_mcp: bool = True
    mcp_config_path: str = "mcp.json"


@dataclass
class Config:
    llm: LLMConfig = field(default_factory=LLMConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    config_dir: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], config_dir: Optional[Path] = None) -> "Config":
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError("Invalid config: top level must be a mapping")

        provider = _typed(data, "provider", str, DEFAULT_PROVIDER).lower()
        if provider not in VALID_PROVIDERS:
            raise ConfigError(f"Invalid config: provider must be one of {VALID_PROVIDERS}, got {provider!r}")

        try:
            retry = RetryConfig.from_dict(_section(data, "retry"))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid config: retry: {e}") from e

        llm = LLMConfig(
            api_key=str(data.get("api_key") or ""),
            api_base=_typed(data, "api_base", str, DEFAULT_API_BASE),
            model=_typed(data, "model", str, DEFAULT_MODEL),
            provider=provider,
            retry=retry,
        )

        agent = AgentConfig(
            max_steps=_typed(data, "max_steps", int, AgentConfig.max_steps),
            token_limit=_typed(data, "token_limit", int, AgentConfig.token_limit),
            workspace_dir=_typed(data, "workspace_dir", str, AgentConfig.workspace_dir),
            system_prompt_path=_typed(data, "system_prompt_path", str, AgentConfig.system_prompt_path),
        )
        if agent.max_steps < 1:
            raise ConfigError("Invalid config: 'max_steps' must be at least 1")
        if agent.token_limit < 1:
            raise ConfigError("Invalid config: 'token_limit' must be positive")

        tools_data = _section(data, "tools")
        tools = ToolsConfig(
            enable_file_tools=_typed(tools_data, "enable_file_tools", bool, True),
            enable_bash=_typed(tools_data, "enable_bash", bool, True),
            enable_note=_typed(tools_data, "enable_note", bool, True),
            enable_skills=_typed(tools_data, "enable_skills", bool, True),
            skills_dir=_typed(tools_data, "skills_dir", str, ToolsConfig.skills_dir),
            enable_mcp=_typed(tools_data, "enable_mcp", bool, True),
            mcp_config_path=_typed(tools_data, "mcp_config_path", str, ToolsConfig.mcp_config_path),
        )
        return cls(llm=llm, agent=agent, tools=tools, config_dir=config_dir)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "Config":
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        return cls.from_dict(data, config_dir=path.parent.resolve())

    def resolve_path(self, value: Union[str, Path]) -> Path:
        path = Path(value).expanduser()
        if path.is_absolute():
            return path
        return (self.config_dir or Path.cwd()) / path

    @property
    def system_prompt_file(self) -> Path:
        return self.resolve_path(self.agent.system_prompt_path)

    @property
    def mcp_config_file(self) -> Path:
        return self.resolve_path(self.tools.mcp_config_path)

    @property
    def skills_path(self) -> Path:
        """Skills directory: relative to the config file, else to the cwd."""
        path = self.resolve_path(self.tools.skills_dir)
        if path.is_dir():
            return path
        fallback = Path.cwd() / self.tools.skills_dir
        return fallback if fallback.is_dir() else path

    @property
    def workspace_path(self) -> Path:
        return Path(self.agent.workspace_dir).expanduser().resolve()


def load_config(path: Optional[Union[str, Path]] = None, *, require_api_key: bool = True) -> Config:
    """Load ``.env`` files and the YAML config; apply environment overrides."""
    load_env()
    config_file = find_config_file(path)
    if config_file is None:
        logger.info("No config.yaml found (tried %s); using defaults",
                    ", ".join(str(p) for p in config_search_paths()))
        config = Config()
    else:
        logger.debug("Loading config from %s", config_file)
        config = Config.from_yaml(config_file)

    if not config.llm.api_key or config.llm.api_key == API_KEY_PLACEHOLDER:
        config.llm.api_key = os.getenv(API_KEY_ENV, "")

    if require_api_key and not config.llm.api_key:
        raise ConfigError(
            f"No API key configured. Set api_key in config.yaml or the {API_KEY_ENV} environment variable."
        )
    return config
