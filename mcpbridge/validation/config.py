"""
mcpbridge Configuration - Configuration loading and validation.

This module provides the Config class, which loads the bridge configuration
from a JSON or YAML file, applies environment overrides, migrates the legacy
``mcpServers``-only layout and validates the result with pydantic models.

Precedence, lowest to highest: built-in defaults, environment variables,
explicit values in the configuration file.
"""

import logging
import os
import re
from pathlib import Path
from typing import Annotated, Any, Callable, Dict, List, Literal, Mapping, Optional

import yaml
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

from mcpbridge.core.errors import ConfigError

logger = logging.getLogger(__name__)

CURRENT_VERSION = "2.0"

PROVIDER_OPENAI = "openai"
PROVIDER_ANTHROPIC = "anthropic"
PROVIDER_OLLAMA = "ollama"

DEFAULT_PROVIDERS: Dict[str, Dict[str, Any]] = {
    PROVIDER_OPENAI: {"model": "gpt-4o", "temperature": 0.7},
    PROVIDER_ANTHROPIC: {"model": "claude-3-5-sonnet-20241022", "temperature": 0.7},
    PROVIDER_OLLAMA: {
        "model": "llama3",
        "baseUrl": "http://localhost:11434",
        "temperature": 0.7,
    },
}

DEFAULT_REJECTION_MESSAGE = (
    "I'm sorry, but I don't have permission to respond in this context. "
    "Please contact the app administrator if you believe this is an error."
)

MIN_RELOAD_INTERVAL = 10.0


# ── Durations ────────────────────────────────────────────────────────────

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: Any) -> float:
    """
    Parse a duration into seconds.

    Accepts numbers (seconds) and Go-style strings such as ``"500ms"``,
    ``"30s"``, ``"3m"`` or ``"1h30m"``.

    Raises:
        ValueError: If the value cannot be parsed.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")

    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def format_duration(seconds: float) -> str:
    """Render seconds back into a Go-style duration string."""
    if seconds < 1 and seconds > 0:
        return f"{round(seconds * 1000)}ms"
    whole = int(seconds)
    if whole != seconds:
        return f"{seconds:g}s"
    hours, rest = divmod(whole, 3600)
    minutes, secs = divmod(rest, 60)
    out = ""
    if hours:
        out += f"{hours}h"
    if minutes:
        out += f"{minutes}m"
    if secs or not out:
        out += f"{secs}s"
    return out


Duration = Annotated[
    float,
    BeforeValidator(parse_duration),
    PlainSerializer(format_duration, return_type=str),
]


# ── Models ───────────────────────────────────────────────────────────────


class _Model(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
    )


class SlackConfig(_Model):
    """Configuration for the Slack socket-mode front-end."""

    bot_token: str = ""
    app_token: str = ""
    message_history: int = Field(default=50, ge=1)
    thinking_message: str = "Thinking..."


class LLMProviderConfig(_Model):
    """Configuration for one LLM provider."""

    model: str = ""
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.7
    max_tokens: int = Field(default=2048, ge=1)


class LLMConfig(_Model):
    """Configuration for the LLM layer."""

    provider: str = PROVIDER_OPENAI
    use_native_tools: bool = False
    use_agent: bool = False
    custom_prompt: str = ""
    custom_prompt_file: str = ""
    replace_tool_prompt: bool = False
    max_agent_iterations: int = Field(default=20, ge=1)
    providers: Dict[str, LLMProviderConfig] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _fill_provider_defaults(self) -> "LLMConfig":
        for name, defaults in DEFAULT_PROVIDERS.items():
            if name not in self.providers:
                self.providers[name] = LLMProviderConfig.model_validate(defaults)
                continue
            block = self.providers[name]
            if not block.model:
                block.model = defaults["model"]
            if not block.base_url and "baseUrl" in defaults:
                block.base_url = defaults["baseUrl"]
        return self

    @property
    def active(self) -> Optional[LLMProviderConfig]:
        """The block for the selected provider, if configured."""
        return self.providers.get(self.provider)


class ToolFilterConfig(_Model):
    allow_list: List[str] = Field(default_factory=list)
    block_list: List[str] = Field(default_factory=list)

    def permits(self, tool_name: str) -> bool:
        """Return True if ``tool_name`` survives the allow/block lists."""
        if tool_name in self.block_list:
            return False
        if self.allow_list:
            return tool_name in self.allow_list
        return True


class MCPServerConfig(_Model):
    """Configuration for a single MCP server."""

    command: str = ""
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    url: str = ""
    transport: Optional[Literal["stdio", "sse", "http"]] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    disabled: bool = False
    initialize_timeout_seconds: Optional[int] = Field(default=None, ge=1)
    tools: ToolFilterConfig = Field(default_factory=ToolFilterConfig)

    @model_validator(mode="after")
    def _infer_transport(self) -> "MCPServerConfig":
        if self.transport is None:
            if self.command:
                self.transport = "stdio"
            elif self.url:
                self.transport = "sse"
            else:
                self.transport = "stdio"
        return self


class SecurityConfig(_Model):
    """Access control settings."""

    enabled: bool = False
    strict_mode: bool = False
    allowed_users: List[str] = Field(default_factory=list)
    allowed_channels: List[str] = Field(default_factory=list)
    admin_users: List[str] = Field(default_factory=list)
    rejection_message: str = ""
    log_unauthorized: bool = True

    @model_validator(mode="after")
    def _default_rejection(self) -> "SecurityConfig":
        if self.enabled and not self.rejection_message:
            self.rejection_message = DEFAULT_REJECTION_MESSAGE
        return self


class TimeoutsConfig(_Model):
    http_request_timeout: Duration = 30.0
    mcp_init_timeout: Duration = 30.0
    tool_processing_timeout: Duration = 180.0
    bridge_operation_timeout: Duration = 180.0
    response_processing_timeout: Duration = 60.0


class RetryConfig(_Model):
    max_attempts: int = Field(default=3, ge=1)
    base_backoff: Duration = 0.5
    max_backoff: Duration = 5.0
    backoff_multiplier: float = Field(default=2.0, ge=1.0)


class ReloadConfig(_Model):
    enabled: bool = False
    interval: Duration = 1800.0


class ObservabilityConfig(_Model):
    enabled: bool = False
    provider: str = "simple"


class BridgeConfig(_Model):
    """Complete mcpbridge configuration schema."""

    version: str = CURRENT_VERSION
    slack: SlackConfig = Field(default_factory=SlackConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    mcp_servers: Dict[str, MCPServerConfig] = Field(default_factory=dict)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    reload: ReloadConfig = Field(default_factory=ReloadConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    def init_timeout_for(self, server: MCPServerConfig) -> float:
        """Per-server initialize timeout, falling back to the global knob."""
        if server.initialize_timeout_seconds:
            return float(server.initialize_timeout_seconds)
        return self.timeouts.mcp_init_timeout


# ── Environment ──────────────────────────────────────────────────────────

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _parse_bool(value: str) -> Optional[bool]:
    lowered = value.strip().lower()
    if lowered in ("1", "t", "true", "yes", "on"):
        return True
    if lowered in ("0", "f", "false", "no", "off"):
        return False
    return None


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


# (env var, path in the document, converter)
_ENV_OVERRIDES: List[tuple] = [
    ("SLACK_BOT_TOKEN", ("slack", "botToken"), str),
    ("SLACK_APP_TOKEN", ("slack", "appToken"), str),
    ("LLM_PROVIDER", ("llm", "provider"), str),
    ("CUSTOM_PROMPT", ("llm", "customPrompt"), str),
    ("OPENAI_API_KEY", ("llm", "providers", PROVIDER_OPENAI, "apiKey"), str),
    ("OPENAI_MODEL", ("llm", "providers", PROVIDER_OPENAI, "model"), str),
    ("ANTHROPIC_API_KEY", ("llm", "providers", PROVIDER_ANTHROPIC, "apiKey"), str),
    ("ANTHROPIC_MODEL", ("llm", "providers", PROVIDER_ANTHROPIC, "model"), str),
    ("OLLAMA_BASE_URL", ("llm", "providers", PROVIDER_OLLAMA, "baseUrl"), str),
    ("OLLAMA_MODEL", ("llm", "providers", PROVIDER_OLLAMA, "model"), str),
    ("SECURITY_ENABLED", ("security", "enabled"), _parse_bool),
    ("SECURITY_STRICT_MODE", ("security", "strictMode"), _parse_bool),
    ("SECURITY_ALLOWED_USERS", ("security", "allowedUsers"), _split_list),
    ("SECURITY_ALLOWED_CHANNELS", ("security", "allowedChannels"), _split_list),
    ("SECURITY_ADMIN_USERS", ("security", "adminUsers"), _split_list),
    ("SECURITY_REJECTION_MESSAGE", ("security", "rejectionMessage"), str),
    ("SECURITY_LOG_UNAUTHORIZED", ("security", "logUnauthorized"), _parse_bool),
]


def env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Build a partial config document from environment variables."""
    result: Dict[str, Any] = {}
    for name, path, convert in _ENV_OVERRIDES:
        raw = environ.get(name)
        if not raw:
            continue
        value = convert(raw)
        if value is None:
            logger.warning("Ignoring %s: cannot parse %r", name, raw)
            continue
        node = result
        for key in path[:-1]:
            node = node.setdefault(key, {})
        node[path[-1]] = value
    return result


def substitute_env(value: Any, environ: Mapping[str, str]) -> Any:
    """Replace ``${VAR}`` placeholders in every string of a document.

    Unset variables leave the placeholder untouched so validation can
    report the missing value by name.
    """
    if isinstance(value, str):
        return _PLACEHOLDER.sub(lambda m: environ.get(m.group(1), m.group(0)), value)
    if isinstance(value, dict):
        return {k: substitute_env(v, environ) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_env(v, environ) for v in value]
    return value


def _unresolved(value: str) -> bool:
    return not value or value.startswith("${")


# ── Loader ───────────────────────────────────────────────────────────────


class Config:
    """
    mcpbridge configuration manager.

    Handles loading, merging and validating configuration from a single
    file plus the process environment.

    Example:
        >>> config = Config.load("config.json")
        >>> config.validate(require_slack=False)
        >>> config.merged.llm.provider
        'openai'
    """

    def __init__(
        self,
        file_config: Optional[Dict[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
        source: Optional[Path] = None,
    ):
        """
        Initialize Config.

        Args:
            file_config: Parsed configuration document.
            environ: Environment mapping; defaults to ``os.environ``.
            source: Path the document came from, used for relative paths.
        """
        raw = dict(file_config or {})
        raw.pop("$schema", None)
        self.migrated = self.is_legacy(raw)
        if self.migrated:
            raw = self.migrate_legacy(raw)
            logger.warning(
                "Loaded legacy mcpServers-only configuration; "
                "consider running with --migrate-config"
            )
        self._file_config = raw
        self._environ = os.environ if environ is None else environ
        self.source = source
        self._merged: Optional[BridgeConfig] = None

    @classmethod
    def load(cls, path: Any, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """
        Load configuration from a file.

        Args:
            path: Path to a JSON or YAML document.
            environ: Environment mapping; defaults to ``os.environ``.

        Returns:
            Config instance with the loaded document.

        Raises:
            ConfigError: If the file is missing or cannot be parsed.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}", code="missing-required-field")
        return cls(file_config=cls._load_yaml(path), environ=environ, source=path)

    @classmethod
    def _load_yaml(cls, path: Path) -> Dict[str, Any]:
        """Load a YAML (or JSON) file."""
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}", cause=e)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain an object at the top level")
        return data

    @staticmethod
    def is_legacy(document: Dict[str, Any]) -> bool:
        """Legacy files carry ``mcpServers`` and none of version/slack/llm."""
        return "mcpServers" in document and not any(
            key in document for key in ("version", "slack", "llm")
        )

    @staticmethod
    def migrate_legacy(document: Dict[str, Any]) -> Dict[str, Any]:
        """Convert a legacy ``mcpServers``-only document to the current layout."""
        return {"version": CURRENT_VERSION, "mcpServers": document.get("mcpServers") or {}}

    def get_file_config(self) -> Dict[str, Any]:
        return self._file_config

    def get_merged_config(self) -> Dict[str, Any]:
        """Merge environment overrides under the explicit file values."""
        merged = self._deep_merge(env_overrides(self._environ), self._file_config)
        return substitute_env(merged, self._environ)

    @property
    def merged(self) -> BridgeConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                config = BridgeConfig.model_validate(self.get_merged_config())
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}", cause=e)
            self._resolve_custom_prompt(config)
            self._merged = config
        return self._merged

    def _resolve_custom_prompt(self, config: BridgeConfig) -> None:
        llm = config.llm
        if llm.custom_prompt or not llm.custom_prompt_file:
            return
        prompt_path = Path(llm.custom_prompt_file)
        if not prompt_path.is_absolute() and self.source is not None:
            prompt_path = self.source.parent / prompt_path
        try:
            llm.custom_prompt = prompt_path.read_text()
        except OSError as e:
            raise ConfigError(f"Failed to read custom prompt file {prompt_path}: {e}", cause=e)

    def validate(self, require_slack: bool = True) -> BridgeConfig:
        """
        Validate required fields after defaults and substitution.

        Args:
            require_slack: Whether the Slack tokens are mandatory.

        Returns:
            The validated configuration.

        Raises:
            ConfigError: On the first problem found.
        """
        config = self.merged
        missing = "missing-required-field"

        if require_slack:
            if _unresolved(config.slack.bot_token):
                raise ConfigError("SLACK_BOT_TOKEN environment variable not set", code=missing)
            if _unresolved(config.slack.app_token):
                raise ConfigError("SLACK_APP_TOKEN environment variable not set", code=missing)
            if not config.slack.app_token.startswith("xapp-"):
                raise ConfigError("Slack app token must start with 'xapp-'")

        provider = config.llm.active
        if provider is None:
            raise ConfigError(f"LLM provider '{config.llm.provider}' not configured")
        if config.llm.provider in (PROVIDER_OPENAI, PROVIDER_ANTHROPIC) and _unresolved(
            provider.api_key
        ):
            raise ConfigError(
                f"{config.llm.provider.upper()}_API_KEY environment variable not set",
                code=missing,
            )

        for name, server in config.mcp_servers.items():
            if server.disabled:
                continue
            if server.transport == "stdio" and not server.command:
                raise ConfigError(f"MCP server '{name}' uses stdio but has no command", code=missing)
            if server.transport in ("sse", "http") and not server.url:
                raise ConfigError(
                    f"MCP server '{name}' uses {server.transport} but has no url", code=missing
                )

        if config.reload.enabled and config.reload.interval < MIN_RELOAD_INTERVAL:
            raise ConfigError(
                f"reload interval must be at least {format_duration(MIN_RELOAD_INTERVAL)}"
            )
        return config

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the merged configuration using the file's key names."""
        return dump_config(self.merged)

    def save(self, path: Any) -> None:
        """Save the merged configuration to ``path`` as YAML or JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result


def dump_config(config: BridgeConfig) -> Dict[str, Any]:
    """Dump a config model to a plain document keyed by the file's names."""
    return config.model_dump(by_alias=True, mode="json", exclude_none=True)


def load_config(
    path: Any,
    require_slack: bool = True,
    environ: Optional[Mapping[str, str]] = None,
) -> BridgeConfig:
    """Load and validate a configuration file in one step."""
    return Config.load(path, environ=environ).validate(require_slack=require_slack)


ConfigLoader = Callable[[], BridgeConfig]
