"""
Pydantic Settings Configuration
=================================

Type-safe configuration management using Pydantic.
Validates all configuration values at startup and fails fast with clear error messages.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_CHANGEME_PREFIXES = ("changeme", "change-me", "your_", "your-", "placeholder")

_FRONT_MATTER = re.compile(r"^---\r?\n(.*?)\r?\n---", re.DOTALL)

CONFIG_FILE_NAME = "telegram.local.md"


def _is_placeholder(value: str) -> bool:
    """Return True if value looks like an unfilled template placeholder."""
    v = value.lower()
    return any(v.startswith(p) or p in v for p in _CHANGEME_PREFIXES)


class TelegramConfig(BaseModel):
    """Telegram transport configuration (one fixed destination chat)"""
    bot_token: str = Field(..., description="Telegram bot token from BotFather")
    chat_id: Union[int, str] = Field(..., description="The single chat notifications go to")
    parse_mode: str = Field("HTML", description="Parse mode for outbound messages")
    request_timeout: float = Field(10.0, gt=0, description="HTTP timeout for Bot API calls")

    @field_validator('bot_token')
    @classmethod
    def validate_token(cls, v: str) -> str:
        """Validate bot token format"""
        if not v or _is_placeholder(v):
            raise ValueError(
                "TELEGRAM bot_token is still set to a placeholder value. "
                "Set a real token from @BotFather."
            )
        if ':' not in v:
            raise ValueError("Bot token must be in format: 123456:ABC-DEF...")
        return v

    @field_validator('chat_id')
    @classmethod
    def validate_chat_id(cls, v: Union[int, str]) -> Union[int, str]:
        if isinstance(v, str):
            stripped = v.strip()
            if not stripped:
                raise ValueError("chat_id must not be empty")
            # Numeric ids arrive as strings from YAML/env; channel names keep the @
            if stripped.lstrip('-').isdigit():
                return int(stripped)
            return stripped
        return v

    model_config = ConfigDict(extra='forbid')


class BatchingConfig(BaseModel):
    """Message batching configuration"""
    window_seconds: float = Field(5.0, gt=0, le=3600, description="Batch window in seconds")
    max_queue_size: int = Field(100, ge=1, le=10000, description="Maximum queued notifications")
    edit_in_place: bool = Field(True, description="Edit the previous batch message instead of sending a new one")

    model_config = ConfigDict(extra='forbid')


class ApprovalConfig(BaseModel):
    """Approval coordinator configuration"""
    max_concurrent_approvals: int = Field(10, ge=1, le=1000, description="Maximum live approval requests")
    default_timeout_seconds: float = Field(300.0, gt=0, description="Default approval timeout")
    poll_mode: Literal["event", "adaptive"] = Field("event", description="Wait on a future or poll adaptively")
    poll_interval_floor: float = Field(0.1, gt=0, description="First adaptive poll interval (seconds)")
    poll_interval_step: float = Field(0.1, ge=0, description="Adaptive poll interval increment (seconds)")
    poll_interval_ceiling: float = Field(1.0, gt=0, description="Maximum adaptive poll interval (seconds)")
    sweep_interval_seconds: float = Field(5.0, gt=0, description="Interval between expiry sweeps of live approvals")

    @model_validator(mode='after')
    def validate_poll_bounds(self) -> "ApprovalConfig":
        if self.poll_interval_ceiling < self.poll_interval_floor:
            raise ValueError("poll_interval_ceiling must be >= poll_interval_floor")
        return self

    model_config = ConfigDict(extra='forbid')


class DeliveryConfig(BaseModel):
    """Delivery retry and rate limit configuration"""
    retry_attempts: int = Field(3, ge=1, le=20, description="Attempts per transport call")
    retry_base_delay: float = Field(1.0, ge=0, description="Base backoff delay in seconds")
    rate_limit_requests: int = Field(30, ge=1, description="Max transport calls per rate-limit window")
    rate_limit_window_seconds: float = Field(60.0, gt=0, description="Rate-limit window in seconds")

    model_config = ConfigDict(extra='forbid')


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = Field("INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    format: str = Field("json", description="Log format (json, text)")

    @field_validator('level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level"""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(sorted(valid_levels))}")
        return v_upper

    @field_validator('format')
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ('json', 'text'):
            raise ValueError("Log format must be 'json' or 'text'")
        return v

    model_config = ConfigDict(extra='forbid')


class Settings(BaseSettings):
    """
    Main application settings with type validation.

    Configuration is loaded from:
    1. YAML config file, or the YAML front matter of telegram.local.md
    2. Environment variables with OPSRELAY_ prefix (fill what the file leaves out)
    3. Default values (fallback)

    Environment variable mapping uses double-underscore nesting:
      OPSRELAY_TELEGRAM__BOT_TOKEN
      OPSRELAY_BATCHING__WINDOW_SECONDS
      OPSRELAY_APPROVALS__MAX_CONCURRENT_APPROVALS
    """

    telegram: Optional[TelegramConfig] = None
    batching: BatchingConfig = Field(default_factory=BatchingConfig)
    approvals: ApprovalConfig = Field(default_factory=ApprovalConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    shutdown_timeout: float = Field(10.0, gt=0, description="Seconds allowed for graceful shutdown")

    model_config = SettingsConfigDict(
        env_prefix='OPSRELAY_',
        env_nested_delimiter='__',
        extra='ignore',
        validate_assignment=True,
    )

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> "Settings":
        """
        Load settings from a YAML file, or from the front matter of a
        markdown file (``---`` delimited YAML at the top).

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If configuration is invalid
        """
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        text = config_path.read_text(encoding="utf-8")
        if config_path.suffix == ".md":
            config_data = parse_front_matter(text)
        else:
            config_data = yaml.safe_load(text) or {}

        if not isinstance(config_data, dict):
            raise ValueError("Configuration must be a valid YAML mapping")

        return cls(**_normalize_flat_keys(config_data))

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables only."""
        return cls()

    def validate_required_config(self) -> List[str]:
        """
        Validate that all required configuration is present.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        if not self.telegram:
            errors.append("Telegram configuration (bot_token, chat_id) is required")
        return errors


def parse_front_matter(text: str) -> Dict[str, Any]:
    """Extract the YAML mapping from ``---`` delimited front matter."""
    match = _FRONT_MATTER.match(text)
    if not match:
        raise ValueError("Invalid configuration format. Expected YAML frontmatter (---...---)")
    data = yaml.safe_load(match.group(1))
    if not isinstance(data, dict):
        raise ValueError("Configuration must be a valid YAML object")
    return data


def _normalize_flat_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    """Accept the flat ``bot_token``/``chat_id`` layout of telegram.local.md."""
    data = dict(data)
    flat = {k: data.pop(k) for k in ("bot_token", "chat_id") if k in data}
    if flat:
        telegram = dict(data.get("telegram") or {})
        for key, value in flat.items():
            telegram.setdefault(key, value)
        data["telegram"] = telegram
    return data


def find_config_path(file_name: str = CONFIG_FILE_NAME) -> Optional[Path]:
    """
    Locate the config file: project-local ``$CLAUDE_PROJECT_DIR/.claude``
    first, then the global ``~/.claude`` directory.
    """
    project_dir = os.getenv("CLAUDE_PROJECT_DIR")
    if project_dir:
        project_config = Path(project_dir) / ".claude" / file_name
        if project_config.exists():
            return project_config

    global_config = Path.home() / ".claude" / file_name
    if global_config.exists():
        return global_config
    return None


def load_settings(config_path: Optional[str | Path] = None) -> Settings:
    """
    Load and validate application settings.

    Args:
        config_path: Optional path to a YAML or front-matter config file.
            When omitted the standard locations are searched, then the
            environment alone is used.

    Raises:
        ValueError: If configuration is invalid
    """
    path = Path(config_path) if config_path else find_config_path()
    if path:
        settings = Settings.from_yaml(path)
    else:
        settings = Settings.from_env()

    errors = settings.validate_required_config()
    if errors:
        raise ValueError(
            "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        )

    return settings


__all__ = [
    'Settings',
    'TelegramConfig',
    'BatchingConfig',
    'ApprovalConfig',
    'DeliveryConfig',
    'LoggingConfig',
    'find_config_path',
    'load_settings',
    'parse_front_matter',
]
