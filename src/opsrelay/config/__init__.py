"""Configuration for opsrelay."""

from opsrelay.config.settings import (
    ApprovalConfig,
    BatchingConfig,
    DeliveryConfig,
    LoggingConfig,
    Settings,
    TelegramConfig,
    find_config_path,
    load_settings,
)

__all__ = [
    "ApprovalConfig",
    "BatchingConfig",
    "DeliveryConfig",
    "LoggingConfig",
    "Settings",
    "TelegramConfig",
    "find_config_path",
    "load_settings",
]
