"""
mcpbridge validation module.

This module provides configuration validation and tool-argument checking.
"""

from mcpbridge.validation.config import BridgeConfig, Config, ConfigError, load_config
from mcpbridge.validation.schema import validate_args

__all__ = ["BridgeConfig", "Config", "ConfigError", "load_config", "validate_args"]
