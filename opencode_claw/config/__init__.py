"""Configuration module for opencode-claw."""

from opencode_claw.config.loader import ConfigError, find_config_path, load_config, save_config
from opencode_claw.config.schema import Config

__all__ = ["Config", "ConfigError", "find_config_path", "load_config", "save_config"]
