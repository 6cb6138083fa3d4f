"""Configuration loading utilities for opencode-claw."""

import json
import os
import re
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from opencode_claw.config.schema import Config

CONFIG_ENV_VAR = "OPENCODE_CLAW_CONFIG"
_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

# Keys whose values are filesystem paths, resolved against the config file's directory.
_PATH_FIELDS = (
    ("sessions", "persist_path"),
    ("outbox", "directory"),
    ("log", "file"),
    ("opencode", "directory"),
)


class ConfigError(Exception):
    """Raised when the configuration file cannot be found, parsed or validated."""


def config_search_paths() -> list[Path]:
    """Candidate config locations, highest priority first."""
    paths: list[Path] = []
    env_path = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if env_path:
        paths.append(Path(env_path).expanduser())
    paths.append(Path.cwd() / "opencode-claw.json")
    paths.append(Path.home() / ".config" / "opencode-claw" / "config.json")
    return paths


def find_config_path() -> Path | None:
    """Return the first existing config file, or None."""
    for path in config_search_paths():
        if path.is_file():
            return path
    return None


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file, or defaults when no file exists.

    Args:
        config_path: Explicit path. Searched for when not provided.

    Returns:
        Validated configuration object.

    Raises:
        ConfigError: The file is unreadable, references an unset environment
            variable, or fails validation.
    """
    path = config_path or find_config_path()
    if path is None:
        logger.info("No config file found, using defaults")
        return Config()
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config root in {path} must be a JSON object")

    data = convert_keys(expand_env(data))
    data = resolve_paths(data, path.parent)

    try:
        config = Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(format_validation_error(path, e)) from e

    logger.debug(f"Loaded config from {path}")
    return config


def save_config(config: Config, config_path: Path) -> None:
    """
    Save configuration to file in camelCase form.

    Args:
        config: Configuration to save.
        config_path: Destination path.
    """
    config_path.parent.mkdir(parents=True, exist_ok=True)
    data = convert_to_camel(config.model_dump(exclude_none=True))
    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def expand_env(data: Any) -> Any:
    """Replace ${VAR} references in string values with environment values."""
    if isinstance(data, dict):
        return {k: expand_env(v) for k, v in data.items()}
    if isinstance(data, list):
        return [expand_env(item) for item in data]
    if isinstance(data, str):
        def _sub(match: re.Match) -> str:
            name = match.group(1)
            value = os.environ.get(name)
            if value is None:
                raise ConfigError(f"Environment variable {name} is referenced in config but not set")
            return value

        return _ENV_REF.sub(_sub, data)
    return data


def resolve_paths(data: dict[str, Any], base_dir: Path) -> dict[str, Any]:
    """Make relative path fields absolute against base_dir."""
    for section, key in _PATH_FIELDS:
        block = data.get(section)
        if not isinstance(block, dict):
            continue
        value = block.get(key)
        if not isinstance(value, str) or not value:
            continue
        expanded = Path(value).expanduser()
        if not expanded.is_absolute():
            block[key] = str((base_dir / expanded).resolve())
    return data


def format_validation_error(path: Path, error: ValidationError) -> str:
    lines = [f"Invalid config in {path}:"]
    for item in error.errors():
        location = ".".join(snake_to_camel(str(part)) for part in item.get("loc", ()))
        lines.append(f"  - {location or '(root)'}: {item.get('msg')}")
    return "\n".join(lines)


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case for Pydantic."""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """Convert snake_case keys to camelCase."""
    if isinstance(data, dict):
        return {snake_to_camel(k): convert_to_camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0:
            result.append("_")
        result.append(char.lower())
    return "".join(result)


def snake_to_camel(name: str) -> str:
    """Convert snake_case to camelCase."""
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])
