"""LLMEval Configuration System.

Loads and validates configuration from ~/.llmeval/config.json (or the path
in the LLMEVAL_CONFIG environment variable). Uses Pydantic for schema
validation with sensible defaults.

Usage:
    from llmeval.config import get_config, save_config

    config = get_config()
    print(config.generation.temperature)

    # Modify and save
    config.generation.display_every_n_tokens = 4
    save_config(config)
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CONFIG_PATH = Path.home() / ".llmeval" / "config.json"

# Schema version written with every saved config
CONFIG_VERSION = 1


def default_config_path() -> Path:
    """Return the config path, honoring the LLMEVAL_CONFIG override."""
    override = os.environ.get("LLMEVAL_CONFIG")
    if override:
        return Path(override).expanduser()
    return CONFIG_PATH


class ModelSettings(BaseModel):
    """Model selection and memory policy.

    Attributes:
        model_id: Profile id to load (None = platform default profile).
        cache_limit_mb: Working-set ceiling for the backend's buffer cache.
            Fixed regardless of device memory to bound the footprint.
        memory_buffer_multiplier: Safety factor applied when checking that
            enough system memory is free before loading.
    """

    model_id: str | None = None
    cache_limit_mb: int = Field(default=20, ge=1, le=65536)
    memory_buffer_multiplier: float = Field(default=1.3, ge=1.0, le=4.0)


class GenerationSettings(BaseModel):
    """Sampling and streaming parameters.

    Attributes:
        temperature: Sampling temperature.
        max_tokens: Hard cap on output tokens per generation.
        display_every_n_tokens: Publish the output text every N tokens.
            Publishing on every token costs roughly 15% throughput.
        timeout_seconds: Cancel generation after this many seconds (None = no limit).
    """

    temperature: float = Field(default=0.5, ge=0.0, le=2.0)
    max_tokens: int = Field(default=8000, ge=1)
    display_every_n_tokens: int = Field(default=10, ge=1)
    timeout_seconds: float | None = Field(default=None, gt=0.0)


class LLMEvalConfig(BaseModel):
    """LLMEval configuration schema."""

    config_version: int = CONFIG_VERSION
    model: ModelSettings = Field(default_factory=ModelSettings)
    generation: GenerationSettings = Field(default_factory=GenerationSettings)


# Module-level singleton with thread safety
_config: LLMEvalConfig | None = None
_config_lock = threading.Lock()


def load_config(config_path: Path | None = None) -> LLMEvalConfig:
    """Load configuration from file, return defaults if missing/invalid.

    Args:
        config_path: Optional path to config file. Defaults to default_config_path().

    Returns:
        LLMEvalConfig instance with loaded or default values.
    """
    path = config_path or default_config_path()

    if not path.exists():
        logger.debug("Config file not found at %s, using defaults", path)
        return LLMEvalConfig()

    try:
        with path.open() as f:
            data: dict[str, Any] = json.load(f)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON in config file %s: %s, using defaults", path, e)
        return LLMEvalConfig()
    except OSError as e:
        logger.warning("Cannot read config file %s: %s, using defaults", path, e)
        return LLMEvalConfig()

    try:
        config = LLMEvalConfig.model_validate(data)
    except ValidationError as e:
        logger.warning("Config validation failed: %s, using defaults", e)
        return LLMEvalConfig()

    return config


def save_config(config: LLMEvalConfig, config_path: Path | None = None) -> bool:
    """Save configuration to file.

    Returns:
        True if saved successfully, False otherwise.
    """
    path = config_path or default_config_path()

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w") as f:
            json.dump(config.model_dump(), f, indent=2)
        os.chmod(path, 0o600)
        logger.debug("Configuration saved to %s", path)
        return True
    except OSError as e:
        logger.error("Failed to save config to %s: %s", path, e)
        return False


def get_config() -> LLMEvalConfig:
    """Get singleton configuration instance.

    Uses double-check locking for thread safety.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_config()
    return _config


def reset_config() -> None:
    """Reset singleton configuration for testing."""
    global _config
    with _config_lock:
        _config = None
