"""
Configuration for the flightpath orchestrator.

Three model tiers (haiku / sonnet / opus) served through the Anthropic
Messages API. Explorer lanes always run on the cheapest tier; plan and
execute use the tier picked by complexity scoring.

Environment overrides:
  ANTHROPIC_API_KEY       API key (name configurable per model)
  FLIGHTPATH_API_URL      Messages API base URL
  FLIGHTPATH_STORAGE_DIR  base directory for .claude/ artifact storage
  TELEGRAM_BOT_TOKEN      notification channel for agent questions
  TELEGRAM_CHAT_ID
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Dict

from flightpath_models import ModelTier

import logging
logger = logging.getLogger(__name__)


@dataclass
class ModelConfig:
    """Configuration for a model endpoint."""
    name: str
    model_id: str
    endpoint: str = "https://api.anthropic.com"
    api_key_env: str = "ANTHROPIC_API_KEY"
    max_tokens: int = 8192
    temperature: float = 0.0


@dataclass
class HarnessConfig:
    max_turns: int = 100  # internal agent turns allowed per send
    rate_limit_max_retries: int = 20
    rate_limit_backoff_seconds: float = 1800.0
    rate_limit_poll_seconds: float = 5.0
    request_timeout_seconds: float = 600.0


@dataclass
class ExplorerConfig:
    lane_timeout_seconds: float = 60.0
    lane_max_turns: int = 20
    fallback_file_cap: int = 10


@dataclass
class NotifyConfig:
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    telegram_api_url: str = "https://api.telegram.org"

    @property
    def enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


@dataclass
class Config:
    """Main configuration container."""
    max_retries: int = 3
    storage_base_dir: str = "."
    default_depth: str = "medium"
    models: Dict[str, ModelConfig] = field(default_factory=dict)
    harness: HarnessConfig = field(default_factory=HarnessConfig)
    explorer: ExplorerConfig = field(default_factory=ExplorerConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)

    def model_for_tier(self, tier: ModelTier) -> ModelConfig:
        key = tier.value if isinstance(tier, ModelTier) else str(tier)
        if key not in self.models:
            raise ValueError(f"Unknown model tier: {key}")
        return self.models[key]

    @staticmethod
    def load_default() -> "Config":
        return default_config()


def default_config() -> Config:
    """Default configuration: Anthropic-hosted tiers, 3 phase retries, 20 backoff retries."""
    endpoint = os.environ.get("FLIGHTPATH_API_URL", "https://api.anthropic.com")

    models = {
        ModelTier.HAIKU.value: ModelConfig(
            name="Haiku (fast, explorers + simple requirements)",
            model_id="claude-3-5-haiku-20241022",
            endpoint=endpoint,
        ),
        ModelTier.SONNET.value: ModelConfig(
            name="Sonnet (default build tier)",
            model_id="claude-sonnet-4-5-20250929",
            endpoint=endpoint,
            max_tokens=16384,
        ),
        ModelTier.OPUS.value: ModelConfig(
            name="Opus (complex, cross-module requirements)",
            model_id="claude-opus-4-5-20251101",
            endpoint=endpoint,
            max_tokens=16384,
        ),
    }

    return Config(
        storage_base_dir=os.environ.get("FLIGHTPATH_STORAGE_DIR", "."),
        models=models,
        notify=NotifyConfig(
            telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.environ.get("TELEGRAM_CHAT_ID"),
        ),
    )


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from a JSON file, overlaid on the defaults.

    Example:
        {
          "max_retries": 2,
          "harness": {"rate_limit_backoff_seconds": 600},
          "models": {"sonnet": {"model_id": "claude-sonnet-4-5-20250929"}}
        }
    """
    config = default_config()

    if config_path is None:
        return config
    config_path = Path(config_path)
    if not config_path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return config

    data = json.loads(config_path.read_text())

    for key in ("max_retries", "storage_base_dir", "default_depth"):
        if key in data:
            setattr(config, key, data[key])

    for section, target in (("harness", config.harness), ("explorer", config.explorer),
                            ("notify", config.notify)):
        for key, value in data.get(section, {}).items():
            if hasattr(target, key):
                setattr(target, key, value)
            else:
                logger.warning(f"Ignoring unknown {section} setting: {key}")

    for tier, overrides in data.get("models", {}).items():
        if tier in config.models:
            model = config.models[tier]
            for key, value in overrides.items():
                if hasattr(model, key):
                    setattr(model, key, value)
        else:
            config.models[tier] = ModelConfig(**overrides)

    logger.debug(f"Config loaded from {config_path}")
    return config
