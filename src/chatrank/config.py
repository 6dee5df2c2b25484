"""Configuration loading and validation for chatrank."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
import os

import yaml

from .models import Tier


DEFAULT_CLEARED_NOTICE = (
    "Chat history has been cleared for {project_name}.\n\n"
    "I'm your AI assistant. What would you like to work on?"
)


@dataclass
class StoreConfig:
    """Conversation store configuration."""

    cleared_notice: str = DEFAULT_CLEARED_NOTICE
    classifier_cache_size: int = 512  # 0 disables the classifier cache
    # Persist every streamed chunk instead of only finished content
    persist_streaming_updates: bool = False


@dataclass
class WindowConfig:
    """Prompt window assembly configuration."""

    max_context_tokens: int = 8000
    min_tier: str = "LOW"

    def min_tier_level(self) -> Tier:
        """Parse ``min_tier`` into a Tier."""
        try:
            return Tier[self.min_tier.upper()]
        except KeyError:
            valid = ", ".join(t.name for t in Tier)
            raise ValueError(f"Invalid min_tier: {self.min_tier} (expected one of {valid})")


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    debug_to_file: bool = True  # Write JSON debug logs to ~/.local/share/chatrank/logs/
    use_colors: bool = True  # ANSI colors in console output


@dataclass
class Config:
    """Main configuration container."""

    store: StoreConfig = field(default_factory=StoreConfig)
    window: WindowConfig = field(default_factory=WindowConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load configuration from file.

        Args:
            path: Optional path to config file. If not provided, searches
                  XDG config locations.

        Returns:
            Loaded configuration with defaults for missing values.
        """
        config_path: Optional[Path] = None

        if path:
            config_path = Path(path)
        else:
            xdg_config = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
            user_config = Path(xdg_config) / "chatrank" / "config.yaml"

            if user_config.exists():
                config_path = user_config
            else:
                system_config = Path("/etc/chatrank/config.yaml")
                if system_config.exists():
                    config_path = system_config

        if config_path and config_path.exists():
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
            return cls._from_dict(data)

        return cls()

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create config from dictionary."""
        config = cls(
            store=StoreConfig(**data.get("store", {})),
            window=WindowConfig(**data.get("window", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )
        # Validates the tier name
        config.window.min_tier_level()
        return config
