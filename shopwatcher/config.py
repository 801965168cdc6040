"""Configuration management."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from .amiami import API_URL as AMIAMI_API_URL
from .db import DEFAULT_DB_PATH

DEFAULT_CONFIG_PATHS = (
    Path("shopwatcher.yaml"),
    Path.home() / ".shopwatcher" / "config.yaml",
)

ENV_PREFIX = "SHOPWATCHER_"


class ConfigError(Exception):
    """Raised when the configuration file cannot be used."""

    pass


@dataclass
class ScraperConfig:
    """Storefront scraping settings."""
    base_url: str = "https://www.melonbooks.co.jp"
    page_size: int = 100
    max_pages: int = 20
    timeout: int = 30
    retries: int = 3


@dataclass
class AmiamiConfig:
    """amiami item search settings."""
    enabled: bool = True
    api_url: str = AMIAMI_API_URL
    page_size: int = 50
    # Newest pages read per category
    max_pages: int = 3
    timeout: int = 30
    retries: int = 3
    username: str = "Amiami-Scraper"


@dataclass
class DiscordConfig:
    """Discord webhook settings."""
    webhook_url: Optional[str] = field(default=None, repr=False)
    username: str = "Melonbooks-Scraper"
    avatar_url: Optional[str] = None
    chunk_size: int = 10
    chunk_delay: float = 1.0
    timeout: int = 30


@dataclass
class Settings:
    """Application settings."""

    db_path: Path = DEFAULT_DB_PATH
    log_level: str = "INFO"
    # Crontab expression, five fields
    schedule: str = "0 * * * *"
    # Seconds to wait for another process's run; 0 fails at once
    lock_timeout: float = 0

    scraper: ScraperConfig = field(default_factory=ScraperConfig)
    amiami: AmiamiConfig = field(default_factory=AmiamiConfig)
    discord: DiscordConfig = field(default_factory=DiscordConfig)


def load_config(config_path: Path) -> dict:
    """Load configuration from YAML file."""
    if not config_path.exists():
        return {}

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    return config


def find_config_path() -> Optional[Path]:
    for path in DEFAULT_CONFIG_PATHS:
        if path.exists():
            return path
    return None


def _apply_section(target, section: str, values: dict) -> None:
    if not isinstance(values, dict):
        raise ConfigError(f"Section '{section}' must be a mapping")

    known = {f.name for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            raise ConfigError(f"Unknown key '{key}' in section '{section}'")
        setattr(target, key, value)


def get_settings(config_path: Optional[Path] = None) -> Settings:
    """Get application settings from YAML config and environment.

    Args:
        config_path: Explicit config file; when omitted the default
            locations are searched and a missing file means defaults
    """
    if config_path is None:
        config_path = find_config_path()
    elif not config_path.exists():
        raise ConfigError(f"Config file {config_path} does not exist")

    config = load_config(config_path) if config_path else {}
    settings = Settings()

    if "db_path" in config:
        settings.db_path = Path(config["db_path"]).expanduser()
    if "log_level" in config:
        settings.log_level = str(config["log_level"])
    if "schedule" in config:
        settings.schedule = str(config["schedule"])
    if "lock_timeout" in config:
        settings.lock_timeout = float(config["lock_timeout"])
    if "scraper" in config:
        _apply_section(settings.scraper, "scraper", config["scraper"])
    if "amiami" in config:
        _apply_section(settings.amiami, "amiami", config["amiami"])
    if "discord" in config:
        _apply_section(settings.discord, "discord", config["discord"])

    unknown = set(config) - {"db_path", "log_level", "schedule", "lock_timeout", "scraper", "amiami", "discord"}
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

    # Environment wins over the file
    if os.getenv(ENV_PREFIX + "DB_PATH"):
        settings.db_path = Path(os.environ[ENV_PREFIX + "DB_PATH"]).expanduser()
    if os.getenv(ENV_PREFIX + "LOG_LEVEL"):
        settings.log_level = os.environ[ENV_PREFIX + "LOG_LEVEL"]
    if os.getenv(ENV_PREFIX + "SCHEDULE"):
        settings.schedule = os.environ[ENV_PREFIX + "SCHEDULE"]
    if os.getenv(ENV_PREFIX + "DISCORD_WEBHOOK_URL"):
        settings.discord.webhook_url = os.environ[ENV_PREFIX + "DISCORD_WEBHOOK_URL"]

    return settings
