"""
Configuration for catalog-bot.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_SKIP_CATEGORIES = [
    "Malaysia TOPUP",
    "China TOPUP",
    "Vietnam Topup",
    "Thailand TOPUP",
    "Singapore TOPUP",
    "Philippines TOPUP",
]


def _from_env(value: str | None, env_name: str | None) -> str | None:
    if value:
        return value
    if env_name:
        return os.environ.get(env_name)
    return None


@dataclass
class CatalogConfig:
    """Catalog platform API configuration."""

    base_url: str = "https://member.digiflazz.com/api/v1/buyer/product"
    xsrf_token: str | None = None
    xsrf_token_env: str | None = "XSRF_TOKEN"
    cookie: str | None = None
    cookie_env: str | None = "COOKIE"
    timeout_seconds: float = 30.0
    rate_limit_sleep_seconds: float = 15.0
    max_rate_limit_retries: int | None = None  # None = keep retrying
    error_delay_seconds: float = 2.0
    delete_retries: int = 3
    delete_retry_delay_seconds: float = 2.0

    def get_xsrf_token(self) -> str | None:
        """Get XSRF token from config or environment."""
        return _from_env(self.xsrf_token, self.xsrf_token_env)

    def get_cookie(self) -> str | None:
        """Get session cookie from config or environment."""
        return _from_env(self.cookie, self.cookie_env)


@dataclass
class TelegramConfig:
    """Telegram bot used to reach the operator."""

    token: str | None = None
    token_env: str | None = "TELEGRAM_BOT_TOKEN"
    chat_id: str = ""
    api_base: str = "https://api.telegram.org"
    poll_timeout_seconds: int = 30

    def get_token(self) -> str | None:
        """Get bot token from config or environment."""
        return _from_env(self.token, self.token_env)


@dataclass
class CodesConfig:
    """Product code generation settings."""

    backup1_suffix: str = "B1"
    backup2_suffix: str = "B2"
    max_length: int = 15


@dataclass
class ApprovalConfig:
    """Human approval settings."""

    enabled: bool = True
    fallback_mode: str = "auto"  # used when mode selection cannot reach the operator
    timeout_seconds: float | None = None  # None = wait for the operator forever
    notify_rate_limits: bool = True


@dataclass
class PipelineConfig:
    """Which categories to touch and how fast."""

    skip_categories: list[str] = field(default_factory=lambda: list(DEFAULT_SKIP_CATEGORIES))
    categories: list[str] | None = None  # None = all categories
    row_selection: str = "all"  # all, unset (rows without a code) or disturbance
    delay_between_items_seconds: float = 0.1


@dataclass
class BotConfig:
    """Complete catalog-bot configuration."""

    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    codes: CodesConfig = field(default_factory=CodesConfig)
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BotConfig":
        """Create config from a dictionary (e.g., from YAML)."""
        config = cls()

        if "catalog" in data:
            cat = data["catalog"]
            config.catalog = CatalogConfig(
                base_url=cat.get("base_url", config.catalog.base_url),
                xsrf_token=cat.get("xsrf_token"),
                xsrf_token_env=cat.get("xsrf_token_env", "XSRF_TOKEN"),
                cookie=cat.get("cookie"),
                cookie_env=cat.get("cookie_env", "COOKIE"),
                timeout_seconds=cat.get("timeout_seconds", 30.0),
                rate_limit_sleep_seconds=cat.get("rate_limit_sleep_seconds", 15.0),
                max_rate_limit_retries=cat.get("max_rate_limit_retries"),
                error_delay_seconds=cat.get("error_delay_seconds", 2.0),
                delete_retries=cat.get("delete_retries", 3),
                delete_retry_delay_seconds=cat.get("delete_retry_delay_seconds", 2.0),
            )

        if "telegram" in data:
            tg = data["telegram"]
            config.telegram = TelegramConfig(
                token=tg.get("token"),
                token_env=tg.get("token_env", "TELEGRAM_BOT_TOKEN"),
                chat_id=str(tg.get("chat_id", "")),
                api_base=tg.get("api_base", config.telegram.api_base),
                poll_timeout_seconds=tg.get("poll_timeout_seconds", 30),
            )

        if "codes" in data:
            codes = data["codes"]
            config.codes = CodesConfig(
                backup1_suffix=codes.get("backup1_suffix", "B1"),
                backup2_suffix=codes.get("backup2_suffix", "B2"),
                max_length=codes.get("max_length", 15),
            )

        if "approval" in data:
            ap = data["approval"]
            config.approval = ApprovalConfig(
                enabled=ap.get("enabled", True),
                fallback_mode=ap.get("fallback_mode", "auto"),
                timeout_seconds=ap.get("timeout_seconds"),
                notify_rate_limits=ap.get("notify_rate_limits", True),
            )

        if "pipeline" in data:
            pl = data["pipeline"]
            config.pipeline = PipelineConfig(
                skip_categories=pl.get("skip_categories", list(DEFAULT_SKIP_CATEGORIES)),
                categories=pl.get("categories"),
                row_selection=pl.get("row_selection", "all"),
                delay_between_items_seconds=pl.get("delay_between_items_seconds", 0.1),
            )

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "BotConfig":
        """Load config from a YAML file. A missing file gives the defaults."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    def validate(self) -> list[str]:
        """Return a list of problems that would stop a run."""
        errors = []
        if not self.catalog.get_xsrf_token():
            errors.append("catalog XSRF token is not set")
        if not self.catalog.get_cookie():
            errors.append("catalog cookie is not set")
        if self.approval.enabled:
            if not self.telegram.get_token():
                errors.append("telegram bot token is not set")
            if not self.telegram.chat_id:
                errors.append("telegram chat_id is not set")
        if self.approval.fallback_mode not in ("auto", "confirm"):
            errors.append(f"unknown approval fallback_mode: {self.approval.fallback_mode}")
        if self.pipeline.row_selection not in ("all", "unset", "disturbance"):
            errors.append(f"unknown pipeline row_selection: {self.pipeline.row_selection}")
        return errors

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for logging. Secrets are left out."""
        return {
            "catalog": {
                "base_url": self.catalog.base_url,
                "timeout_seconds": self.catalog.timeout_seconds,
                "rate_limit_sleep_seconds": self.catalog.rate_limit_sleep_seconds,
                "max_rate_limit_retries": self.catalog.max_rate_limit_retries,
            },
            "telegram": {
                "chat_id": self.telegram.chat_id,
                "api_base": self.telegram.api_base,
            },
            "codes": {
                "backup1_suffix": self.codes.backup1_suffix,
                "backup2_suffix": self.codes.backup2_suffix,
                "max_length": self.codes.max_length,
            },
            "approval": {
                "enabled": self.approval.enabled,
                "fallback_mode": self.approval.fallback_mode,
                "timeout_seconds": self.approval.timeout_seconds,
            },
            "pipeline": {
                "skip_categories": self.pipeline.skip_categories,
                "categories": self.pipeline.categories,
                "row_selection": self.pipeline.row_selection,
            },
        }
