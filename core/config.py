"""
Shared configuration for Cosmic Quirks core.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("cosmicquirks")

TIERS = ("unregistered", "registered", "premium")

DEFAULT_FORM_TYPE = "fortune"
DEFAULT_REGISTERED_FORMS = "fortune,matchmaking,birthday,career,travel"


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_list(env_name: str, default: str) -> tuple[str, ...]:
    value = os.environ.get(env_name, default)
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class ImageTierSettings:
    max_size_kb: int = 450
    base_quality: int = 85


@dataclass(frozen=True)
class Settings:
    # Database
    db_backend: str = "postgres"
    database_url: Optional[str] = None
    sqlite_path: str = "/data/cosmicquirks.db"
    auto_migrate_on_startup: bool = True

    # Daily quotas per tier
    daily_limits: dict = field(
        default_factory=lambda: {"unregistered": 100, "registered": 10, "premium": 50}
    )
    # Form allow-lists per tier
    allowed_forms: dict = field(
        default_factory=lambda: {
            "unregistered": (DEFAULT_FORM_TYPE,),
            "registered": tuple(DEFAULT_REGISTERED_FORMS.split(",")),
            "premium": tuple(DEFAULT_REGISTERED_FORMS.split(",")),
        }
    )

    # Asset pool
    min_asset_pool_size: int = 100
    asset_reuse_cooldown_days: int = 7
    asset_candidate_limit: int = 10
    asset_remove_unused_after_days: int = 90
    asset_max_pool_size: int = 1000

    # Image tiering
    image_tiers: dict = field(
        default_factory=lambda: {tier: ImageTierSettings() for tier in TIERS}
    )
    minimum_image_quality: int = 60
    enable_dynamic_quality_adjustment: bool = False
    size_optimization_iterations: int = 5

    # Maintenance
    maintenance_interval_seconds: int = 3600
    usage_retention_days: int = 30

    # External providers
    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_text_model: str = "gpt-4o-mini"
    openai_image_model: str = "dall-e-3"
    auth_provider_url: Optional[str] = None
    auth_provider_api_key: Optional[str] = None
    text_generation_timeout_seconds: float = 30.0
    image_generation_timeout_seconds: float = 90.0
    auth_timeout_seconds: float = 10.0

    def limit_for_tier(self, tier: str) -> int:
        return int(self.daily_limits.get(tier, self.daily_limits["unregistered"]))

    def image_tier(self, tier: str) -> ImageTierSettings:
        return self.image_tiers.get(tier) or ImageTierSettings()

    def resolved_database_url(self) -> Optional[str]:
        if self.database_url:
            return self.database_url
        if self.db_backend == "sqlite" and self.sqlite_path:
            return f"sqlite:///{self.sqlite_path}"
        return None

    def validate(self) -> None:
        """Validate settings, raising with every problem found."""
        errors = []
        if self.db_backend not in {"postgres", "sqlite"}:
            errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

        url = self.resolved_database_url()
        if not url:
            errors.append("DATABASE_URL environment variable is required")
        else:
            is_sqlite_url = url.lower().startswith("sqlite")
            if self.db_backend == "sqlite" and not is_sqlite_url:
                errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
            if self.db_backend == "postgres" and is_sqlite_url:
                errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

        for tier in TIERS:
            if self.daily_limits.get(tier, -1) < 0:
                errors.append(f"{tier.upper()}_DAILY_LIMIT must be >= 0")
            if not self.allowed_forms.get(tier):
                errors.append(f"{tier.upper()}_FORMS must list at least one form")
            tier_cfg = self.image_tier(tier)
            if not 1 <= tier_cfg.base_quality <= 100:
                errors.append(f"{tier.upper()}_USER_BASE_QUALITY must be between 1 and 100")
            elif tier_cfg.base_quality < self.minimum_image_quality:
                errors.append(
                    f"{tier.upper()}_USER_BASE_QUALITY must not be below MINIMUM_IMAGE_QUALITY"
                )
            if tier_cfg.max_size_kb < 0:
                errors.append(f"{tier.upper()}_USER_MAX_IMAGE_SIZE_KB must be >= 0")

        if not 1 <= self.minimum_image_quality <= 100:
            errors.append("MINIMUM_IMAGE_QUALITY must be between 1 and 100")
        if self.size_optimization_iterations < 1:
            errors.append("SIZE_OPTIMIZATION_ITERATIONS must be >= 1")
        if self.asset_reuse_cooldown_days < 0:
            errors.append("ASSET_REUSE_COOLDOWN_DAYS must be >= 0")
        if self.asset_candidate_limit < 1:
            errors.append("ASSET_CANDIDATE_LIMIT must be >= 1")
        for name in (
            "text_generation_timeout_seconds",
            "image_generation_timeout_seconds",
            "auth_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name.upper()} must be > 0")

        if errors:
            raise RuntimeError("Configuration invalid: " + "; ".join(errors))


def _load_image_tier(tier: str) -> ImageTierSettings:
    prefix = tier.upper()
    return ImageTierSettings(
        max_size_kb=_get_int(f"{prefix}_USER_MAX_IMAGE_SIZE_KB", 450),
        base_quality=_get_int(f"{prefix}_USER_BASE_QUALITY", 85),
    )


def load_settings_from_env() -> Settings:
    """Read every recognized option from the environment into one Settings."""
    registered_forms = _get_list("REGISTERED_FORMS", DEFAULT_REGISTERED_FORMS)
    return Settings(
        db_backend=os.environ.get("DB_BACKEND", "postgres").strip().lower(),
        database_url=os.environ.get("DATABASE_URL"),
        sqlite_path=os.environ.get("SQLITE_PATH", "/data/cosmicquirks.db"),
        auto_migrate_on_startup=_get_bool("AUTO_MIGRATE_ON_STARTUP", True),
        daily_limits={
            "unregistered": _get_int("UNREGISTERED_DAILY_LIMIT", 100),
            "registered": _get_int("REGISTERED_DAILY_LIMIT", 10),
            "premium": _get_int("PREMIUM_DAILY_LIMIT", 50),
        },
        allowed_forms={
            "unregistered": _get_list("UNREGISTERED_FORMS", DEFAULT_FORM_TYPE),
            "registered": registered_forms,
            "premium": _get_list("PREMIUM_FORMS", ",".join(registered_forms)),
        },
        min_asset_pool_size=_get_int("MIN_ASSET_POOL_SIZE", 100),
        asset_reuse_cooldown_days=_get_int("ASSET_REUSE_COOLDOWN_DAYS", 7),
        asset_candidate_limit=_get_int("ASSET_CANDIDATE_LIMIT", 10),
        asset_remove_unused_after_days=_get_int("ASSET_REMOVE_UNUSED_AFTER_DAYS", 90),
        asset_max_pool_size=_get_int("ASSET_MAX_POOL_SIZE", 1000),
        image_tiers={tier: _load_image_tier(tier) for tier in TIERS},
        minimum_image_quality=_get_int("MINIMUM_IMAGE_QUALITY", 60),
        enable_dynamic_quality_adjustment=_get_bool("ENABLE_DYNAMIC_QUALITY_ADJUSTMENT", False),
        size_optimization_iterations=_get_int("SIZE_OPTIMIZATION_ITERATIONS", 5),
        maintenance_interval_seconds=_get_int("MAINTENANCE_INTERVAL_SECONDS", 3600),
        usage_retention_days=_get_int("USAGE_RETENTION_DAYS", 30),
        openai_api_key=os.environ.get("OPENAI_API_KEY"),
        openai_base_url=os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
        openai_text_model=os.environ.get("OPENAI_TEXT_MODEL", "gpt-4o-mini"),
        openai_image_model=os.environ.get("OPENAI_IMAGE_MODEL", "dall-e-3"),
        auth_provider_url=os.environ.get("AUTH_PROVIDER_URL"),
        auth_provider_api_key=os.environ.get("AUTH_PROVIDER_API_KEY"),
        text_generation_timeout_seconds=_get_float("TEXT_GENERATION_TIMEOUT_SECONDS", 30.0),
        image_generation_timeout_seconds=_get_float("IMAGE_GENERATION_TIMEOUT_SECONDS", 90.0),
        auth_timeout_seconds=_get_float("AUTH_TIMEOUT_SECONDS", 10.0),
    )
