"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based
configuration. Cap defaults, bonus tiers, minimum amounts and SLA windows live
here and are passed into each component at construction.
"""

from decimal import Decimal
from typing import Dict, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


# Milestone tiers allowed by the persisted bonus type
PERSISTED_BONUS_TIERS = (1, 2, 3, 4, 8, 12)

# Most urgent first
SEVERITY_ORDER = ("critical", "high", "medium", "low")


class EngineConfig(BaseSettings):
    """Remittance compliance & incentive engine configuration"""

    # Storage configuration
    database_url: str = "sqlite:///remit_engine.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Calendar used for cap periods and signup anchor days
    timezone: str = "Europe/London"

    # Cap rules
    default_monthly_cap: Decimal = Decimal("5000")
    default_anchor_day: int = 1
    max_signup_anchor_day: int = 28

    # Bonus rules
    bonus_minimum_amount: Decimal = Decimal("85")
    bonus_cooldown_hours: int = 24
    milestone_bonuses: Dict[int, int] = {4: 500, 8: 700, 12: 1000}
    bonus_cycle_length: int = 12

    # Compliance flag SLA windows (hours)
    sla_hours: Dict[str, int] = {"critical": 4, "high": 24, "medium": 72, "low": 168}

    # Reference ID generation
    ref_id_length: int = 14
    ref_id_max_attempts: int = 5
    ref_id_insert_retries: int = 3

    @field_validator("milestone_bonuses")
    @classmethod
    def _check_milestone_tiers(cls, value: Dict[int, int]) -> Dict[int, int]:
        for tier, amount in value.items():
            if tier not in PERSISTED_BONUS_TIERS:
                raise ValueError(
                    f"Milestone {tier} is not one of the persisted tiers {PERSISTED_BONUS_TIERS}"
                )
            if amount <= 0:
                raise ValueError(f"Bonus for milestone {tier} must be positive")
        return dict(sorted(value.items()))

    @field_validator("sla_hours")
    @classmethod
    def _check_sla_ordering(cls, value: Dict[str, int]) -> Dict[str, int]:
        missing = [s for s in SEVERITY_ORDER if s not in value]
        if missing:
            raise ValueError(f"SLA windows missing for severities: {', '.join(missing)}")
        windows = [value[s] for s in SEVERITY_ORDER]
        if any(w <= 0 for w in windows):
            raise ValueError("SLA windows must be positive")
        if any(a >= b for a, b in zip(windows, windows[1:])):
            raise ValueError("SLA windows must strictly increase from critical to low")
        return value

    @field_validator("default_anchor_day")
    @classmethod
    def _check_anchor_day(cls, value: int) -> int:
        if not 1 <= value <= 28:
            raise ValueError("Default anchor day must be between 1 and 28")
        return value

    @field_validator("ref_id_length")
    @classmethod
    def _check_ref_id_length(cls, value: int) -> int:
        if not 14 <= value <= 16:
            raise ValueError("Reference IDs must be 14-16 digits long")
        return value

    def sla_window_hours(self, severity: str) -> int:
        """Allotted review hours for a flag severity"""
        return self.sla_hours[severity]

    class Config:
        env_prefix = "REMIT_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = EngineConfig()


def get_config() -> EngineConfig:
    """Get global configuration instance"""
    return config


def reload_config(**overrides) -> EngineConfig:
    """Reload configuration from environment"""
    global config
    config = EngineConfig(**overrides)
    return config


def resolve_config(candidate: Optional[EngineConfig]) -> EngineConfig:
    """Use the given configuration or fall back to the global one"""
    return candidate if candidate is not None else get_config()
