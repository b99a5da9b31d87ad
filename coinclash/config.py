"""
Configuration management for CoinClash.
Supports config.json with environment variable overrides.
All paths are resolved relative to the project root.
"""

import json
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

# Project root directory (parent of 'coinclash' folder)
PROJECT_ROOT = Path(__file__).parent.parent


def get_env(key: str, default: str = None) -> Optional[str]:
    """Get environment variable with optional default."""
    return os.environ.get(key, default)


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    val = os.environ.get(key)
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes", "on")


def get_env_int(key: str, default: int = 0) -> int:
    """Get integer environment variable."""
    val = os.environ.get(key)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def get_env_float(key: str, default: float = 0.0) -> float:
    """Get float environment variable."""
    val = os.environ.get(key)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        return default


# ==================== Configuration Models ====================

class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = False
    name: str = "CoinClash"


class SecurityConfig(BaseModel):
    secret_key: str = "CHANGE_THIS_IN_PRODUCTION_PLEASE"
    session_max_age_days: int = 30


class WalletConfig(BaseModel):
    starting_balance: float = 0.0
    platform_username: str = "__platform__"


class MatchmakingConfig(BaseModel):
    min_stake: int = 1
    max_stake: int = 10000
    allowed_stakes: List[int] = Field(default_factory=lambda: [10, 20, 50, 100])
    win_multiplier: float = 2.0
    soft_timeout_seconds: int = 30  # Client shows "no match" but the entry stays live
    hard_expiry_seconds: int = 0  # 0 = waiting entries never expire


class MultiplayerConfig(BaseModel):
    round_duration_seconds: int = 120
    platform_fee_percent: float = 5.0
    min_bet: int = 1
    cancelled_cooldown_seconds: int = 5
    completed_cooldown_seconds: int = 10


class PaymentsConfig(BaseModel):
    """Razorpay-compatible gateway settings."""
    gateway_url: str = "https://api.razorpay.com/v1"
    key_id: str = ""
    key_secret: str = ""
    min_amount: float = 1.0
    max_amount: float = 100000.0
    currencies: List[str] = Field(default_factory=lambda: ["INR", "USD"])
    request_timeout_seconds: float = 10.0
    referral_bonus: float = 50.0


class BonusConfig(BaseModel):
    daily_amount: float = 10.0
    cooldown_hours: int = 24
    streak_grace_hours: int = 36


class WithdrawalsConfig(BaseModel):
    min_amount: float = 100.0
    methods: List[str] = Field(default_factory=lambda: ["upi", "bank"])


class SchedulerConfig(BaseModel):
    enabled: bool = True
    round_tick_seconds: int = 1
    settle_sessions_seconds: int = 15
    expire_queue_seconds: int = 60


class RateLimitConfig(BaseModel):
    enabled: bool = True
    game_requests: str = "30/minute"  # Queue joins, flips, bets
    auth_requests: str = "10/minute"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_to_file: bool = False
    formatter: str = "color"


class PathsConfig(BaseModel):
    """All paths are relative to PROJECT_ROOT."""
    config_file: str = "config.json"
    database: str = "data/coinclash.db"
    log_file: str = "data/coinclash.log"

    def get_config_path(self) -> Path:
        return PROJECT_ROOT / self.config_file

    def get_db_path(self) -> Path:
        return PROJECT_ROOT / self.database

    def get_log_path(self) -> Path:
        return PROJECT_ROOT / self.log_file


class AppConfig(BaseModel):
    """Main application configuration."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    wallet: WalletConfig = Field(default_factory=WalletConfig)
    matchmaking: MatchmakingConfig = Field(default_factory=MatchmakingConfig)
    multiplayer: MultiplayerConfig = Field(default_factory=MultiplayerConfig)
    payments: PaymentsConfig = Field(default_factory=PaymentsConfig)
    bonus: BonusConfig = Field(default_factory=BonusConfig)
    withdrawals: WithdrawalsConfig = Field(default_factory=WithdrawalsConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)


# ==================== Configuration Loading ====================

def load_config() -> AppConfig:
    """
    Load configuration from config.json with environment variable overrides.
    Environment variables take precedence over config.json values.
    """
    config_path = PROJECT_ROOT / "config.json"

    data = {}

    if config_path.exists():
        with open(config_path, "r") as f:
            data = json.load(f)

    if get_env("SERVER_HOST"):
        data.setdefault("server", {})["host"] = get_env("SERVER_HOST")
    if get_env("SERVER_PORT"):
        data.setdefault("server", {})["port"] = get_env_int("SERVER_PORT", 8000)
    if get_env("DEBUG"):
        data.setdefault("server", {})["debug"] = get_env_bool("DEBUG")

    if get_env("SECRET_KEY"):
        data.setdefault("security", {})["secret_key"] = get_env("SECRET_KEY")

    if get_env("DB_PATH"):
        data.setdefault("paths", {})["database"] = get_env("DB_PATH")

    if get_env("RAZORPAY_KEY_ID"):
        data.setdefault("payments", {})["key_id"] = get_env("RAZORPAY_KEY_ID")
    if get_env("RAZORPAY_KEY_SECRET"):
        data.setdefault("payments", {})["key_secret"] = get_env("RAZORPAY_KEY_SECRET")

    if get_env("PLATFORM_FEE_PERCENT"):
        data.setdefault("multiplayer", {})["platform_fee_percent"] = get_env_float(
            "PLATFORM_FEE_PERCENT", 5.0
        )
    if get_env("ROUND_DURATION_SECONDS"):
        data.setdefault("multiplayer", {})["round_duration_seconds"] = get_env_int(
            "ROUND_DURATION_SECONDS", 120
        )

    if get_env("SCHEDULER_ENABLED"):
        data.setdefault("scheduler", {})["enabled"] = get_env_bool("SCHEDULER_ENABLED", True)

    if get_env("LOG_LEVEL"):
        data.setdefault("logging", {})["level"] = get_env("LOG_LEVEL")
    if get_env("LOG_TO_FILE"):
        data.setdefault("logging", {})["log_to_file"] = get_env_bool("LOG_TO_FILE")
    if get_env("LOG_FORMATTER"):
        data.setdefault("logging", {})["formatter"] = get_env("LOG_FORMATTER")

    if get_env("RATE_LIMIT_ENABLED"):
        data.setdefault("rate_limit", {})["enabled"] = get_env_bool("RATE_LIMIT_ENABLED", True)
    if get_env("RATE_LIMIT_GAME_REQUESTS"):
        data.setdefault("rate_limit", {})["game_requests"] = get_env("RATE_LIMIT_GAME_REQUESTS")

    return AppConfig(**data)


# Global config instance
settings = load_config()
