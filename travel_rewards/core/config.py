from __future__ import annotations
from pydantic_settings import BaseSettings
from pydantic import Field

class Settings(BaseSettings):
    database_url: str = Field(..., alias="DATABASE_URL")
    auth_jwks_url: str = Field(..., alias="AUTH_JWKS_URL")
    token_issuer: str = Field("authentication-svc", alias="TOKEN_ISSUER")

    # check-in / redemption policy
    default_visit_radius_m: int = Field(100, alias="DEFAULT_VISIT_RADIUS_M")
    checkin_cooldown_hours: int = Field(24, alias="CHECKIN_COOLDOWN_HOURS")
    redemption_radius_m: int = Field(200, alias="REDEMPTION_RADIUS_M")
    level_step_points: int = Field(500, alias="LEVEL_STEP_POINTS")
    redemption_code_length: int = Field(8, alias="REDEMPTION_CODE_LENGTH")

    # expiry sweep
    expiry_sweep_interval_sec: int = Field(3600, alias="EXPIRY_SWEEP_INTERVAL_SEC")
    enable_scheduler: bool = Field(default=True, alias="ENABLE_SCHEDULER")
    sweep_lock_ttl_seconds: int = Field(900, alias="SWEEP_LOCK_TTL_SECONDS")

    # Redis
    redis_url: str = Field("redis://127.0.0.1:6379/0", alias="REDIS_URL")
    rl_enabled: bool = Field(default=True, alias="RL_ENABLED")
    rl_window_seconds: int = Field(default=60, alias="RL_WINDOW_SECONDS")
    rl_max_reqs: int = Field(default=60, alias="RL_MAX_REQS")
    cache_enabled: bool = Field(default=True, alias="CACHE_ENABLED")
    cache_ttl_seconds: int = Field(default=300, alias="CACHE_TTL_SECONDS")

    # NATS
    nats_urls: str = Field("nats://127.0.0.1:4222", alias="NATS_URLS")
    nats_subject_checkin: str = Field("checkins.recorded", alias="NATS_SUBJECT_CHECKIN")
    enable_nats: bool = Field(default=True, alias="ENABLE_NATS")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        env_prefix = ""
        case_sensitive = False

_settings: Settings | None = None
def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
