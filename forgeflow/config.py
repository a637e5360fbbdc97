from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Execution tuning for workers, retries and timers."""

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 300.0
    backoff_jitter: float = 0.0
    step_timeout: float = 300.0
    poll_interval: float = 5.0
    stale_after: float = 600.0
    workers: int = 4
    timer_batch_size: int = 100


class SecurityConfig(BaseModel):
    """Keys used to verify trigger signatures and internal resume tokens."""

    signing_key: Optional[str] = None
    internal_key: Optional[str] = None
    issuer: str = "forgeflow"
    token_ttl: int = 300


class ForgeflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = Field(default_factory=TransportConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    database_url: Optional[str] = None
    nft_policy_id: Optional[str] = None


def load_config(path: Optional[str] = None) -> ForgeflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FORGEFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FORGEFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ForgeflowConfig(**data)
    else:
        config = ForgeflowConfig()

    env_db_url = os.getenv("FORGEFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    signing_key = os.getenv("FORGEFLOW_SIGNING_KEY")
    if signing_key:
        config.security.signing_key = signing_key
    internal_key = os.getenv("FORGEFLOW_INTERNAL_KEY")
    if internal_key:
        config.security.internal_key = internal_key
    policy_id = os.getenv("NFT_POLICY_ID")
    if policy_id:
        config.nft_policy_id = policy_id
    return config
