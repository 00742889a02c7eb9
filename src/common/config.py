from __future__ import annotations

import os
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, Field, model_validator


# Environment variable names
ENV_STATE_BUCKET = "STATE_BUCKET"
ENV_ENDPOINT_URL = "AWS_ENDPOINT_URL"
ENV_REGION = "AWS_REGION"
ENV_FERNET_KEY = "CREDENTIALS_FERNET_KEY"
ENV_CLIENT_ID = "CLIENT_ID"
ENV_AUTH_DIR = "AUTH_DIR"
ENV_SYNC_INDEX_PATH = "SYNC_INDEX_PATH"
ENV_SYNC_POLICY = "SYNC_POLICY"
ENV_BRIDGE_URL = "BRIDGE_URL"
ENV_BRIDGE_TOKEN = "BRIDGE_TOKEN"
ENV_WEBHOOK_URL = "WEBHOOK_URL"
ENV_WEBHOOK_TIMEOUT = "WEBHOOK_TIMEOUT_SECONDS"
ENV_REPLY_DELAY_MIN = "REPLY_DELAY_MIN_SECONDS"
ENV_REPLY_DELAY_MAX = "REPLY_DELAY_MAX_SECONDS"
ENV_RECONNECT_DELAY = "RECONNECT_DELAY_SECONDS"
ENV_RECONNECT_MAX_DELAY = "RECONNECT_MAX_DELAY_SECONDS"
ENV_RECONNECT_JITTER = "RECONNECT_JITTER_SECONDS"
ENV_DEDUP_CAPACITY = "DEDUP_CAPACITY"
ENV_BR_MOBILE_FIX = "BR_MOBILE_DIGIT_FIX"
ENV_HOST = "HOST"
ENV_PORT = "PORT"
ENV_LOG_LEVEL = "LOG_LEVEL"

# Backward-compatible fallbacks (names used by the Supabase-era deployment)
FALLBACK_ENV_STATE_BUCKET = "SUPABASE_BUCKET"
FALLBACK_ENV_CLIENT_ID = "WHATSAPP_CLIENT_ID"
FALLBACK_ENV_WEBHOOK_URL = "N8N_WEBHOOK_URL"

SYNC_POLICIES = ("full", "incremental")
_TRUTHY = {"1", "true", "yes", "on"}


def _getenv(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    v = env.get(name)
    return v if v not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


class Settings(BaseModel):
    """
    Process configuration resolved once at startup.

    Notes
    - Only `state_bucket` is required; everything else has a working default.
    - Defaults reproduce the observed relay behavior: 5 s fixed reconnect
      backoff, 10-20 s reply delay, 500-entry dedup window.
    """

    state_bucket: str
    endpoint_url: Optional[str] = None
    region_name: Optional[str] = None
    fernet_key: Optional[str] = None

    client_id: str = "bot-960lite"
    auth_dir: str = ""
    sync_index_path: str = ""
    sync_policy: str = "incremental"

    bridge_url: str = "ws://127.0.0.1:3001"
    bridge_token: Optional[str] = None

    webhook_url: Optional[str] = None
    webhook_timeout: float = Field(default=30.0, gt=0)
    reply_delay_min: float = Field(default=10.0, ge=0)
    reply_delay_max: float = Field(default=20.0, ge=0)

    reconnect_delay: float = Field(default=5.0, gt=0)
    reconnect_max_delay: float = Field(default=5.0, gt=0)
    reconnect_jitter: float = Field(default=0.0, ge=0)

    dedup_capacity: int = Field(default=500, gt=0)
    br_mobile_digit_fix: bool = True

    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check(self) -> "Settings":
        if self.sync_policy not in SYNC_POLICIES:
            raise ValueError(f"sync_policy must be one of {SYNC_POLICIES}, got {self.sync_policy!r}")
        if self.reply_delay_min > self.reply_delay_max:
            raise ValueError("reply delay window is empty: min > max")
        if self.reconnect_max_delay < self.reconnect_delay:
            raise ValueError("reconnect_max_delay must be >= reconnect_delay")
        # Derived paths default off the client id
        if not self.auth_dir:
            self.auth_dir = os.path.abspath(f"./{self.client_id}_auth")
        if not self.sync_index_path:
            self.sync_index_path = self.auth_dir.rstrip("/\\") + ".sync.json"
        return self

    @property
    def remote_namespace(self) -> str:
        return f"{self.client_id}_auth"

    # -------- Construction helpers --------
    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables; empty values count as unset."""
        env = os.environ if env is None else env
        bucket = _getenv(env, ENV_STATE_BUCKET) or _getenv(env, FALLBACK_ENV_STATE_BUCKET)
        bucket = _require(bucket, ENV_STATE_BUCKET)

        raw: Dict[str, object] = {"state_bucket": bucket}
        optional = {
            "endpoint_url": ENV_ENDPOINT_URL,
            "region_name": ENV_REGION,
            "fernet_key": ENV_FERNET_KEY,
            "auth_dir": ENV_AUTH_DIR,
            "sync_index_path": ENV_SYNC_INDEX_PATH,
            "sync_policy": ENV_SYNC_POLICY,
            "bridge_url": ENV_BRIDGE_URL,
            "bridge_token": ENV_BRIDGE_TOKEN,
            "webhook_timeout": ENV_WEBHOOK_TIMEOUT,
            "reply_delay_min": ENV_REPLY_DELAY_MIN,
            "reply_delay_max": ENV_REPLY_DELAY_MAX,
            "reconnect_delay": ENV_RECONNECT_DELAY,
            "reconnect_max_delay": ENV_RECONNECT_MAX_DELAY,
            "reconnect_jitter": ENV_RECONNECT_JITTER,
            "dedup_capacity": ENV_DEDUP_CAPACITY,
            "host": ENV_HOST,
            "port": ENV_PORT,
            "log_level": ENV_LOG_LEVEL,
        }
        for field, name in optional.items():
            val = _getenv(env, name)
            if val is not None:
                raw[field] = val.strip()

        client_id = _getenv(env, ENV_CLIENT_ID) or _getenv(env, FALLBACK_ENV_CLIENT_ID)
        if client_id:
            raw["client_id"] = client_id
        webhook = _getenv(env, ENV_WEBHOOK_URL) or _getenv(env, FALLBACK_ENV_WEBHOOK_URL)
        if webhook:
            raw["webhook_url"] = webhook

        # A fixed backoff is the default: the cap follows the base unless set
        if "reconnect_delay" in raw and "reconnect_max_delay" not in raw:
            raw["reconnect_max_delay"] = raw["reconnect_delay"]

        br_fix = _getenv(env, ENV_BR_MOBILE_FIX)
        if br_fix is not None:
            raw["br_mobile_digit_fix"] = br_fix.strip().lower() in _TRUTHY

        return cls.model_validate(raw)


__all__ = ["Settings", "SYNC_POLICIES"]
