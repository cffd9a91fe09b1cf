"""Configuration primitives for the docvault control plane."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from .models import IsolationMode

MIB = 1024 * 1024
GIB = 1024 * MIB


@dataclass
class StoreConfig:
    state_path: Optional[str] = None
    state_encryption_key: Optional[str] = None


@dataclass
class ObjectStorageConfig:
    backend: str = "local"
    shared_bucket: str = "docvault-shared"
    part_size: int = 5 * MIB
    max_part_count: int = 10_000
    reference_ttl_seconds: int = 3600
    signing_secret: Optional[str] = None
    base_url: str = "http://localhost:9000"
    endpoint_url: Optional[str] = None
    region: Optional[str] = None
    kms_key_id: Optional[str] = None


@dataclass
class AuthConfig:
    shared_secret: Optional[str] = None
    issuer: Optional[str] = None
    audience: Optional[str] = None
    invite_ttl_days: int = 7
    webhook_secret: Optional[str] = None


@dataclass
class TenancyConfig:
    default_isolation_mode: IsolationMode = IsolationMode.SHARED_PREFIX
    default_quota_bytes: int = 200 * GIB
    default_plan: str = "starter"


@dataclass
class MessageBusConfig:
    backend: str = "in-memory"
    topics: List[str] = field(default_factory=lambda: [
        "audit.records",
        "uploads.completed",
        "uploads.aborted",
    ])


@dataclass
class ObservabilityConfig:
    log_level: str = "INFO"
    activity_buffer: int = 200
    metric_history: int = 5000


@dataclass
class DocVaultConfig:
    store: StoreConfig
    object_storage: ObjectStorageConfig
    auth: AuthConfig
    tenancy: TenancyConfig
    message_bus: MessageBusConfig
    observability: ObservabilityConfig

    @staticmethod
    def default() -> "DocVaultConfig":
        return DocVaultConfig(
            store=StoreConfig(),
            object_storage=ObjectStorageConfig(),
            auth=AuthConfig(),
            tenancy=TenancyConfig(),
            message_bus=MessageBusConfig(),
            observability=ObservabilityConfig(),
        )

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "DocVaultConfig":
        env = os.environ if environ is None else environ
        cfg = DocVaultConfig.default()
        cfg.store.state_path = env.get("DOCVAULT_STATE_PATH") or None
        cfg.store.state_encryption_key = env.get("DOCVAULT_STATE_KEY") or None

        storage = cfg.object_storage
        storage.backend = env.get("DOCVAULT_OBJECT_STORE", storage.backend).strip().lower() or "local"
        storage.shared_bucket = env.get("DOCVAULT_SHARED_BUCKET", storage.shared_bucket)
        storage.reference_ttl_seconds = _env_int(env, "DOCVAULT_REFERENCE_TTL", storage.reference_ttl_seconds)
        storage.signing_secret = env.get("DOCVAULT_SIGNING_SECRET") or None
        storage.base_url = env.get("DOCVAULT_OBJECT_BASE_URL", storage.base_url)
        storage.endpoint_url = env.get("DOCVAULT_S3_ENDPOINT") or None
        storage.region = env.get("DOCVAULT_S3_REGION") or None
        storage.kms_key_id = env.get("DOCVAULT_KMS_KEY_ID") or None

        cfg.auth.shared_secret = env.get("DOCVAULT_AUTH_SECRET") or None
        cfg.auth.issuer = env.get("DOCVAULT_AUTH_ISSUER") or None
        cfg.auth.audience = env.get("DOCVAULT_AUTH_AUDIENCE") or None
        cfg.auth.webhook_secret = env.get("DOCVAULT_WEBHOOK_SECRET") or None
        cfg.auth.invite_ttl_days = _env_int(env, "DOCVAULT_INVITE_TTL_DAYS", cfg.auth.invite_ttl_days)

        mode = env.get("DOCVAULT_ISOLATION_MODE")
        if mode:
            cfg.tenancy.default_isolation_mode = IsolationMode(mode.strip().lower())
        quota_gb = env.get("DOCVAULT_DEFAULT_QUOTA_GB")
        if quota_gb:
            cfg.tenancy.default_quota_bytes = int(float(quota_gb) * GIB)
        cfg.observability.log_level = env.get("DOCVAULT_LOG_LEVEL", cfg.observability.log_level).upper()
        return cfg


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default
