"""Runtime wiring for the docvault control plane."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import DocVaultConfig
from .messaging import InMemoryBus, build_bus
from .services.activity_service import ActivityService
from .services.audit_service import AUDIT_TOPIC, AuditSink
from .services.authorization import AuthorizationEngine
from .services.identity_service import HmacTokenVerifier, IdentityService, IdentityVerifier
from .services.metadata_service import MetadataService
from .services.org_service import OrganizationService
from .services.sharing_service import ShareRegistry
from .services.upload_service import UploadSessionCoordinator
from .services.user_service import UserService
from .storage.document_store import (
    AUDIT_RECORDS,
    FILES,
    ORGANIZATIONS,
    SHARES,
    UPLOAD_SESSIONS,
    USERS,
    DocumentStore,
    InMemoryDocumentStore,
)
from .storage.object_store import ObjectStorage, build_object_store
from .telemetry import TelemetryCollector


@dataclass
class DocVaultRuntime:
    config: DocVaultConfig
    store: DocumentStore
    objects: ObjectStorage
    bus: InMemoryBus
    telemetry: TelemetryCollector
    authorizer: AuthorizationEngine
    audit: AuditSink
    identity: IdentityService
    metadata_service: MetadataService
    sharing_service: ShareRegistry
    upload_service: UploadSessionCoordinator
    org_service: OrganizationService
    user_service: UserService
    activity_service: ActivityService

    @classmethod
    def bootstrap(
        cls,
        config: Optional[DocVaultConfig] = None,
        *,
        store: Optional[DocumentStore] = None,
        objects: Optional[ObjectStorage] = None,
        verifier: Optional[IdentityVerifier] = None,
    ) -> "DocVaultRuntime":
        cfg = config or DocVaultConfig.default()
        store = store or InMemoryDocumentStore(
            state_path=cfg.store.state_path,
            encryption_key=cfg.store.state_encryption_key,
        )
        objects = objects or build_object_store(cfg.object_storage)
        if verifier is None:
            if not cfg.auth.shared_secret:
                raise ValueError("DOCVAULT_AUTH_SECRET is required to verify bearer tokens")
            verifier = HmacTokenVerifier(cfg.auth.shared_secret, issuer=cfg.auth.issuer, audience=cfg.auth.audience)
        bus = build_bus(cfg.message_bus.backend)
        telemetry = TelemetryCollector(cfg.observability)

        # The engine reads shares through the registry, which is built last.
        authorizer = AuthorizationEngine()
        audit = AuditSink(config=cfg, telemetry=telemetry, store=store, authorizer=authorizer, bus=bus)
        metadata_service = MetadataService(
            config=cfg,
            telemetry=telemetry,
            store=store,
            authorizer=authorizer,
            audit=audit,
            objects=objects,
        )
        sharing_service = ShareRegistry(
            config=cfg,
            telemetry=telemetry,
            store=store,
            authorizer=authorizer,
            audit=audit,
            metadata=metadata_service,
        )
        authorizer.shares = sharing_service

        upload_service = UploadSessionCoordinator(
            config=cfg,
            telemetry=telemetry,
            store=store,
            authorizer=authorizer,
            audit=audit,
            objects=objects,
            bus=bus,
        )
        org_service = OrganizationService(
            config=cfg,
            telemetry=telemetry,
            store=store,
            authorizer=authorizer,
            audit=audit,
            metadata=metadata_service,
        )
        user_service = UserService(config=cfg, telemetry=telemetry, store=store, authorizer=authorizer, audit=audit)
        identity = IdentityService(config=cfg, telemetry=telemetry, store=store, verifier=verifier)
        activity_service = ActivityService(
            bus=bus,
            telemetry=telemetry,
            authorizer=authorizer,
            topics=list(dict.fromkeys([AUDIT_TOPIC, *cfg.message_bus.topics])),
            buffer_size=cfg.observability.activity_buffer,
        )

        return cls(
            config=cfg,
            store=store,
            objects=objects,
            bus=bus,
            telemetry=telemetry,
            authorizer=authorizer,
            audit=audit,
            identity=identity,
            metadata_service=metadata_service,
            sharing_service=sharing_service,
            upload_service=upload_service,
            org_service=org_service,
            user_service=user_service,
            activity_service=activity_service,
        )

    def get_metrics_snapshot(self) -> dict[str, float]:
        snapshot = self.telemetry.snapshot()
        snapshot["bus.delivery_failures"] = float(self.bus.delivery_failures)
        count = getattr(self.store, "count", None)
        if callable(count):
            for collection in (ORGANIZATIONS, USERS, FILES, SHARES, UPLOAD_SESSIONS, AUDIT_RECORDS):
                snapshot[f"store.{collection}"] = float(count(collection))
        return snapshot
