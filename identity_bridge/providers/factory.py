from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from identity_bridge.adapters.base import AttributeStore, Repositories
from identity_bridge.infra import settings
from identity_bridge.infra.db import check_db_ready, dispose_engine, get_engine
from identity_bridge.providers.base import PasswordVerifier
from identity_bridge.providers.group_provider import GroupStorageProvider
from identity_bridge.providers.role_provider import RoleStorageProvider
from identity_bridge.providers.user_provider import UserStorageProvider

logger = structlog.get_logger(__name__)


@dataclass
class FederationProviderFactory:
    """Builds per-request providers that share one configuration and engine."""

    provider_id: str = field(default_factory=lambda: settings.FEDERATION_PROVIDER_ID)
    attributes: AttributeStore | None = None
    password_verifier: PasswordVerifier | None = None
    batch_size: int | None = None
    patch_attempts: int | None = None
    repos: Repositories = field(default_factory=Repositories)

    def init(self) -> bool:
        get_engine()
        ready = check_db_ready()
        if not ready:
            logger.warning("federation_store_unreachable", provider_id=self.provider_id)
        return ready

    def create_user_provider(self) -> UserStorageProvider:
        return UserStorageProvider(
            self.provider_id,
            self.repos,
            attributes=self.attributes,
            batch_size=self.batch_size,
            patch_attempts=self.patch_attempts,
            password_verifier=self.password_verifier,
        )

    def create_group_provider(self) -> GroupStorageProvider:
        return GroupStorageProvider(
            self.provider_id,
            self.repos,
            attributes=self.attributes,
            patch_attempts=self.patch_attempts,
        )

    def create_role_provider(self) -> RoleStorageProvider:
        return RoleStorageProvider(
            self.provider_id,
            self.repos,
            attributes=self.attributes,
            patch_attempts=self.patch_attempts,
        )

    def close(self) -> None:
        dispose_engine()
