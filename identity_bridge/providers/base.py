"""Capability interfaces the consumer runtime calls, and their shared base.

Each storage provider implements the narrow protocols for the capabilities
it supports instead of one catch-all interface.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Protocol, TypeVar

import structlog

from identity_bridge.adapters.base import SYNC_ACTOR, AdapterContext, AttributeStore, Repositories
from identity_bridge.adapters.group_adapter import GroupAdapter
from identity_bridge.adapters.role_adapter import RoleAdapter
from identity_bridge.adapters.user_adapter import UserAdapter
from identity_bridge.domain.consumer import ClientRef, GroupRef, RealmRef, RoleRef, UserRef
from identity_bridge.errors import PersistenceError
from identity_bridge.infra import settings
from identity_bridge.repositories.base import ConsumerKeyedRepository

logger = structlog.get_logger(__name__)

PasswordVerifier = Callable[[str, str], bool]
RecordT = TypeVar("RecordT")


class UserLookupProvider(Protocol):
    def get_user_by_id(self, realm: RealmRef, user_id: str) -> UserAdapter | None: ...

    def get_user_by_username(self, realm: RealmRef, username: str) -> UserAdapter | None: ...

    def get_user_by_email(self, realm: RealmRef, email: str) -> UserAdapter | None: ...


class UserQueryProvider(Protocol):
    def search_for_users(
        self,
        realm: RealmRef,
        params: Mapping[str, str],
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[UserAdapter]: ...

    def get_users_count(self, realm: RealmRef) -> int: ...

    def get_group_members(
        self,
        realm: RealmRef,
        group: GroupRef,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[UserAdapter]: ...

    def get_role_members(
        self,
        realm: RealmRef,
        role: RoleRef,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[UserAdapter]: ...

    def search_for_users_by_attribute(self, realm: RealmRef, name: str, value: str) -> list[UserAdapter]: ...


class UserRegistrationProvider(Protocol):
    def add_user(self, realm: RealmRef, username: str) -> UserAdapter | None: ...

    def remove_user(self, realm: RealmRef, user: UserRef) -> bool: ...


class UserBulkUpdateProvider(Protocol):
    def grant_to_all_users(self, realm: RealmRef, role: RoleRef) -> int: ...

    def revoke_from_all_users(self, realm: RealmRef, role: RoleRef) -> int: ...


class CredentialInputValidator(Protocol):
    def supports_credential_type(self, credential_type: str) -> bool: ...

    def is_configured_for(self, realm: RealmRef, user: UserRef, credential_type: str) -> bool: ...

    def is_valid(self, realm: RealmRef, user: UserRef, credential_type: str, challenge: str) -> bool: ...


class GroupLookupProvider(Protocol):
    def get_group_by_id(self, realm: RealmRef, group_id: str) -> GroupAdapter | None: ...


class GroupQueryProvider(Protocol):
    def get_groups(
        self,
        realm: RealmRef,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[GroupAdapter]: ...

    def get_groups_by_ids_or_search(
        self,
        realm: RealmRef,
        ids: Sequence[str] | None,
        search: str | None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[GroupAdapter]: ...

    def get_groups_count(self, realm: RealmRef, only_top_groups: bool = False) -> int: ...

    def search_for_group_by_name(
        self,
        realm: RealmRef,
        search: str | None,
        exact: bool = False,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[GroupAdapter]: ...

    def get_top_level_groups(
        self,
        realm: RealmRef,
        search: str | None = None,
        exact: bool = False,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[GroupAdapter]: ...


class GroupRegistrationProvider(Protocol):
    def create_group(
        self,
        realm: RealmRef,
        name: str,
        group_id: str | None = None,
        to_parent: GroupRef | None = None,
    ) -> GroupAdapter | None: ...

    def remove_group(self, realm: RealmRef, group: GroupRef) -> bool: ...

    def move_group(self, realm: RealmRef, group: GroupRef, to_parent: GroupRef | None) -> bool: ...


class RoleLookupProvider(Protocol):
    def get_realm_role(self, realm: RealmRef, name: str) -> RoleAdapter | None: ...

    def get_client_role(self, client: ClientRef, name: str) -> RoleAdapter | None: ...

    def get_role_by_id(self, realm: RealmRef, role_id: str) -> RoleAdapter | None: ...


class RoleQueryProvider(Protocol):
    def search_for_roles(
        self,
        realm: RealmRef,
        search: str | None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[RoleAdapter]: ...

    def get_roles(
        self,
        realm: RealmRef,
        ids: Sequence[str] | None,
        search: str | None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[RoleAdapter]: ...


class RoleRegistrationProvider(Protocol):
    def add_realm_role(self, realm: RealmRef, name: str, role_id: str | None = None) -> RoleAdapter | None: ...

    def add_client_role(self, client: ClientRef, name: str, role_id: str | None = None) -> RoleAdapter | None: ...

    def remove_role(self, realm: RealmRef, role: RoleRef) -> bool: ...


class RoleBulkRemovalProvider(Protocol):
    def remove_roles(self, realm: RealmRef) -> int: ...

    def remove_client_roles(self, client: ClientRef) -> int: ...


class FederationProvider:
    def __init__(
        self,
        provider_id: str | None = None,
        repos: Repositories | None = None,
        *,
        attributes: AttributeStore | None = None,
        patch_attempts: int | None = None,
        actor: str = SYNC_ACTOR,
    ) -> None:
        self.provider_id = provider_id or settings.FEDERATION_PROVIDER_ID
        self.repos = repos or Repositories()
        self.attributes = attributes
        self.patch_attempts = max(
            1,
            patch_attempts if patch_attempts is not None else settings.CONSUMER_ID_PATCH_ATTEMPTS,
        )
        self.actor = actor

    def _context(self, realm_id: str) -> AdapterContext:
        return AdapterContext(
            realm_id=realm_id,
            provider_id=self.provider_id,
            repos=self.repos,
            attributes=self.attributes,
            actor=self.actor,
        )

    def _patch_consumer_id(
        self,
        repo: ConsumerKeyedRepository[RecordT],
        record: RecordT,
        consumer_id: str,
    ) -> bool:
        """Second phase of a create: store the consumer id on the new record.

        Retried up to ``patch_attempts`` times; a record that stays missing is
        logged and ignored, the entity remains addressable by its local key.
        """
        key = record.id  # type: ignore[attr-defined]
        for attempt in range(1, self.patch_attempts + 1):
            try:
                if repo.assign_consumer_id(key, consumer_id):
                    if record.consumer_id is None:  # type: ignore[attr-defined]
                        record.consumer_id = consumer_id  # type: ignore[attr-defined]
                    return True
            except PersistenceError as exc:
                logger.warning("consumer_id_patch_error", local_key=key, attempt=attempt, error=str(exc))
                continue
            logger.warning("consumer_id_patch_missing", local_key=key, attempt=attempt)
        logger.warning(
            "consumer_id_patch_abandoned",
            local_key=key,
            consumer_id=consumer_id,
            attempts=self.patch_attempts,
        )
        return False

    def close(self) -> None:
        """Per-request providers hold no resources; the engine outlives them."""
