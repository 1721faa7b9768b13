from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from identity_bridge.repositories.group_repository import GroupRepository
from identity_bridge.repositories.permission_repository import PermissionRepository
from identity_bridge.repositories.profile_repository import UserProfileRepository
from identity_bridge.repositories.role_repository import RoleRepository
from identity_bridge.repositories.user_repository import UserRepository

SYNC_ACTOR = "consumer-sync"


class AttributeStore(Protocol):
    """Storage for attributes that have no dedicated column."""

    def get_attributes(self, realm_id: str, owner_id: str) -> dict[str, list[str]]: ...

    def set_attribute(self, realm_id: str, owner_id: str, name: str, values: Sequence[str]) -> None: ...

    def remove_attribute(self, realm_id: str, owner_id: str, name: str) -> None: ...


@dataclass
class InMemoryAttributeStore:
    values: dict[tuple[str, str], dict[str, list[str]]] = field(
        default_factory=lambda: defaultdict(dict)
    )

    def get_attributes(self, realm_id: str, owner_id: str) -> dict[str, list[str]]:
        return {name: list(items) for name, items in self.values[(realm_id, owner_id)].items()}

    def set_attribute(self, realm_id: str, owner_id: str, name: str, values: Sequence[str]) -> None:
        self.values[(realm_id, owner_id)][name] = list(values)

    def remove_attribute(self, realm_id: str, owner_id: str, name: str) -> None:
        self.values[(realm_id, owner_id)].pop(name, None)


@dataclass(frozen=True)
class Repositories:
    users: UserRepository = field(default_factory=UserRepository)
    profiles: UserProfileRepository = field(default_factory=UserProfileRepository)
    groups: GroupRepository = field(default_factory=GroupRepository)
    roles: RoleRepository = field(default_factory=RoleRepository)
    permissions: PermissionRepository = field(default_factory=PermissionRepository)


@dataclass(frozen=True)
class AdapterContext:
    """What an adapter needs besides its record: realm, provider tag, storage."""

    realm_id: str
    provider_id: str
    repos: Repositories
    attributes: AttributeStore | None = None
    actor: str = SYNC_ACTOR
