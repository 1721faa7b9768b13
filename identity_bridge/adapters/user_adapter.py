from __future__ import annotations

import structlog

from identity_bridge.adapters.base import AdapterContext
from identity_bridge.adapters.group_adapter import GroupAdapter
from identity_bridge.adapters.permission_adapter import PermissionAdapter
from identity_bridge.adapters.role_adapter import RoleAdapter
from identity_bridge.adapters.sync import sync_group, sync_role
from identity_bridge.domain.consumer import ClientRef, GroupRef, RoleRef
from identity_bridge.domain.models import Role, User, UserProfile
from identity_bridge.domain.storage_id import qualify
from identity_bridge.repositories.profile_repository import PROFILE_FIELDS

logger = structlog.get_logger(__name__)

USERNAME = "username"
EMAIL = "email"
FIRST_NAME = "firstName"
LAST_NAME = "lastName"


class UserAdapter:
    """A local user presented to the consumer.

    Setters write through to the store immediately. Profile-backed values
    read as ``None`` while the user has no profile row; the row is created
    on the first profile write.
    """

    def __init__(self, context: AdapterContext, record: User) -> None:
        self._context = context
        self._record = record

    @property
    def record(self) -> User:
        return self._record

    @property
    def id(self) -> str:
        if self._record.consumer_id:
            return self._record.consumer_id
        return qualify(self._context.provider_id, self._record.id)

    @property
    def federation_link(self) -> str:
        return self._context.provider_id

    @property
    def username(self) -> str:
        return self._record.username

    @property
    def email(self) -> str | None:
        return self._record.email

    @property
    def enabled(self) -> bool:
        return not self._record.locked

    @property
    def email_verified(self) -> bool:
        return self._record.email_verified

    @property
    def password_hash(self) -> str | None:
        return self._record.password_hash

    @property
    def created_timestamp(self) -> int:
        return int(self._record.created_at.timestamp() * 1000)

    def _save(self) -> None:
        self._record = self._context.repos.users.save(self._record)

    def set_username(self, username: str) -> None:
        self._record.username = username
        self._save()

    def set_email(self, email: str | None) -> None:
        self._record.email = email
        self._save()

    def set_enabled(self, enabled: bool) -> None:
        self._record.locked = not enabled
        self._save()

    def set_email_verified(self, verified: bool) -> None:
        self._record.email_verified = verified
        self._save()

    def set_password_hash(self, password_hash: str | None) -> None:
        self._record.password_hash = password_hash
        self._save()

    # Profile

    def _profile(self) -> UserProfile | None:
        return self._context.repos.profiles.find_by_user_id(self._record.id)

    def _profile_value(self, field: str) -> str | None:
        profile = self._profile()
        if profile is None:
            return None
        return getattr(profile, field)

    def _set_profile_value(self, field: str, value: str | None) -> None:
        profiles = self._context.repos.profiles
        profile = profiles.sync_profile(self._record.id)
        setattr(profile, field, value)
        profiles.save(profile)

    @property
    def first_name(self) -> str | None:
        return self._profile_value("first_name")

    @property
    def last_name(self) -> str | None:
        return self._profile_value("last_name")

    def set_first_name(self, first_name: str | None) -> None:
        self._set_profile_value("first_name", first_name)

    def set_last_name(self, last_name: str | None) -> None:
        self._set_profile_value("last_name", last_name)

    # Attributes

    def get_attributes(self) -> dict[str, list[str]]:
        attributes: dict[str, list[str]] = {}
        if self._context.attributes is not None:
            attributes.update(self._context.attributes.get_attributes(self._context.realm_id, self.id))
        attributes[USERNAME] = [self._record.username]
        if self._record.email is not None:
            attributes[EMAIL] = [self._record.email]
        profile = self._profile()
        if profile is not None:
            for name in (FIRST_NAME, LAST_NAME, "phone", "address", "avatar_url"):
                value = getattr(profile, PROFILE_FIELDS[name])
                if value is not None:
                    attributes[name] = [value]
        return attributes

    def get_attribute(self, name: str) -> list[str]:
        if name == USERNAME:
            return [self._record.username]
        if name == EMAIL:
            return [self._record.email] if self._record.email is not None else []
        if name in PROFILE_FIELDS:
            value = self._profile_value(PROFILE_FIELDS[name])
            return [value] if value is not None else []
        if self._context.attributes is None:
            return []
        return self._context.attributes.get_attributes(self._context.realm_id, self.id).get(name, [])

    def get_first_attribute(self, name: str) -> str | None:
        values = self.get_attribute(name)
        return values[0] if values else None

    def set_single_attribute(self, name: str, value: str | None) -> None:
        self.set_attribute(name, [value] if value is not None else [])

    def set_attribute(self, name: str, values: list[str]) -> None:
        value = values[0] if values else None
        if name == USERNAME:
            if value:
                self.set_username(value)
        elif name == EMAIL:
            self.set_email(value)
        elif name in PROFILE_FIELDS:
            self._set_profile_value(PROFILE_FIELDS[name], value)
        elif self._context.attributes is not None:
            self._context.attributes.set_attribute(self._context.realm_id, self.id, name, values)
        else:
            logger.warning("user_attribute_dropped", user_id=self._record.id, attribute=name)

    def remove_attribute(self, name: str) -> None:
        if name in PROFILE_FIELDS:
            if self._profile() is not None:
                self._set_profile_value(PROFILE_FIELDS[name], None)
        elif name == EMAIL:
            self.set_email(None)
        elif self._context.attributes is not None:
            self._context.attributes.remove_attribute(self._context.realm_id, self.id, name)

    # Groups

    def get_groups(
        self,
        search: str | None = None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[GroupAdapter]:
        return [
            GroupAdapter(self._context, group)
            for group in self._context.repos.users.get_groups(self._record.id, search, first, max_results)
        ]

    def get_groups_count(self) -> int:
        return self._context.repos.users.count_groups(self._record.id)

    def join_group(self, group: GroupRef) -> None:
        record = sync_group(
            self._context.repos.groups,
            self._context.realm_id,
            group,
            self._context.provider_id,
            self._context.actor,
        )
        self._context.repos.users.join_group(self._record.id, record.id)

    def leave_group(self, group: GroupRef) -> None:
        record = self._context.repos.groups.resolve(group.id, self._context.provider_id)
        if record is None:
            logger.warning("user_group_unresolved", user_id=self._record.id, group=group.id)
            return
        self._context.repos.users.leave_group(self._record.id, record.id)

    def is_member_of(self, group: GroupRef) -> bool:
        record = self._context.repos.groups.resolve(group.id, self._context.provider_id)
        if record is None:
            return False
        return self._context.repos.users.is_member(self._record.id, record.id)

    # Roles

    def _wrap_roles(self, roles: list[Role]) -> list[RoleAdapter]:
        return [RoleAdapter(self._context, role) for role in roles]

    def get_role_mappings(self) -> list[RoleAdapter]:
        """Direct mappings only; group-inherited roles are not folded in."""
        return self._wrap_roles(self._context.repos.users.get_roles(self._record.id))

    def get_realm_role_mappings(self) -> list[RoleAdapter]:
        return [role for role in self.get_role_mappings() if not role.is_client_role]

    def get_client_role_mappings(self, client: ClientRef) -> list[RoleAdapter]:
        return [role for role in self.get_role_mappings() if role.client_id == client.id]

    def _effective_role_records(self) -> list[Role]:
        users = self._context.repos.users
        merged: dict[int | None, Role] = {}
        for role in [*users.get_roles(self._record.id), *users.get_group_roles(self._record.id)]:
            merged.setdefault(role.id, role)
        return list(merged.values())

    def get_effective_roles(self) -> list[RoleAdapter]:
        """Direct roles plus roles of the user's groups, each role once."""
        return self._wrap_roles(self._effective_role_records())

    def get_effective_permissions(self) -> list[PermissionAdapter]:
        role_ids = [role.id for role in self._effective_role_records() if role.id is not None]
        return [
            PermissionAdapter(permission)
            for permission in self._context.repos.permissions.find_by_role_ids(role_ids)
        ]

    def has_role(self, role: RoleRef) -> bool:
        resolved = self._context.repos.roles.resolve(role.id, self._context.provider_id)
        if resolved is None:
            return False
        return any(item.id == resolved.id for item in self._effective_role_records())

    def grant_role(self, role: RoleRef) -> None:
        record = sync_role(
            self._context.repos.roles,
            self._context.realm_id,
            role,
            self._context.provider_id,
            self._context.actor,
        )
        self._context.repos.users.add_role(self._record.id, record.id)

    def delete_role_mapping(self, role: RoleRef) -> None:
        resolved = self._context.repos.roles.resolve(role.id, self._context.provider_id)
        if resolved is None:
            logger.warning("user_role_unresolved", user_id=self._record.id, role=role.id)
            return
        self._context.repos.users.remove_role(self._record.id, resolved.id)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, UserAdapter) and other.id == self.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        return f"UserAdapter(id={self.id!r}, username={self.username!r})"
