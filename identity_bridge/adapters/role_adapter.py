from __future__ import annotations

import structlog

from identity_bridge.adapters.base import AdapterContext
from identity_bridge.adapters.permission_adapter import PermissionAdapter
from identity_bridge.domain.consumer import RoleRef
from identity_bridge.domain.models import Permission, Role
from identity_bridge.domain.storage_id import qualify

logger = structlog.get_logger(__name__)

MAPPED_ATTRIBUTES = ("code", "description")


class RoleAdapter:
    """A local role presented to the consumer. Roles are never composite."""

    def __init__(self, context: AdapterContext, record: Role) -> None:
        self._context = context
        self._record = record

    @property
    def record(self) -> Role:
        return self._record

    @property
    def id(self) -> str:
        if self._record.consumer_id:
            return self._record.consumer_id
        return qualify(self._context.provider_id, self._record.id)

    @property
    def name(self) -> str:
        return self._record.name

    @property
    def description(self) -> str | None:
        return self._record.description

    @property
    def realm_id(self) -> str:
        return self._record.realm_id

    @property
    def client_id(self) -> str | None:
        return self._record.client_id

    @property
    def is_client_role(self) -> bool:
        return self._record.client_id is not None

    @property
    def container_id(self) -> str:
        return self._record.client_id or self._record.realm_id

    @property
    def is_composite(self) -> bool:
        return False

    def _save(self) -> None:
        self._record.updated_by = self._context.actor
        self._record = self._context.repos.roles.save(self._record)

    def set_name(self, name: str) -> bool:
        if name == self._record.name:
            return True
        clash = self._context.repos.roles.find_by_name(
            self._record.realm_id, name, self._record.client_id
        )
        if clash is not None:
            logger.warning("role_name_conflict", role_id=self._record.id, name=name)
            return False
        self._record.name = name
        self._save()
        return True

    def set_description(self, description: str | None) -> None:
        self._record.description = description
        self._save()

    def get_composites(self) -> list[RoleAdapter]:
        return []

    def add_composite_role(self, role: RoleRef) -> None:
        logger.warning("composite_roles_unsupported", role_id=self.id, child=role.id)

    def remove_composite_role(self, role: RoleRef) -> None:
        logger.warning("composite_roles_unsupported", role_id=self.id, child=role.id)

    def has_role(self, role: RoleRef) -> bool:
        resolved = self._context.repos.roles.resolve(role.id, self._context.provider_id)
        return resolved is not None and resolved.id == self._record.id

    def get_attributes(self) -> dict[str, list[str]]:
        attributes: dict[str, list[str]] = {}
        if self._context.attributes is not None:
            attributes.update(self._context.attributes.get_attributes(self._context.realm_id, self.id))
        for name in MAPPED_ATTRIBUTES:
            value = getattr(self._record, name)
            if value is not None:
                attributes[name] = [value]
        return attributes

    def get_attribute(self, name: str) -> list[str]:
        return self.get_attributes().get(name, [])

    def set_attribute(self, name: str, values: list[str]) -> None:
        if name in MAPPED_ATTRIBUTES:
            setattr(self._record, name, values[0] if values else None)
            self._save()
        elif self._context.attributes is not None:
            self._context.attributes.set_attribute(self._context.realm_id, self.id, name, values)
        else:
            logger.warning("role_attribute_dropped", role_id=self.id, attribute=name)

    def remove_attribute(self, name: str) -> None:
        if name in MAPPED_ATTRIBUTES:
            setattr(self._record, name, None)
            self._save()
        elif self._context.attributes is not None:
            self._context.attributes.remove_attribute(self._context.realm_id, self.id, name)

    def get_permissions(self) -> list[PermissionAdapter]:
        return [
            PermissionAdapter(item)
            for item in self._context.repos.roles.get_permissions(self._record.id)
        ]

    def add_permission(self, permission: Permission) -> bool:
        return self._context.repos.roles.add_permission(self._record.id, permission.id)

    def remove_permission(self, permission: Permission) -> bool:
        return self._context.repos.roles.remove_permission(self._record.id, permission.id)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, RoleAdapter) and other.id == self.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        return f"RoleAdapter(id={self.id!r}, name={self.name!r})"
