from __future__ import annotations

import structlog

from identity_bridge.adapters.base import AdapterContext
from identity_bridge.adapters.role_adapter import RoleAdapter
from identity_bridge.adapters.sync import sync_role
from identity_bridge.domain.consumer import ClientRef, GroupRef, RoleRef
from identity_bridge.domain.models import Group
from identity_bridge.domain.storage_id import qualify

logger = structlog.get_logger(__name__)

MAPPED_ATTRIBUTES = ("name", "description", "code")


def move_group(context: AdapterContext, group: Group, parent: GroupRef | None) -> Group | None:
    """Re-parent ``group`` under ``parent`` (top level when ``None``).

    An unresolvable parent refuses the move instead of de-parenting.
    """
    parent_id: int | None = None
    if parent is not None:
        parent_record = context.repos.groups.resolve(parent.id, context.provider_id)
        if parent_record is None:
            logger.warning("group_move_parent_unresolved", group_id=group.id, parent=parent.id)
            return None
        parent_id = parent_record.id
    return context.repos.groups.move(group.id, parent_id, context.actor)


class GroupAdapter:
    def __init__(self, context: AdapterContext, record: Group) -> None:
        self._context = context
        self._record = record

    @property
    def record(self) -> Group:
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
    def code(self) -> str | None:
        return self._record.code

    @property
    def realm_id(self) -> str:
        return self._record.realm_id

    @property
    def parent_path(self) -> str | None:
        return self._record.parent_path

    @property
    def path(self) -> str:
        return self._record.path

    @property
    def parent(self) -> GroupAdapter | None:
        if self._record.parent_id is None:
            return None
        record = self._context.repos.groups.get_by_id(self._record.parent_id)
        if record is None:
            return None
        return GroupAdapter(self._context, record)

    @property
    def parent_id(self) -> str | None:
        parent = self.parent
        return parent.id if parent is not None else None

    def _save(self) -> None:
        self._record.updated_by = self._context.actor
        self._record = self._context.repos.groups.save(self._record)

    def _wrap(self, records: list[Group]) -> list[GroupAdapter]:
        return [GroupAdapter(self._context, record) for record in records]

    def set_name(self, name: str) -> bool:
        renamed = self._context.repos.groups.rename(self._record.id, name, self._context.actor)
        if renamed is None:
            return False
        self._record = renamed
        return True

    def set_description(self, description: str | None) -> None:
        self._record.description = description
        self._save()

    def set_parent(self, parent: GroupRef | None) -> bool:
        moved = move_group(self._context, self._record, parent)
        if moved is None:
            return False
        self._record = moved
        return True

    def get_sub_groups(
        self,
        search: str | None = None,
        exact: bool = False,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[GroupAdapter]:
        return self._wrap(
            self._context.repos.groups.get_children(self._record.id, search, exact, first, max_results)
        )

    def get_sub_groups_count(self) -> int:
        return self._context.repos.groups.count_children(self._record.id)

    def add_child(self, child: GroupRef) -> bool:
        record = self._context.repos.groups.resolve(child.id, self._context.provider_id)
        if record is None:
            logger.warning("group_child_unresolved", group_id=self._record.id, child=child.id)
            return False
        return self._context.repos.groups.move(record.id, self._record.id, self._context.actor) is not None

    def remove_child(self, child: GroupRef) -> bool:
        record = self._context.repos.groups.resolve(child.id, self._context.provider_id)
        if record is None or record.parent_id != self._record.id:
            return False
        return self._context.repos.groups.move(record.id, None, self._context.actor) is not None

    # Attributes

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

    def get_first_attribute(self, name: str) -> str | None:
        values = self.get_attribute(name)
        return values[0] if values else None

    def set_single_attribute(self, name: str, value: str) -> None:
        self.set_attribute(name, [value])

    def set_attribute(self, name: str, values: list[str]) -> None:
        value = values[0] if values else None
        if name == "name":
            if value:
                self.set_name(value)
        elif name in MAPPED_ATTRIBUTES:
            setattr(self._record, name, value)
            self._save()
        elif self._context.attributes is not None:
            self._context.attributes.set_attribute(self._context.realm_id, self.id, name, values)
        else:
            logger.warning("group_attribute_dropped", group_id=self._record.id, attribute=name)

    def remove_attribute(self, name: str) -> None:
        if name in ("description", "code"):
            setattr(self._record, name, None)
            self._save()
        elif self._context.attributes is not None:
            self._context.attributes.remove_attribute(self._context.realm_id, self.id, name)

    # Role mappings

    def _roles(self) -> list[RoleAdapter]:
        return [
            RoleAdapter(self._context, role)
            for role in self._context.repos.groups.get_roles(self._record.id)
        ]

    def get_role_mappings(self) -> list[RoleAdapter]:
        return self._roles()

    def get_realm_role_mappings(self) -> list[RoleAdapter]:
        return [role for role in self._roles() if not role.is_client_role]

    def get_client_role_mappings(self, client: ClientRef) -> list[RoleAdapter]:
        return [role for role in self._roles() if role.client_id == client.id]

    def has_role(self, role: RoleRef) -> bool:
        resolved = self._context.repos.roles.resolve(role.id, self._context.provider_id)
        if resolved is None:
            return False
        return self._context.repos.groups.has_role(self._record.id, resolved.id)

    def grant_role(self, role: RoleRef) -> None:
        record = sync_role(
            self._context.repos.roles,
            self._context.realm_id,
            role,
            self._context.provider_id,
            self._context.actor,
        )
        self._context.repos.groups.add_role(self._record.id, record.id)

    def delete_role_mapping(self, role: RoleRef) -> None:
        resolved = self._context.repos.roles.resolve(role.id, self._context.provider_id)
        if resolved is None:
            logger.warning("group_role_unresolved", group_id=self._record.id, role=role.id)
            return
        self._context.repos.groups.remove_role(self._record.id, resolved.id)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, GroupAdapter) and other.id == self.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        return f"GroupAdapter(id={self.id!r}, path={self.path!r})"
