"""Lazy materialisation of consumer-held groups and roles.

Both helpers are idempotent: repeated calls for the same consumer object
return the same local record. Lookup order is the consumer id (dual path),
then the natural key, and only then creation.
"""

from __future__ import annotations

import structlog

from identity_bridge.adapters.base import SYNC_ACTOR
from identity_bridge.domain.consumer import GroupRef, RoleRef
from identity_bridge.domain.models import Group, Role
from identity_bridge.errors import ConflictError, PersistenceError
from identity_bridge.repositories.group_repository import GroupRepository
from identity_bridge.repositories.role_repository import RoleRepository

logger = structlog.get_logger(__name__)


def sync_group(
    groups: GroupRepository,
    realm_id: str,
    group: GroupRef,
    provider_id: str | None = None,
    actor: str = SYNC_ACTOR,
) -> Group:
    found = groups.resolve(group.id, provider_id)
    if found is not None:
        if group.description is not None and found.description != group.description:
            found.description = group.description
            found.updated_by = actor
            found = groups.save(found)
        return found

    parent: Group | None = None
    if group.parent is not None:
        parent = sync_group(groups, realm_id, group.parent, provider_id, actor)
    parent_id = parent.id if parent is not None else None

    found = groups.find_by_name_and_parent(realm_id, group.name, parent_id)
    if found is not None:
        if found.consumer_id is None and group.id:
            try:
                groups.assign_consumer_id(found.id, group.id)
            except ConflictError:
                logger.warning("group_consumer_id_taken", group_id=found.id, consumer_id=group.id)
                return found
            found.consumer_id = group.id
        return found

    try:
        created = groups.create_group(
            realm_id,
            group.name,
            parent,
            description=group.description,
            consumer_id=group.id or None,
            created_by=actor,
        )
    except ConflictError:
        created = None
    if created is None:
        # Another request created it between the lookup and the insert.
        created = groups.resolve(group.id, provider_id) or groups.find_by_name_and_parent(
            realm_id, group.name, parent_id
        )
        if created is None:
            raise PersistenceError(f"group sync failed for {group.name!r}")
        return created
    logger.info("group_synced", realm_id=realm_id, group_id=created.id, consumer_id=group.id)
    return created


def sync_role(
    roles: RoleRepository,
    realm_id: str,
    role: RoleRef,
    provider_id: str | None = None,
    actor: str = SYNC_ACTOR,
) -> Role:
    found = roles.resolve(role.id, provider_id)
    if found is not None:
        if role.description is not None and found.description != role.description:
            found.description = role.description
            found.updated_by = actor
            found = roles.save(found)
        return found

    client_id = role.container_id if role.is_client_role else None
    found = roles.find_by_name(realm_id, role.name, client_id)
    if found is not None:
        if found.consumer_id is None and role.id:
            try:
                roles.assign_consumer_id(found.id, role.id)
            except ConflictError:
                logger.warning("role_consumer_id_taken", role_id=found.id, consumer_id=role.id)
                return found
            found.consumer_id = role.id
        return found

    try:
        created = roles.create_role(
            realm_id,
            role.name,
            client_id,
            description=role.description,
            consumer_id=role.id or None,
            created_by=actor,
        )
    except ConflictError:
        created = None
    if created is None:
        created = roles.resolve(role.id, provider_id) or roles.find_by_name(realm_id, role.name, client_id)
        if created is None:
            raise PersistenceError(f"role sync failed for {role.name!r}")
        return created
    logger.info("role_synced", realm_id=realm_id, role_id=created.id, client_id=client_id)
    return created
