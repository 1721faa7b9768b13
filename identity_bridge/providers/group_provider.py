from __future__ import annotations

from collections.abc import Mapping, Sequence

import structlog

from identity_bridge.adapters.group_adapter import GroupAdapter, move_group
from identity_bridge.domain.consumer import ClientRef, GroupRef, RealmRef, RoleRef
from identity_bridge.domain.models import Group
from identity_bridge.errors import ConflictError, PersistenceError
from identity_bridge.providers.base import FederationProvider
from identity_bridge.repositories.base import unit_of_work

logger = structlog.get_logger(__name__)


class GroupStorageProvider(FederationProvider):
    def _wrap_all(self, realm: RealmRef, records: list[Group]) -> list[GroupAdapter]:
        context = self._context(realm.id)
        return [GroupAdapter(context, record) for record in records]

    def _resolve(self, realm: RealmRef, group_id: str | None) -> Group | None:
        record = self.repos.groups.resolve(group_id, self.provider_id)
        if record is None or record.realm_id != realm.id:
            return None
        return record

    def get_group_by_id(self, realm: RealmRef, group_id: str) -> GroupAdapter | None:
        record = self._resolve(realm, group_id)
        if record is None:
            return None
        return GroupAdapter(self._context(realm.id), record)

    def get_groups(
        self,
        realm: RealmRef,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[GroupAdapter]:
        return self._wrap_all(realm, self.repos.groups.list_by_realm(realm.id, first, max_results))

    def get_groups_by_ids_or_search(
        self,
        realm: RealmRef,
        ids: Sequence[str] | None,
        search: str | None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[GroupAdapter]:
        records = self.repos.groups.get_by_ids_or_search(realm.id, ids, search, first, max_results)
        return self._wrap_all(realm, records)

    def get_groups_count(self, realm: RealmRef, only_top_groups: bool = False) -> int:
        if only_top_groups:
            return self.repos.groups.count_top_level(realm.id)
        return self.repos.groups.count(realm.id)

    def get_groups_count_by_name_containing(self, realm: RealmRef, search: str | None) -> int:
        return self.repos.groups.count_by_name(realm.id, search)

    def search_groups_by_attributes(
        self,
        realm: RealmRef,
        attributes: Mapping[str, str],
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[GroupAdapter]:
        records = self.repos.groups.search_by_attributes(realm.id, attributes, first, max_results)
        return self._wrap_all(realm, records)

    def search_for_group_by_name(
        self,
        realm: RealmRef,
        search: str | None,
        exact: bool = False,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[GroupAdapter]:
        records = self.repos.groups.search_by_name(realm.id, search, exact, first, max_results)
        return self._wrap_all(realm, records)

    def get_groups_by_role(
        self,
        realm: RealmRef,
        role: RoleRef,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[GroupAdapter]:
        record = self.repos.roles.resolve(role.id, self.provider_id)
        if record is None or record.realm_id != realm.id:
            return []
        return self._wrap_all(realm, self.repos.groups.find_by_role(realm.id, record.id, first, max_results))

    def get_top_level_groups(
        self,
        realm: RealmRef,
        search: str | None = None,
        exact: bool = False,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[GroupAdapter]:
        records = self.repos.groups.get_top_level(realm.id, search, exact, first, max_results)
        return self._wrap_all(realm, records)

    def create_group(
        self,
        realm: RealmRef,
        name: str,
        group_id: str | None = None,
        to_parent: GroupRef | None = None,
    ) -> GroupAdapter | None:
        """Create a group; ``None`` on a name conflict or an unknown parent."""
        parent: Group | None = None
        if to_parent is not None:
            parent = self._resolve(realm, to_parent.id)
            if parent is None:
                logger.warning("group_parent_unresolved", realm_id=realm.id, parent=to_parent.id)
                return None
        try:
            record = self.repos.groups.create_group(
                realm.id,
                name,
                parent,
                consumer_id=group_id or None,
                created_by=self.actor,
            )
        except ConflictError:
            logger.warning("group_name_conflict", realm_id=realm.id, name=name)
            return None
        except PersistenceError:
            logger.exception("group_create_failed", realm_id=realm.id, name=name)
            return None
        if record is None:
            return None
        adapter = GroupAdapter(self._context(realm.id), record)
        if record.consumer_id is None:
            self._patch_consumer_id(self.repos.groups, record, adapter.id)
        logger.info("group_created", realm_id=realm.id, group_id=record.id, path=record.path)
        return adapter

    def remove_group(self, realm: RealmRef, group: GroupRef) -> bool:
        """Delete the group subtree together with its membership and role rows."""
        record = self._resolve(realm, group.id)
        if record is None:
            return False
        groups = self.repos.groups
        group_ids = [record.id, *groups.descendant_ids(record.id)]
        try:
            with unit_of_work() as session:
                for group_id in group_ids:
                    self.repos.users.remove_user_mappings_for_group(group_id, session=session)
                    groups.remove_role_mappings_for_group(group_id, session=session)
                groups.delete(record, session=session)
        except PersistenceError:
            logger.exception("group_delete_failed", realm_id=realm.id, group_id=record.id)
            return False
        return True

    def move_group(self, realm: RealmRef, group: GroupRef, to_parent: GroupRef | None) -> bool:
        """Re-parent a group; unresolvable group or parent leaves everything unchanged."""
        record = self._resolve(realm, group.id)
        if record is None:
            logger.warning("group_move_unresolved", realm_id=realm.id, group=group.id)
            return False
        try:
            return move_group(self._context(realm.id), record, to_parent) is not None
        except PersistenceError:
            logger.exception("group_move_failed", realm_id=realm.id, group_id=record.id)
            return False

    def add_top_level_group(self, realm: RealmRef, group: GroupRef) -> bool:
        return self.move_group(realm, group, None)

    def remove_groups(self, realm: RealmRef) -> int:
        return self.repos.groups.delete_all_by_realm(realm.id)

    # Pre-removal hooks; failures propagate so the consumer aborts its removal.

    def pre_remove_realm(self, realm: RealmRef) -> int:
        return self.remove_groups(realm)

    def pre_remove_role(self, realm: RealmRef, role: RoleRef) -> int:
        record = self.repos.roles.resolve(role.id, self.provider_id)
        if record is None:
            return 0
        return self.repos.groups.remove_group_mappings_for_role(record.id)

    def pre_remove_client(self, realm: RealmRef, client: ClientRef) -> int:
        return self.repos.groups.delete_all_assignments_for_client_roles(realm.id, client.id)
