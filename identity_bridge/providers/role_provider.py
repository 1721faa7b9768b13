from __future__ import annotations

from collections.abc import Sequence

import structlog

from identity_bridge.adapters.role_adapter import RoleAdapter
from identity_bridge.domain.consumer import ClientRef, RealmRef, RoleRef
from identity_bridge.domain.models import Role
from identity_bridge.errors import ConflictError, PersistenceError
from identity_bridge.providers.base import FederationProvider
from identity_bridge.repositories.base import unit_of_work

logger = structlog.get_logger(__name__)


class RoleStorageProvider(FederationProvider):
    def _wrap(self, realm_id: str, record: Role | None) -> RoleAdapter | None:
        if record is None:
            return None
        return RoleAdapter(self._context(realm_id), record)

    def _wrap_all(self, realm_id: str, records: list[Role]) -> list[RoleAdapter]:
        context = self._context(realm_id)
        return [RoleAdapter(context, record) for record in records]

    def _resolve(self, realm: RealmRef, role_id: str | None) -> Role | None:
        record = self.repos.roles.resolve(role_id, self.provider_id)
        if record is None or record.realm_id != realm.id:
            return None
        return record

    # Lookup

    def get_realm_role(self, realm: RealmRef, name: str) -> RoleAdapter | None:
        return self._wrap(realm.id, self.repos.roles.find_realm_role_by_name(realm.id, name))

    def get_client_role(self, client: ClientRef, name: str) -> RoleAdapter | None:
        realm_id = client.realm.id
        return self._wrap(realm_id, self.repos.roles.find_client_role_by_name(realm_id, client.id, name))

    def get_role_by_id(self, realm: RealmRef, role_id: str) -> RoleAdapter | None:
        return self._wrap(realm.id, self._resolve(realm, role_id))

    # Query

    def search_for_roles(
        self,
        realm: RealmRef,
        search: str | None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[RoleAdapter]:
        return self._wrap_all(realm.id, self.repos.roles.search_realm_roles(realm.id, search, first, max_results))

    def search_for_client_roles(
        self,
        client: ClientRef,
        search: str | None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[RoleAdapter]:
        realm_id = client.realm.id
        records = self.repos.roles.search_client_roles(realm_id, client.id, search, first, max_results)
        return self._wrap_all(realm_id, records)

    def search_for_client_roles_by_ids(
        self,
        realm: RealmRef,
        client_ids: Sequence[str],
        search: str | None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[RoleAdapter]:
        records = self.repos.roles.search_client_roles_by_client_ids(
            realm.id, client_ids, search, first, max_results
        )
        return self._wrap_all(realm.id, records)

    def search_for_client_roles_excluding(
        self,
        realm: RealmRef,
        search: str | None,
        excluded_client_ids: Sequence[str],
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[RoleAdapter]:
        records = self.repos.roles.search_client_roles_excluding(
            realm.id, excluded_client_ids, search, first, max_results
        )
        return self._wrap_all(realm.id, records)

    def get_realm_roles(
        self,
        realm: RealmRef,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[RoleAdapter]:
        return self._wrap_all(realm.id, self.repos.roles.get_realm_roles(realm.id, first, max_results))

    def get_client_roles(
        self,
        client: ClientRef,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[RoleAdapter]:
        realm_id = client.realm.id
        return self._wrap_all(realm_id, self.repos.roles.get_client_roles(realm_id, client.id, first, max_results))

    def get_roles(
        self,
        realm: RealmRef,
        ids: Sequence[str] | None,
        search: str | None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[RoleAdapter]:
        records = self.repos.roles.get_roles_by_ids_or_search(realm.id, ids, search, first, max_results)
        return self._wrap_all(realm.id, records)

    # Registration

    def _add_role(
        self,
        realm_id: str,
        name: str,
        client_id: str | None,
        role_id: str | None,
    ) -> RoleAdapter | None:
        try:
            record = self.repos.roles.create_role(
                realm_id,
                name,
                client_id,
                consumer_id=role_id or None,
                created_by=self.actor,
            )
        except ConflictError:
            logger.warning("role_name_conflict", realm_id=realm_id, client_id=client_id, name=name)
            return None
        except PersistenceError:
            logger.exception("role_create_failed", realm_id=realm_id, client_id=client_id, name=name)
            return None
        if record is None:
            return None
        adapter = RoleAdapter(self._context(realm_id), record)
        if record.consumer_id is None:
            self._patch_consumer_id(self.repos.roles, record, adapter.id)
        logger.info("role_created", realm_id=realm_id, client_id=client_id, role_id=record.id)
        return adapter

    def add_realm_role(self, realm: RealmRef, name: str, role_id: str | None = None) -> RoleAdapter | None:
        """Create a realm role; ``None`` when the realm already has one by that name."""
        return self._add_role(realm.id, name, None, role_id)

    def add_client_role(self, client: ClientRef, name: str, role_id: str | None = None) -> RoleAdapter | None:
        return self._add_role(client.realm.id, name, client.id, role_id)

    # Removal. Assignment rows are purged in the same unit of work as the roles.

    def remove_role(self, realm: RealmRef, role: RoleRef) -> bool:
        record = self._resolve(realm, role.id)
        if record is None:
            return False
        try:
            with unit_of_work() as session:
                self.repos.users.remove_user_mappings_for_role(record.id, session=session)
                self.repos.groups.remove_group_mappings_for_role(record.id, session=session)
                self.repos.roles.delete(record, session=session)
        except PersistenceError:
            logger.exception("role_delete_failed", realm_id=realm.id, role_id=record.id)
            return False
        return True

    def remove_roles(self, realm: RealmRef) -> int:
        """Delete every realm role of the realm with its assignments."""
        with unit_of_work() as session:
            self.repos.users.delete_all_assignments_for_realm_roles(realm.id, session=session)
            self.repos.groups.delete_all_assignments_for_realm_roles(realm.id, session=session)
            return self.repos.roles.delete_all_realm_roles(realm.id, session=session)

    def remove_client_roles(self, client: ClientRef) -> int:
        realm_id = client.realm.id
        with unit_of_work() as session:
            self.repos.users.delete_all_assignments_for_client_roles(realm_id, client.id, session=session)
            self.repos.groups.delete_all_assignments_for_client_roles(realm_id, client.id, session=session)
            return self.repos.roles.delete_all_client_roles(realm_id, client.id, session=session)

    def pre_remove_realm(self, realm: RealmRef) -> int:
        client_ids = self.repos.roles.client_ids(realm.id)
        with unit_of_work() as session:
            self.repos.users.delete_all_assignments_for_realm_roles(realm.id, session=session)
            self.repos.groups.delete_all_assignments_for_realm_roles(realm.id, session=session)
            for client_id in client_ids:
                self.repos.users.delete_all_assignments_for_client_roles(realm.id, client_id, session=session)
                self.repos.groups.delete_all_assignments_for_client_roles(realm.id, client_id, session=session)
            return self.repos.roles.delete_all_by_realm(realm.id, session=session)
