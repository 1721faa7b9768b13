from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import sqlalchemy as sa
import structlog
from sqlmodel import Session, col, select

from identity_bridge.domain.models import Permission, Role, RolePermissionLink
from identity_bridge.repositories.base import (
    ConsumerKeyedRepository,
    delete_rows,
    paginate,
    split_identifiers,
    text_match,
)
logger = structlog.get_logger(__name__)


class RoleRepository(ConsumerKeyedRepository[Role]):
    model = Role

    def _scope_clause(self, client_id: str | None) -> Any:
        if client_id is None:
            return col(Role.client_id).is_(None)
        return col(Role.client_id) == client_id

    def _list(self, statement: Any, first: int | None, max_results: int | None) -> list[Role]:
        statement = paginate(statement.order_by(col(Role.id)), first, max_results)
        with self._session() as session:
            return list(session.exec(statement).all())

    def find_by_name(self, realm_id: str, name: str, client_id: str | None = None) -> Role | None:
        statement = (
            select(Role)
            .where(Role.realm_id == realm_id)
            .where(Role.name == name)
            .where(self._scope_clause(client_id))
        )
        with self._session() as session:
            return session.exec(statement).first()

    def find_realm_role_by_name(self, realm_id: str, name: str) -> Role | None:
        return self.find_by_name(realm_id, name)

    def find_client_role_by_name(self, realm_id: str, client_id: str, name: str) -> Role | None:
        return self.find_by_name(realm_id, name, client_id)

    def search_realm_roles(
        self,
        realm_id: str,
        search: str | None = None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[Role]:
        statement = select(Role).where(Role.realm_id == realm_id).where(col(Role.client_id).is_(None))
        if search:
            statement = statement.where(text_match(Role.name, search))
        return self._list(statement, first, max_results)

    def search_client_roles(
        self,
        realm_id: str,
        client_id: str,
        search: str | None = None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[Role]:
        statement = select(Role).where(Role.realm_id == realm_id).where(Role.client_id == client_id)
        if search:
            statement = statement.where(text_match(Role.name, search))
        return self._list(statement, first, max_results)

    def search_client_roles_by_client_ids(
        self,
        realm_id: str,
        client_ids: Iterable[str],
        search: str | None = None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[Role]:
        wanted = [client_id for client_id in client_ids if client_id]
        if not wanted:
            return []
        statement = (
            select(Role)
            .where(Role.realm_id == realm_id)
            .where(col(Role.client_id).in_(wanted))
        )
        if search:
            statement = statement.where(text_match(Role.name, search))
        return self._list(statement, first, max_results)

    def search_client_roles_excluding(
        self,
        realm_id: str,
        excluded_client_ids: Iterable[str],
        search: str | None = None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[Role]:
        statement = (
            select(Role)
            .where(Role.realm_id == realm_id)
            .where(col(Role.client_id).is_not(None))
        )
        excluded = [client_id for client_id in excluded_client_ids if client_id]
        if excluded:
            statement = statement.where(col(Role.client_id).not_in(excluded))
        if search:
            statement = statement.where(text_match(Role.name, search))
        return self._list(statement, first, max_results)

    def get_realm_roles(
        self,
        realm_id: str,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[Role]:
        return self.search_realm_roles(realm_id, None, first, max_results)

    def get_client_roles(
        self,
        realm_id: str,
        client_id: str,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[Role]:
        return self.search_client_roles(realm_id, client_id, None, first, max_results)

    def get_roles_by_ids_or_search(
        self,
        realm_id: str,
        identifiers: Iterable[str] | None,
        search: str | None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[Role]:
        """Roles matching the id set OR the search text; neither gives nothing."""
        keys, raw = split_identifiers(identifiers or ())
        criteria: list[Any] = []
        if keys:
            criteria.append(col(Role.id).in_(keys))
        if raw:
            criteria.append(col(Role.consumer_id).in_(raw))
        if search:
            criteria.append(text_match(Role.name, search))
        if not criteria:
            return []
        statement = select(Role).where(Role.realm_id == realm_id).where(sa.or_(*criteria))
        return self._list(statement, first, max_results)

    def create_role(
        self,
        realm_id: str,
        name: str,
        client_id: str | None = None,
        *,
        description: str | None = None,
        consumer_id: str | None = None,
        created_by: str | None = None,
    ) -> Role | None:
        """Create a role, or return ``None`` when the name is taken in its scope."""
        if self.find_by_name(realm_id, name, client_id) is not None:
            logger.warning("role_name_conflict", realm_id=realm_id, client_id=client_id, name=name)
            return None
        role = Role(
            name=name,
            description=description,
            realm_id=realm_id,
            client_id=client_id,
            consumer_id=consumer_id,
            created_by=created_by,
            updated_by=created_by,
        )
        return self.save(role)

    def create_realm_role(self, realm_id: str, name: str, **fields: Any) -> Role | None:
        return self.create_role(realm_id, name, None, **fields)

    def create_client_role(self, realm_id: str, client_id: str, name: str, **fields: Any) -> Role | None:
        return self.create_role(realm_id, name, client_id, **fields)

    # Permission links

    def get_permissions(self, role_id: int) -> list[Permission]:
        statement = (
            select(Permission)
            .join(RolePermissionLink, col(RolePermissionLink.permission_id) == col(Permission.id))
            .where(RolePermissionLink.role_id == role_id)
            .order_by(col(Permission.id))
        )
        with self._session() as session:
            return list(session.exec(statement).all())

    def add_permission(self, role_id: int, permission_id: int) -> bool:
        with self._atomic() as session:
            if session.get(RolePermissionLink, (role_id, permission_id)) is not None:
                return False
            session.add(RolePermissionLink(role_id=role_id, permission_id=permission_id))
            return True

    def remove_permission(self, role_id: int, permission_id: int) -> bool:
        with self._atomic() as session:
            deleted = delete_rows(
                session,
                sa.delete(RolePermissionLink)
                .where(col(RolePermissionLink.role_id) == role_id)
                .where(col(RolePermissionLink.permission_id) == permission_id),
            )
        return deleted > 0

    # Deletion. User and group assignments are purged by their own
    # repositories inside the same unit of work before these run.

    def delete(self, role: Role, session: Session | None = None) -> None:
        with self._atomic(session) as active:
            delete_rows(
                active,
                sa.delete(RolePermissionLink).where(col(RolePermissionLink.role_id) == role.id),
            )
            delete_rows(active, sa.delete(Role).where(col(Role.id) == role.id))
        logger.info("role_deleted", role_id=role.id, realm_id=role.realm_id, client_id=role.client_id)

    def _delete_where(self, clause: Any, session: Session | None) -> int:
        scoped = select(Role.id).where(clause)
        with self._atomic(session) as active:
            delete_rows(
                active,
                sa.delete(RolePermissionLink).where(col(RolePermissionLink.role_id).in_(scoped)),
            )
            return delete_rows(active, sa.delete(Role).where(clause))

    def delete_all_realm_roles(self, realm_id: str, session: Session | None = None) -> int:
        deleted = self._delete_where(
            sa.and_(col(Role.realm_id) == realm_id, col(Role.client_id).is_(None)),
            session,
        )
        logger.info("realm_roles_deleted", realm_id=realm_id, count=deleted)
        return deleted

    def delete_all_client_roles(
        self,
        realm_id: str,
        client_id: str,
        session: Session | None = None,
    ) -> int:
        deleted = self._delete_where(
            sa.and_(col(Role.realm_id) == realm_id, col(Role.client_id) == client_id),
            session,
        )
        logger.info("client_roles_deleted", realm_id=realm_id, client_id=client_id, count=deleted)
        return deleted

    def delete_all_by_realm(self, realm_id: str, session: Session | None = None) -> int:
        return self._delete_where(col(Role.realm_id) == realm_id, session)

    def client_ids(self, realm_id: str) -> list[str]:
        statement = (
            select(Role.client_id)
            .where(Role.realm_id == realm_id)
            .where(col(Role.client_id).is_not(None))
            .distinct()
        )
        with self._session() as session:
            return [client_id for client_id in session.exec(statement).all() if client_id]
