from __future__ import annotations

from collections.abc import Iterable

import sqlalchemy as sa
from sqlmodel import Session, col, select

from identity_bridge.domain.models import Permission, RolePermissionLink
from identity_bridge.repositories.base import SqlRepository, delete_rows, paginate, text_match


class PermissionRepository(SqlRepository[Permission]):
    model = Permission

    def find_by_code(self, code: str) -> Permission | None:
        with self._session() as session:
            return session.exec(select(Permission).where(Permission.code == code)).first()

    def search(
        self,
        search: str | None = None,
        module: str | None = None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[Permission]:
        statement = select(Permission)
        if search:
            statement = statement.where(
                sa.or_(text_match(Permission.name, search), text_match(Permission.code, search))
            )
        if module:
            statement = statement.where(Permission.module == module)
        statement = paginate(statement.order_by(col(Permission.id)), first, max_results)
        with self._session() as session:
            return list(session.exec(statement).all())

    def find_by_role_ids(self, role_ids: Iterable[int]) -> list[Permission]:
        """Distinct permissions granted by any of the roles."""
        wanted = sorted({role_id for role_id in role_ids if role_id is not None})
        if not wanted:
            return []
        statement = (
            select(Permission)
            .join(RolePermissionLink, col(RolePermissionLink.permission_id) == col(Permission.id))
            .where(col(RolePermissionLink.role_id).in_(wanted))
            .distinct()
            .order_by(col(Permission.id))
        )
        with self._session() as session:
            return list(session.exec(statement).all())

    def delete(self, permission: Permission, session: Session | None = None) -> None:
        with self._atomic(session) as active:
            delete_rows(
                active,
                sa.delete(RolePermissionLink).where(
                    col(RolePermissionLink.permission_id) == permission.id
                ),
            )
            delete_rows(active, sa.delete(Permission).where(col(Permission.id) == permission.id))
