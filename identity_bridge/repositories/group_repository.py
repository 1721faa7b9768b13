from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

import sqlalchemy as sa
import structlog
from sqlmodel import Session, col, func, select

from identity_bridge.domain.models import Group, GroupRoleLink, Role, UserGroupLink, now_utc
from identity_bridge.repositories.base import (
    ConsumerKeyedRepository,
    delete_rows,
    paginate,
    split_identifiers,
    text_match,
)

logger = structlog.get_logger(__name__)

SEARCHABLE_ATTRIBUTES = ("name", "description", "code")


class GroupRepository(ConsumerKeyedRepository[Group]):
    model = Group

    def _parent_clause(self, parent_id: int | None) -> Any:
        if parent_id is None:
            return col(Group.parent_id).is_(None)
        return col(Group.parent_id) == parent_id

    def find_by_name_and_parent(
        self,
        realm_id: str,
        name: str,
        parent_id: int | None,
    ) -> Group | None:
        statement = (
            select(Group)
            .where(Group.realm_id == realm_id)
            .where(Group.name == name)
            .where(self._parent_clause(parent_id))
        )
        with self._session() as session:
            return session.exec(statement).first()

    def list_by_realm(
        self,
        realm_id: str,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[Group]:
        statement = select(Group).where(Group.realm_id == realm_id).order_by(col(Group.id))
        with self._session() as session:
            return list(session.exec(paginate(statement, first, max_results)).all())

    def get_by_ids_or_search(
        self,
        realm_id: str,
        identifiers: Iterable[str] | None,
        search: str | None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[Group]:
        """Groups matching the id set OR the search text; neither gives nothing."""
        keys, raw = split_identifiers(identifiers or ())
        criteria: list[Any] = []
        if keys:
            criteria.append(col(Group.id).in_(keys))
        if raw:
            criteria.append(col(Group.consumer_id).in_(raw))
        if search:
            criteria.append(text_match(Group.name, search))
        if not criteria:
            return []
        statement = (
            select(Group)
            .where(Group.realm_id == realm_id)
            .where(sa.or_(*criteria))
            .order_by(col(Group.id))
        )
        with self._session() as session:
            return list(session.exec(paginate(statement, first, max_results)).all())

    def count(self, realm_id: str) -> int:
        statement = select(func.count()).select_from(Group).where(Group.realm_id == realm_id)
        with self._session() as session:
            return int(session.exec(statement).one())

    def count_top_level(self, realm_id: str) -> int:
        statement = (
            select(func.count())
            .select_from(Group)
            .where(Group.realm_id == realm_id)
            .where(col(Group.parent_id).is_(None))
        )
        with self._session() as session:
            return int(session.exec(statement).one())

    def count_by_name(self, realm_id: str, search: str | None) -> int:
        statement = select(func.count()).select_from(Group).where(Group.realm_id == realm_id)
        if search:
            statement = statement.where(text_match(Group.name, search))
        with self._session() as session:
            return int(session.exec(statement).one())

    def search_by_attributes(
        self,
        realm_id: str,
        attributes: Mapping[str, str],
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[Group]:
        statement = select(Group).where(Group.realm_id == realm_id)
        for name, value in attributes.items():
            if name not in SEARCHABLE_ATTRIBUTES:
                logger.warning("group_attribute_unsupported", attribute=name)
                return []
            statement = statement.where(getattr(Group, name) == value)
        statement = paginate(statement.order_by(col(Group.id)), first, max_results)
        with self._session() as session:
            return list(session.exec(statement).all())

    def search_by_name(
        self,
        realm_id: str,
        search: str | None,
        exact: bool = False,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[Group]:
        if not search:
            return []
        statement = (
            select(Group)
            .where(Group.realm_id == realm_id)
            .where(text_match(Group.name, search, exact))
            .order_by(col(Group.id))
        )
        with self._session() as session:
            return list(session.exec(paginate(statement, first, max_results)).all())

    def find_by_role(
        self,
        realm_id: str,
        role_id: int,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[Group]:
        statement = (
            select(Group)
            .join(GroupRoleLink, col(GroupRoleLink.group_id) == col(Group.id))
            .where(GroupRoleLink.role_id == role_id)
            .where(Group.realm_id == realm_id)
            .order_by(col(Group.id))
        )
        with self._session() as session:
            return list(session.exec(paginate(statement, first, max_results)).all())

    def get_top_level(
        self,
        realm_id: str,
        search: str | None = None,
        exact: bool = False,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[Group]:
        statement = (
            select(Group)
            .where(Group.realm_id == realm_id)
            .where(col(Group.parent_id).is_(None))
        )
        if search:
            statement = statement.where(text_match(Group.name, search, exact))
        statement = paginate(statement.order_by(col(Group.id)), first, max_results)
        with self._session() as session:
            return list(session.exec(statement).all())

    def get_children(
        self,
        group_id: int,
        search: str | None = None,
        exact: bool = False,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[Group]:
        statement = select(Group).where(Group.parent_id == group_id)
        if search:
            statement = statement.where(text_match(Group.name, search, exact))
        statement = paginate(statement.order_by(col(Group.id)), first, max_results)
        with self._session() as session:
            return list(session.exec(statement).all())

    def count_children(self, group_id: int) -> int:
        statement = select(func.count()).select_from(Group).where(Group.parent_id == group_id)
        with self._session() as session:
            return int(session.exec(statement).one())

    # Role links

    def get_roles(self, group_id: int) -> list[Role]:
        statement = (
            select(Role)
            .join(GroupRoleLink, col(GroupRoleLink.role_id) == col(Role.id))
            .where(GroupRoleLink.group_id == group_id)
            .order_by(col(Role.id))
        )
        with self._session() as session:
            return list(session.exec(statement).all())

    def has_role(self, group_id: int, role_id: int) -> bool:
        with self._session() as session:
            return session.get(GroupRoleLink, (group_id, role_id)) is not None

    def add_role(self, group_id: int, role_id: int) -> bool:
        with self._atomic() as session:
            if session.get(GroupRoleLink, (group_id, role_id)) is not None:
                return False
            session.add(GroupRoleLink(group_id=group_id, role_id=role_id))
            return True

    def remove_role(self, group_id: int, role_id: int) -> bool:
        with self._atomic() as session:
            deleted = delete_rows(
                session,
                sa.delete(GroupRoleLink)
                .where(col(GroupRoleLink.group_id) == group_id)
                .where(col(GroupRoleLink.role_id) == role_id),
            )
        return deleted > 0

    # Tree maintenance

    def create_group(
        self,
        realm_id: str,
        name: str,
        parent: Group | None = None,
        *,
        description: str | None = None,
        consumer_id: str | None = None,
        created_by: str | None = None,
    ) -> Group | None:
        """Create a group, or return ``None`` when the name is taken under the parent."""
        parent_id = parent.id if parent is not None else None
        if self.find_by_name_and_parent(realm_id, name, parent_id) is not None:
            logger.warning("group_name_conflict", realm_id=realm_id, name=name, parent_id=parent_id)
            return None
        group = Group(
            name=name,
            description=description,
            realm_id=realm_id,
            parent_id=parent_id,
            parent_path=parent.path if parent is not None else None,
            consumer_id=consumer_id,
            created_by=created_by,
            updated_by=created_by,
        )
        return self.save(group)

    def _descendants(self, session: Session, group_id: int) -> list[Group]:
        """Every group below ``group_id``, parents listed before their children."""
        found: list[Group] = []
        seen = {group_id}
        frontier = [group_id]
        while frontier:
            children = list(
                session.exec(
                    select(Group).where(col(Group.parent_id).in_(frontier)).order_by(col(Group.id))
                ).all()
            )
            frontier = []
            for child in children:
                if child.id in seen:
                    continue
                seen.add(child.id)
                found.append(child)
                frontier.append(child.id)
        return found

    def _refresh_descendant_paths(self, session: Session, root: Group) -> int:
        by_id: dict[int | None, Group] = {root.id: root}
        descendants = self._descendants(session, root.id)
        for child in descendants:
            child.parent_path = by_id[child.parent_id].path
            child.updated_at = now_utc()
            session.add(child)
            by_id[child.id] = child
        return len(descendants)

    def descendant_ids(self, group_id: int) -> list[int]:
        with self._session() as session:
            return [child.id for child in self._descendants(session, group_id) if child.id is not None]

    def move(self, group_id: int, parent_id: int | None, updated_by: str | None = None) -> Group | None:
        """Re-parent a group and recompute the parent path of its whole subtree.

        Returns ``None`` when the move is refused: unknown group or parent,
        parent in another realm, parent inside the moved subtree, or a sibling
        with the same name under the target.
        """
        with self._atomic() as session:
            group = session.get(Group, group_id)
            if group is None:
                return None
            parent: Group | None = None
            if parent_id is not None:
                parent = session.get(Group, parent_id)
                if parent is None or parent.realm_id != group.realm_id:
                    logger.warning("group_move_parent_missing", group_id=group_id, parent_id=parent_id)
                    return None
                subtree = {group.id, *(child.id for child in self._descendants(session, group_id))}
                if parent.id in subtree:
                    logger.warning("group_move_into_subtree", group_id=group_id, parent_id=parent_id)
                    return None
            sibling = session.exec(
                select(Group)
                .where(Group.realm_id == group.realm_id)
                .where(Group.name == group.name)
                .where(self._parent_clause(parent_id))
                .where(Group.id != group_id)
            ).first()
            if sibling is not None:
                logger.warning("group_move_name_conflict", group_id=group_id, parent_id=parent_id)
                return None

            group.parent_id = parent.id if parent is not None else None
            group.parent_path = parent.path if parent is not None else None
            group.updated_by = updated_by
            group.updated_at = now_utc()
            session.add(group)
            moved = self._refresh_descendant_paths(session, group)
            session.flush()
        logger.info("group_moved", group_id=group_id, parent_id=parent_id, descendants=moved)
        return group

    def rename(self, group_id: int, name: str, updated_by: str | None = None) -> Group | None:
        """Rename a group; ``None`` when a sibling already uses the name."""
        with self._atomic() as session:
            group = session.get(Group, group_id)
            if group is None:
                return None
            if group.name == name:
                return group
            sibling = session.exec(
                select(Group)
                .where(Group.realm_id == group.realm_id)
                .where(Group.name == name)
                .where(self._parent_clause(group.parent_id))
            ).first()
            if sibling is not None:
                logger.warning("group_name_conflict", realm_id=group.realm_id, name=name, parent_id=group.parent_id)
                return None
            group.name = name
            group.updated_by = updated_by
            group.updated_at = now_utc()
            session.add(group)
            self._refresh_descendant_paths(session, group)
            session.flush()
        return group

    # Deletion

    def delete(self, group: Group, session: Session | None = None) -> int:
        """Delete the group and its subtree with their membership and role links."""
        with self._atomic(session) as active:
            ids = [group.id, *(child.id for child in self._descendants(active, group.id))]
            delete_rows(active, sa.delete(UserGroupLink).where(col(UserGroupLink.group_id).in_(ids)))
            delete_rows(active, sa.delete(GroupRoleLink).where(col(GroupRoleLink.group_id).in_(ids)))
            deleted = delete_rows(active, sa.delete(Group).where(col(Group.id).in_(ids)))
        logger.info("group_deleted", group_id=group.id, count=deleted)
        return deleted

    def delete_all_by_realm(self, realm_id: str, session: Session | None = None) -> int:
        realm_groups = select(Group.id).where(Group.realm_id == realm_id)
        with self._atomic(session) as active:
            delete_rows(active, sa.delete(UserGroupLink).where(col(UserGroupLink.group_id).in_(realm_groups)))
            delete_rows(active, sa.delete(GroupRoleLink).where(col(GroupRoleLink.group_id).in_(realm_groups)))
            deleted = delete_rows(active, sa.delete(Group).where(col(Group.realm_id) == realm_id))
        logger.info("realm_groups_deleted", realm_id=realm_id, count=deleted)
        return deleted

    def remove_role_mappings_for_group(self, group_id: int, session: Session | None = None) -> int:
        with self._atomic(session) as active:
            return delete_rows(
                active,
                sa.delete(GroupRoleLink).where(col(GroupRoleLink.group_id) == group_id),
            )

    def remove_group_mappings_for_role(self, role_id: int, session: Session | None = None) -> int:
        with self._atomic(session) as active:
            return delete_rows(
                active,
                sa.delete(GroupRoleLink).where(col(GroupRoleLink.role_id) == role_id),
            )

    def delete_all_assignments_for_realm_roles(
        self,
        realm_id: str,
        session: Session | None = None,
    ) -> int:
        realm_roles = (
            select(Role.id).where(Role.realm_id == realm_id).where(col(Role.client_id).is_(None))
        )
        with self._atomic(session) as active:
            return delete_rows(
                active,
                sa.delete(GroupRoleLink).where(col(GroupRoleLink.role_id).in_(realm_roles)),
            )

    def delete_all_assignments_for_client_roles(
        self,
        realm_id: str,
        client_id: str,
        session: Session | None = None,
    ) -> int:
        client_roles = select(Role.id).where(Role.realm_id == realm_id).where(Role.client_id == client_id)
        with self._atomic(session) as active:
            return delete_rows(
                active,
                sa.delete(GroupRoleLink).where(col(GroupRoleLink.role_id).in_(client_roles)),
            )
