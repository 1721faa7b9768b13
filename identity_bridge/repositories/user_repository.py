from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
import structlog
from sqlmodel import Session, col, func, select

from identity_bridge.domain.models import (
    Group,
    GroupRoleLink,
    Role,
    User,
    UserGroupLink,
    UserProfile,
    UserRoleLink,
)
from identity_bridge.repositories.base import (
    ConsumerKeyedRepository,
    delete_rows,
    paginate,
    text_match,
)
from identity_bridge.repositories.profile_repository import PROFILE_FIELDS

logger = structlog.get_logger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _as_bool(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


class UserRepository(ConsumerKeyedRepository[User]):
    model = User

    def find_by_username(self, username: str, realm_id: str | None = None) -> User | None:
        statement = select(User).where(User.username == username)
        if realm_id is not None:
            statement = statement.where(User.realm_id == realm_id)
        with self._session() as session:
            return session.exec(statement).first()

    def find_by_email(self, email: str, realm_id: str | None = None) -> User | None:
        statement = select(User).where(User.email == email)
        if realm_id is not None:
            statement = statement.where(User.realm_id == realm_id)
        with self._session() as session:
            return session.exec(statement.order_by(col(User.id))).first()

    def search(
        self,
        realm_id: str,
        *,
        search: str | None = None,
        username: str | None = None,
        email: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        exact: bool = False,
        email_verified: bool | None = None,
        enabled: bool | None = None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[User]:
        statement = (
            select(User)
            .outerjoin(UserProfile, col(UserProfile.user_id) == col(User.id))
            .where(User.realm_id == realm_id)
        )
        if search:
            statement = statement.where(
                sa.or_(
                    text_match(User.username, search),
                    text_match(User.email, search),
                    text_match(UserProfile.first_name, search),
                    text_match(UserProfile.last_name, search),
                )
            )
        if username:
            statement = statement.where(text_match(User.username, username, exact))
        if email:
            statement = statement.where(text_match(User.email, email, exact))
        if first_name:
            statement = statement.where(text_match(UserProfile.first_name, first_name, exact))
        if last_name:
            statement = statement.where(text_match(UserProfile.last_name, last_name, exact))
        if email_verified is not None:
            statement = statement.where(User.email_verified == email_verified)
        if enabled is not None:
            statement = statement.where(User.locked == (not enabled))
        statement = paginate(statement.order_by(col(User.id)), first, max_results)
        with self._session() as session:
            return list(session.exec(statement).all())

    def find_by_attribute(self, realm_id: str, name: str, value: str) -> list[User]:
        statement = (
            select(User)
            .outerjoin(UserProfile, col(UserProfile.user_id) == col(User.id))
            .where(User.realm_id == realm_id)
        )
        if name == "username":
            statement = statement.where(User.username == value)
        elif name == "email":
            statement = statement.where(User.email == value)
        elif name == "locked":
            statement = statement.where(User.locked == _as_bool(value))
        elif name == "enabled":
            statement = statement.where(User.locked == (not _as_bool(value)))
        elif name in {"email_verified", "emailVerified"}:
            statement = statement.where(User.email_verified == _as_bool(value))
        elif name in PROFILE_FIELDS:
            statement = statement.where(getattr(UserProfile, PROFILE_FIELDS[name]) == value)
        else:
            logger.warning("user_attribute_unsupported", attribute=name)
            return []
        with self._session() as session:
            return list(session.exec(statement.order_by(col(User.id))).all())

    def count_by_realm(self, realm_id: str) -> int:
        with self._session() as session:
            statement = select(func.count()).select_from(User).where(User.realm_id == realm_id)
            return int(session.exec(statement).one())

    def list_by_realm(
        self,
        realm_id: str,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[User]:
        statement = select(User).where(User.realm_id == realm_id).order_by(col(User.id))
        with self._session() as session:
            return list(session.exec(paginate(statement, first, max_results)).all())

    def find_by_group(
        self,
        realm_id: str,
        group_id: int,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[User]:
        statement = (
            select(User)
            .join(UserGroupLink, col(UserGroupLink.user_id) == col(User.id))
            .where(UserGroupLink.group_id == group_id)
            .where(User.realm_id == realm_id)
            .order_by(col(User.id))
        )
        with self._session() as session:
            return list(session.exec(paginate(statement, first, max_results)).all())

    def find_by_role(
        self,
        realm_id: str,
        role_id: int,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[User]:
        statement = (
            select(User)
            .join(UserRoleLink, col(UserRoleLink.user_id) == col(User.id))
            .where(UserRoleLink.role_id == role_id)
            .where(User.realm_id == realm_id)
            .order_by(col(User.id))
        )
        with self._session() as session:
            return list(session.exec(paginate(statement, first, max_results)).all())

    def count_by_role(self, realm_id: str, role_id: int) -> int:
        statement = (
            select(func.count())
            .select_from(User)
            .join(UserRoleLink, col(UserRoleLink.user_id) == col(User.id))
            .where(UserRoleLink.role_id == role_id)
            .where(User.realm_id == realm_id)
        )
        with self._session() as session:
            return int(session.exec(statement).one())

    # Role and group links

    def get_roles(self, user_id: int) -> list[Role]:
        statement = (
            select(Role)
            .join(UserRoleLink, col(UserRoleLink.role_id) == col(Role.id))
            .where(UserRoleLink.user_id == user_id)
            .order_by(col(Role.id))
        )
        with self._session() as session:
            return list(session.exec(statement).all())

    def get_group_roles(self, user_id: int) -> list[Role]:
        """Roles inherited through one level of group membership."""
        statement = (
            select(Role)
            .join(GroupRoleLink, col(GroupRoleLink.role_id) == col(Role.id))
            .join(UserGroupLink, col(UserGroupLink.group_id) == col(GroupRoleLink.group_id))
            .where(UserGroupLink.user_id == user_id)
            .distinct()
            .order_by(col(Role.id))
        )
        with self._session() as session:
            return list(session.exec(statement).all())

    def get_groups(
        self,
        user_id: int,
        search: str | None = None,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[Group]:
        statement = (
            select(Group)
            .join(UserGroupLink, col(UserGroupLink.group_id) == col(Group.id))
            .where(UserGroupLink.user_id == user_id)
        )
        if search:
            statement = statement.where(text_match(Group.name, search))
        statement = paginate(statement.order_by(col(Group.id)), first, max_results)
        with self._session() as session:
            return list(session.exec(statement).all())

    def count_groups(self, user_id: int) -> int:
        statement = (
            select(func.count())
            .select_from(UserGroupLink)
            .where(UserGroupLink.user_id == user_id)
        )
        with self._session() as session:
            return int(session.exec(statement).one())

    def is_member(self, user_id: int, group_id: int) -> bool:
        with self._session() as session:
            return session.get(UserGroupLink, (user_id, group_id)) is not None

    def add_role(self, user_id: int, role_id: int) -> bool:
        with self._atomic() as session:
            if session.get(UserRoleLink, (user_id, role_id)) is not None:
                return False
            session.add(UserRoleLink(user_id=user_id, role_id=role_id))
            return True

    def remove_role(self, user_id: int, role_id: int) -> bool:
        with self._atomic() as session:
            deleted = delete_rows(
                session,
                sa.delete(UserRoleLink)
                .where(col(UserRoleLink.user_id) == user_id)
                .where(col(UserRoleLink.role_id) == role_id),
            )
        return deleted > 0

    def join_group(self, user_id: int, group_id: int) -> bool:
        with self._atomic() as session:
            if session.get(UserGroupLink, (user_id, group_id)) is not None:
                return False
            session.add(UserGroupLink(user_id=user_id, group_id=group_id))
            return True

    def leave_group(self, user_id: int, group_id: int) -> bool:
        with self._atomic() as session:
            deleted = delete_rows(
                session,
                sa.delete(UserGroupLink)
                .where(col(UserGroupLink.user_id) == user_id)
                .where(col(UserGroupLink.group_id) == group_id),
            )
        return deleted > 0

    def grant_role_to_users(
        self,
        user_ids: Sequence[int],
        role_id: int,
        session: Session | None = None,
    ) -> int:
        """Add the role to every listed user lacking it; returns rows added."""
        if not user_ids:
            return 0
        with self._atomic(session) as active:
            holders = set(
                active.exec(
                    select(UserRoleLink.user_id)
                    .where(UserRoleLink.role_id == role_id)
                    .where(col(UserRoleLink.user_id).in_(list(user_ids)))
                ).all()
            )
            added = 0
            for user_id in user_ids:
                if user_id in holders:
                    continue
                active.add(UserRoleLink(user_id=user_id, role_id=role_id))
                holders.add(user_id)
                added += 1
            return added

    def revoke_role_from_users(
        self,
        user_ids: Sequence[int],
        role_id: int,
        session: Session | None = None,
    ) -> int:
        if not user_ids:
            return 0
        with self._atomic(session) as active:
            return delete_rows(
                active,
                sa.delete(UserRoleLink)
                .where(col(UserRoleLink.role_id) == role_id)
                .where(col(UserRoleLink.user_id).in_(list(user_ids))),
            )

    # Deletion

    def delete(self, user: User, session: Session | None = None) -> None:
        """Delete the user with its role/group links and profile."""
        with self._atomic(session) as active:
            delete_rows(active, sa.delete(UserRoleLink).where(col(UserRoleLink.user_id) == user.id))
            delete_rows(active, sa.delete(UserGroupLink).where(col(UserGroupLink.user_id) == user.id))
            delete_rows(active, sa.delete(UserProfile).where(col(UserProfile.user_id) == user.id))
            delete_rows(active, sa.delete(User).where(col(User.id) == user.id))

    def delete_by_id(self, identifier: str) -> bool:
        """Delete by local key, falling back to the consumer id."""
        user = self.resolve(identifier)
        if user is None:
            return False
        self.delete(user)
        return True

    def delete_all_by_realm(self, realm_id: str, session: Session | None = None) -> int:
        realm_users = select(User.id).where(User.realm_id == realm_id)
        with self._atomic(session) as active:
            delete_rows(active, sa.delete(UserRoleLink).where(col(UserRoleLink.user_id).in_(realm_users)))
            delete_rows(active, sa.delete(UserGroupLink).where(col(UserGroupLink.user_id).in_(realm_users)))
            delete_rows(active, sa.delete(UserProfile).where(col(UserProfile.user_id).in_(realm_users)))
            deleted = delete_rows(active, sa.delete(User).where(col(User.realm_id) == realm_id))
        logger.info("realm_users_deleted", realm_id=realm_id, count=deleted)
        return deleted

    def remove_user_mappings_for_group(self, group_id: int, session: Session | None = None) -> int:
        with self._atomic(session) as active:
            return delete_rows(
                active,
                sa.delete(UserGroupLink).where(col(UserGroupLink.group_id) == group_id),
            )

    def remove_user_mappings_for_role(self, role_id: int, session: Session | None = None) -> int:
        with self._atomic(session) as active:
            return delete_rows(
                active,
                sa.delete(UserRoleLink).where(col(UserRoleLink.role_id) == role_id),
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
                sa.delete(UserRoleLink).where(col(UserRoleLink.role_id).in_(realm_roles)),
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
                sa.delete(UserRoleLink).where(col(UserRoleLink.role_id).in_(client_roles)),
            )
