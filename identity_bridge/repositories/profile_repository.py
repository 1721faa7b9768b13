from __future__ import annotations

from collections.abc import Mapping

import sqlalchemy as sa
import structlog
from sqlmodel import Session, col, select

from identity_bridge.domain.models import User, UserProfile
from identity_bridge.repositories.base import SqlRepository, delete_rows, paginate, text_match

logger = structlog.get_logger(__name__)

PROFILE_FIELDS: dict[str, str] = {
    "firstName": "first_name",
    "first_name": "first_name",
    "lastName": "last_name",
    "last_name": "last_name",
    "phone": "phone",
    "address": "address",
    "avatar_url": "avatar_url",
    "avatarUrl": "avatar_url",
}


class UserProfileRepository(SqlRepository[UserProfile]):
    model = UserProfile

    def find_by_user_id(self, user_id: int) -> UserProfile | None:
        with self._session() as session:
            return session.exec(select(UserProfile).where(UserProfile.user_id == user_id)).first()

    def find_by_user_consumer_id(self, consumer_id: str) -> UserProfile | None:
        with self._session() as session:
            statement = (
                select(UserProfile)
                .join(User, col(User.id) == col(UserProfile.user_id))
                .where(User.consumer_id == consumer_id)
            )
            return session.exec(statement).first()

    def search(
        self,
        realm_id: str,
        attributes: Mapping[str, str],
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[UserProfile]:
        statement = (
            select(UserProfile)
            .join(User, col(User.id) == col(UserProfile.user_id))
            .where(User.realm_id == realm_id)
        )
        for name, value in attributes.items():
            field = PROFILE_FIELDS.get(name)
            if field is None:
                logger.warning("profile_attribute_unsupported", attribute=name)
                return []
            statement = statement.where(text_match(getattr(UserProfile, field), value))
        statement = paginate(statement.order_by(col(UserProfile.id)), first, max_results)
        with self._session() as session:
            return list(session.exec(statement).all())

    def sync_profile(self, user_id: int) -> UserProfile:
        """Return the user's profile, creating an empty one when absent."""
        existing = self.find_by_user_id(user_id)
        if existing is not None:
            return existing
        return self.save(UserProfile(user_id=user_id))

    def delete_by_user_id(self, user_id: int, session: Session | None = None) -> int:
        with self._atomic(session) as active:
            return delete_rows(
                active,
                sa.delete(UserProfile).where(col(UserProfile.user_id) == user_id),
            )
