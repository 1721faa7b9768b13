from __future__ import annotations

from collections.abc import Mapping

import structlog

from identity_bridge.adapters.base import AttributeStore, Repositories
from identity_bridge.adapters.user_adapter import UserAdapter
from identity_bridge.domain.consumer import ClientRef, GroupRef, RealmRef, RoleRef, UserRef
from identity_bridge.domain.models import User
from identity_bridge.errors import ConflictError, PersistenceError
from identity_bridge.infra import settings
from identity_bridge.providers.base import FederationProvider, PasswordVerifier
from identity_bridge.repositories.base import unit_of_work

logger = structlog.get_logger(__name__)

PASSWORD = "password"

SEARCH_PARAM_ALIASES = {
    "keycloak.session.realm.users.query.search": "search",
    "keycloak.session.realm.users.query.exact": "exact",
    "first_name": "firstName",
    "last_name": "lastName",
    "email_verified": "emailVerified",
}


def _parse_bool(value: str | None) -> bool | None:
    if value is None or value == "":
        return None
    return value.strip().lower() in {"1", "true", "yes", "on"}


def normalize_search_params(params: Mapping[str, str]) -> dict[str, str]:
    """Canonical keys, blank values dropped, ``*`` wildcards stripped from the search term."""
    normalized: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        canonical = SEARCH_PARAM_ALIASES.get(key, key)
        text = str(value).strip()
        if canonical == "search":
            text = text.strip("*")
        if text:
            normalized[canonical] = text
    return normalized


class UserStorageProvider(FederationProvider):
    """User lookup, query, registration, bulk update and password validation."""

    def __init__(
        self,
        provider_id: str | None = None,
        repos: Repositories | None = None,
        *,
        attributes: AttributeStore | None = None,
        batch_size: int | None = None,
        patch_attempts: int | None = None,
        password_verifier: PasswordVerifier | None = None,
    ) -> None:
        super().__init__(provider_id, repos, attributes=attributes, patch_attempts=patch_attempts)
        self.batch_size = batch_size or settings.ROLE_GRANT_BATCH_SIZE
        self.password_verifier = password_verifier

    def _wrap(self, realm: RealmRef, record: User | None) -> UserAdapter | None:
        if record is None:
            return None
        if record.realm_id != realm.id:
            return None
        return UserAdapter(self._context(realm.id), record)

    def _wrap_all(self, realm: RealmRef, records: list[User]) -> list[UserAdapter]:
        context = self._context(realm.id)
        return [UserAdapter(context, record) for record in records]

    def _resolve(self, realm: RealmRef, user_id: str) -> User | None:
        record = self.repos.users.resolve(user_id, self.provider_id)
        if record is None or record.realm_id != realm.id:
            return None
        return record

    # Lookup

    def get_user_by_id(self, realm: RealmRef, user_id: str) -> UserAdapter | None:
        return self._wrap(realm, self._resolve(realm, user_id))

    def get_user_by_username(self, realm: RealmRef, username: str) -> UserAdapter | None:
        return self._wrap(realm, self.repos.users.find_by_username(username, realm.id))

    def get_user_by_email(self, realm: RealmRef, email: str) -> UserAdapter | None:
        return self._wrap(realm, self.repos.users.find_by_email(email, realm.id))

    # Query

    def search_for_users(
        self,
        realm: RealmRef,
        params: Mapping[str, str],
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[UserAdapter]:
        criteria = normalize_search_params(params)
        records = self.repos.users.search(
            realm.id,
            search=criteria.get("search"),
            username=criteria.get("username"),
            email=criteria.get("email"),
            first_name=criteria.get("firstName"),
            last_name=criteria.get("lastName"),
            exact=bool(_parse_bool(criteria.get("exact"))),
            email_verified=_parse_bool(criteria.get("emailVerified")),
            enabled=_parse_bool(criteria.get("enabled")),
            first=first,
            max_results=max_results,
        )
        return self._wrap_all(realm, records)

    def get_users_count(self, realm: RealmRef) -> int:
        return self.repos.users.count_by_realm(realm.id)

    def get_users(
        self,
        realm: RealmRef,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[UserAdapter]:
        return self._wrap_all(realm, self.repos.users.list_by_realm(realm.id, first, max_results))

    def get_group_members(
        self,
        realm: RealmRef,
        group: GroupRef,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[UserAdapter]:
        record = self.repos.groups.resolve(group.id, self.provider_id)
        if record is None or record.realm_id != realm.id:
            return []
        return self._wrap_all(realm, self.repos.users.find_by_group(realm.id, record.id, first, max_results))

    def get_role_members(
        self,
        realm: RealmRef,
        role: RoleRef,
        first: int | None = None,
        max_results: int | None = None,
    ) -> list[UserAdapter]:
        record = self.repos.roles.resolve(role.id, self.provider_id)
        if record is None or record.realm_id != realm.id:
            return []
        return self._wrap_all(realm, self.repos.users.find_by_role(realm.id, record.id, first, max_results))

    def search_for_users_by_attribute(self, realm: RealmRef, name: str, value: str) -> list[UserAdapter]:
        return self._wrap_all(realm, self.repos.users.find_by_attribute(realm.id, name, value))

    # Registration

    def add_user(self, realm: RealmRef, username: str) -> UserAdapter | None:
        users = self.repos.users
        if users.find_by_username(username) is not None:
            logger.warning("user_username_conflict", realm_id=realm.id, username=username)
            return None
        try:
            record = users.save(User(username=username, realm_id=realm.id))
        except ConflictError:
            logger.warning("user_username_conflict", realm_id=realm.id, username=username)
            return None
        except PersistenceError:
            logger.exception("user_create_failed", realm_id=realm.id, username=username)
            return None
        adapter = UserAdapter(self._context(realm.id), record)
        self._patch_consumer_id(users, record, adapter.id)
        logger.info("user_created", realm_id=realm.id, user_id=record.id)
        return adapter

    def remove_user(self, realm: RealmRef, user: UserRef) -> bool:
        record = self._resolve(realm, user.id)
        if record is None:
            return False
        try:
            self.repos.users.delete(record)
        except PersistenceError:
            logger.exception("user_delete_failed", realm_id=realm.id, user_id=record.id)
            return False
        logger.info("user_deleted", realm_id=realm.id, user_id=record.id)
        return True

    # Credentials

    def supports_credential_type(self, credential_type: str) -> bool:
        return credential_type == PASSWORD

    def is_configured_for(self, realm: RealmRef, user: UserRef, credential_type: str) -> bool:
        if not self.supports_credential_type(credential_type):
            return False
        record = self._resolve(realm, user.id)
        return record is not None and bool(record.password_hash)

    def is_valid(self, realm: RealmRef, user: UserRef, credential_type: str, challenge: str) -> bool:
        if not self.supports_credential_type(credential_type):
            return False
        record = self._resolve(realm, user.id)
        if record is None or not record.password_hash or record.locked:
            return False
        if self.password_verifier is None:
            logger.warning("password_verifier_missing", realm_id=realm.id)
            return False
        return self.password_verifier(challenge, record.password_hash)

    # Bulk update

    def _apply_to_all_users(self, realm: RealmRef, role: RoleRef, *, grant: bool) -> int:
        users = self.repos.users
        record = self.repos.roles.resolve(role.id, self.provider_id)
        if record is None or record.realm_id != realm.id:
            logger.warning("bulk_role_unresolved", realm_id=realm.id, role=role.id)
            return 0
        changed = 0
        first = 0
        while True:
            page = users.list_by_realm(realm.id, first, self.batch_size)
            if not page:
                break
            user_ids = [user.id for user in page if user.id is not None]
            if grant:
                changed += users.grant_role_to_users(user_ids, record.id)
            else:
                changed += users.revoke_role_from_users(user_ids, record.id)
            logger.debug("bulk_role_batch", realm_id=realm.id, role_id=record.id, first=first, size=len(page))
            first += len(page)
        return changed

    def grant_to_all_users(self, realm: RealmRef, role: RoleRef) -> int:
        """Give the role to every user of the realm, one page at a time."""
        granted = self._apply_to_all_users(realm, role, grant=True)
        logger.info("role_granted_to_realm", realm_id=realm.id, role=role.id, count=granted)
        return granted

    def revoke_from_all_users(self, realm: RealmRef, role: RoleRef) -> int:
        revoked = self._apply_to_all_users(realm, role, grant=False)
        logger.info("role_revoked_from_realm", realm_id=realm.id, role=role.id, count=revoked)
        return revoked

    # Pre-removal hooks; failures propagate so the consumer aborts its removal.

    def pre_remove_realm(self, realm: RealmRef) -> int:
        return self.repos.users.delete_all_by_realm(realm.id)

    def pre_remove_group(self, realm: RealmRef, group: GroupRef) -> int:
        record = self.repos.groups.resolve(group.id, self.provider_id)
        if record is None:
            return 0
        removed = 0
        group_ids = [record.id, *self.repos.groups.descendant_ids(record.id)]
        with unit_of_work() as session:
            for group_id in group_ids:
                removed += self.repos.users.remove_user_mappings_for_group(group_id, session=session)
        return removed

    def pre_remove_role(self, realm: RealmRef, role: RoleRef) -> int:
        record = self.repos.roles.resolve(role.id, self.provider_id)
        if record is None:
            return 0
        return self.repos.users.remove_user_mappings_for_role(record.id)

    def pre_remove_client(self, realm: RealmRef, client: ClientRef) -> int:
        return self.repos.users.delete_all_assignments_for_client_roles(realm.id, client.id)
