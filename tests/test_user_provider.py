from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlmodel import SQLModel, create_engine

from identity_bridge.adapters.base import Repositories
from identity_bridge.adapters.user_adapter import UserAdapter
from identity_bridge.domain.consumer import Client, ConsumerGroup, ConsumerRole, ConsumerUser, Realm
from identity_bridge.domain.models import Permission, User
from identity_bridge.errors import PersistenceError
from identity_bridge.infra import db
from identity_bridge.providers.user_provider import UserStorageProvider, normalize_search_params
from identity_bridge.repositories.base import unit_of_work

REALM = Realm("acme")


def _verify(challenge: str, password_hash: str) -> bool:
    return password_hash == f"hashed:{challenge}"


@pytest.fixture()
def provider(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[UserStorageProvider, None, None]:
    db_path = tmp_path / "user_provider_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    yield UserStorageProvider(
        "bridge",
        Repositories(),
        batch_size=100,
        patch_attempts=2,
        password_verifier=_verify,
    )
    test_engine.dispose()


def _add_user(provider: UserStorageProvider, username: str) -> UserAdapter:
    user = provider.add_user(REALM, username)
    assert user is not None
    return user


def _seed_users(count: int, realm_id: str = "acme") -> None:
    with unit_of_work() as session:
        session.add_all(
            [User(username=f"{realm_id}-user{index:04d}", realm_id=realm_id) for index in range(count)]
        )


def _record_fetches(monkeypatch: pytest.MonkeyPatch, provider: UserStorageProvider) -> list[int]:
    users = provider.repos.users
    original = users.list_by_realm
    fetches: list[int] = []

    def _recording(realm_id: str, first: int | None = None, max_results: int | None = None) -> list[User]:
        page = original(realm_id, first, max_results)
        fetches.append(len(page))
        return page

    monkeypatch.setattr(users, "list_by_realm", _recording)
    return fetches


def test_add_user_and_dual_path_lookup(provider: UserStorageProvider) -> None:
    alice = _add_user(provider, "alice")
    key = alice.record.id

    assert alice.id == f"f:bridge:{key}"
    assert alice.record.consumer_id == alice.id
    assert alice.federation_link == "bridge"
    assert provider.get_user_by_id(REALM, alice.id) == alice
    assert provider.get_user_by_id(REALM, str(key)) == alice
    assert provider.get_user_by_id(REALM, "not-a-key") is None
    assert provider.get_user_by_id(REALM, "f:other:1") is None
    assert provider.get_user_by_id(Realm("other"), alice.id) is None
    assert provider.get_user_by_username(REALM, "alice") == alice
    assert provider.get_user_by_username(Realm("other"), "alice") is None


def test_add_user_reports_conflict_without_raising(provider: UserStorageProvider) -> None:
    _add_user(provider, "alice")
    assert provider.add_user(REALM, "alice") is None
    assert provider.get_users_count(REALM) == 1


def test_add_user_survives_consumer_id_patch_failure(
    provider: UserStorageProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls: list[int] = []

    def _missing(key: int, consumer_id: str) -> bool:
        calls.append(key)
        return False

    monkeypatch.setattr(provider.repos.users, "assign_consumer_id", _missing)
    bob = provider.add_user(REALM, "bob")

    assert bob is not None
    assert len(calls) == 2
    assert bob.record.consumer_id is None
    assert bob.id == f"f:bridge:{bob.record.id}"
    assert provider.get_user_by_id(REALM, str(bob.record.id)) == bob
    assert provider.get_user_by_id(REALM, bob.id) == bob


def test_add_user_survives_consumer_id_patch_error(
    provider: UserStorageProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _broken(key: int, consumer_id: str) -> bool:
        raise PersistenceError("connection lost")

    monkeypatch.setattr(provider.repos.users, "assign_consumer_id", _broken)
    carol = provider.add_user(REALM, "carol")

    assert carol is not None
    assert provider.get_user_by_id(REALM, str(carol.record.id)) is not None


def test_user_adapter_accessors(provider: UserStorageProvider) -> None:
    alice = _add_user(provider, "alice")

    assert alice.enabled is True
    assert alice.email is None
    assert alice.first_name is None
    assert alice.get_first_attribute("phone") is None
    assert alice.created_timestamp > 0

    alice.set_enabled(False)
    alice.set_email("alice@example.com")
    alice.set_email_verified(True)
    alice.set_first_name("Alice")
    alice.set_single_attribute("phone", "555-0100")
    alice.set_single_attribute("nickname", "al")

    reloaded = provider.get_user_by_id(REALM, alice.id)
    assert reloaded is not None
    assert reloaded.enabled is False
    assert reloaded.record.locked is True
    assert reloaded.email_verified is True
    assert reloaded.first_name == "Alice"
    assert reloaded.get_attribute("phone") == ["555-0100"]
    assert reloaded.get_attribute("nickname") == []
    attributes = reloaded.get_attributes()
    assert attributes["username"] == ["alice"]
    assert attributes["email"] == ["alice@example.com"]
    assert attributes["firstName"] == ["Alice"]
    assert "lastName" not in attributes

    reloaded.remove_attribute("phone")
    assert reloaded.get_attribute("phone") == []
    assert provider.get_user_by_email(REALM, "alice@example.com") == alice


def test_permission_aggregation_through_groups(provider: UserStorageProvider) -> None:
    repos = provider.repos
    alice = _add_user(provider, "alice")
    r1 = ConsumerRole(id="kc-r1", name="r1", container_id="acme")
    r2 = ConsumerRole(id="kc-r2", name="r2", container_id="acme")
    group = ConsumerGroup(id="kc-g", name="g")

    alice.grant_role(r1)
    alice.join_group(group)
    r1_record = repos.roles.find_by_consumer_id("kc-r1")
    group_record = repos.groups.find_by_consumer_id("kc-g")
    assert r1_record is not None and group_record is not None
    r2_record = repos.roles.create_realm_role("acme", "r2", consumer_id="kc-r2")
    assert r2_record is not None
    repos.groups.add_role(group_record.id, r2_record.id)

    p1 = repos.permissions.save(Permission(name="P1", code="p1"))
    p2 = repos.permissions.save(Permission(name="P2", code="p2"))
    repos.roles.add_permission(r1_record.id, p1.id)
    repos.roles.add_permission(r2_record.id, p2.id)
    repos.roles.add_permission(r2_record.id, p1.id)

    assert sorted(item.code for item in alice.get_effective_permissions()) == ["p1", "p2"]
    assert [role.name for role in alice.get_role_mappings()] == ["r1"]
    assert [role.name for role in alice.get_effective_roles()] == ["r1", "r2"]
    assert alice.has_role(r2)
    assert alice.is_member_of(group)
    assert alice.get_groups_count() == 1

    alice.leave_group(group)
    assert [item.code for item in alice.get_effective_permissions()] == ["p1"]
    assert not alice.has_role(r2)
    assert alice.has_role(r1)
    assert not alice.is_member_of(group)
    assert not alice.is_member_of(ConsumerGroup(id="kc-unknown", name="unknown"))


def test_role_mappings_split_by_client(provider: UserStorageProvider) -> None:
    alice = _add_user(provider, "alice")
    client = Client("app", REALM)
    alice.grant_role(ConsumerRole(id="kc-realm", name="viewer", container_id="acme"))
    alice.grant_role(ConsumerRole(id="kc-client", name="viewer", container_id="app", is_client_role=True))

    assert [role.id for role in alice.get_realm_role_mappings()] == ["kc-realm"]
    assert [role.id for role in alice.get_client_role_mappings(client)] == ["kc-client"]
    assert len(alice.get_role_mappings()) == 2

    alice.delete_role_mapping(ConsumerRole(id="kc-client", name="viewer", container_id="app", is_client_role=True))
    alice.delete_role_mapping(ConsumerRole(id="kc-missing", name="missing", container_id="acme"))
    assert [role.id for role in alice.get_role_mappings()] == ["kc-realm"]


def test_grant_role_to_all_users_in_batches(
    provider: UserStorageProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _seed_users(250)
    _seed_users(3, realm_id="elsewhere")
    role = provider.repos.roles.create_realm_role("acme", "member", consumer_id="kc-member")
    assert role is not None
    fetches = _record_fetches(monkeypatch, provider)

    granted = provider.grant_to_all_users(REALM, ConsumerRole(id="kc-member", name="member", container_id="acme"))

    assert fetches == [100, 100, 50, 0]
    assert granted == 250
    assert provider.repos.users.count_by_role("acme", role.id) == 250
    assert provider.repos.users.count_by_role("elsewhere", role.id) == 0


def test_grant_loop_stops_on_empty_page(
    provider: UserStorageProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _seed_users(200)
    role = provider.repos.roles.create_realm_role("acme", "member", consumer_id="kc-member")
    assert role is not None
    member = ConsumerRole(id="kc-member", name="member", container_id="acme")
    fetches = _record_fetches(monkeypatch, provider)

    assert provider.grant_to_all_users(REALM, member) == 200
    assert fetches == [100, 100, 0]

    assert provider.grant_to_all_users(REALM, member) == 0

    assert provider.revoke_from_all_users(REALM, member) == 200
    assert provider.repos.users.count_by_role("acme", role.id) == 0


def test_grant_with_unresolvable_role_is_a_no_op(
    provider: UserStorageProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _seed_users(5)
    fetches = _record_fetches(monkeypatch, provider)

    assert provider.grant_to_all_users(REALM, ConsumerRole(id="kc-ghost", name="ghost", container_id="acme")) == 0
    assert fetches == []


def test_search_for_users_normalises_params(provider: UserStorageProvider) -> None:
    alice = _add_user(provider, "alice")
    bob = _add_user(provider, "bob")
    bob.set_enabled(False)
    alice.set_last_name("Liddell")

    assert provider.search_for_users(REALM, {"search": "*"}) == [alice, bob]
    assert provider.search_for_users(REALM, {"keycloak.session.realm.users.query.search": "*LI*"}) == [alice]
    assert provider.search_for_users(REALM, {"username": "ALICE", "exact": "true"}) == []
    assert provider.search_for_users(REALM, {"username": "ALICE"}) == [alice]
    assert provider.search_for_users(REALM, {"enabled": "false"}) == [bob]
    assert provider.search_for_users(REALM, {"lastName": "lid"}) == [alice]
    assert provider.search_for_users(REALM, {}, first=1, max_results=5) == [bob]
    assert provider.search_for_users_by_attribute(REALM, "lastName", "Liddell") == [alice]
    assert normalize_search_params({"first_name": " Al ", "email": ""}) == {"firstName": "Al"}


def test_group_and_role_members(provider: UserStorageProvider) -> None:
    alice = _add_user(provider, "alice")
    _add_user(provider, "bob")
    group = ConsumerGroup(id="kc-g", name="g")
    role = ConsumerRole(id="kc-r", name="r", container_id="acme")
    alice.join_group(group)
    alice.grant_role(role)

    assert provider.get_group_members(REALM, group) == [alice]
    assert provider.get_group_members(REALM, ConsumerGroup(id="kc-none", name="none")) == []
    assert provider.get_role_members(REALM, role) == [alice]


def test_password_validation(provider: UserStorageProvider) -> None:
    alice = _add_user(provider, "alice")
    ref = ConsumerUser(id=alice.id, username="alice")

    assert provider.supports_credential_type("password")
    assert not provider.supports_credential_type("otp")
    assert not provider.is_configured_for(REALM, ref, "password")

    alice.set_password_hash("hashed:secret")
    assert provider.is_configured_for(REALM, ref, "password")
    assert provider.is_valid(REALM, ref, "password", "secret")
    assert not provider.is_valid(REALM, ref, "password", "guess")
    assert not provider.is_valid(REALM, ref, "otp", "secret")

    alice.set_enabled(False)
    assert not provider.is_valid(REALM, ref, "password", "secret")


def test_remove_user(provider: UserStorageProvider) -> None:
    alice = _add_user(provider, "alice")
    alice.join_group(ConsumerGroup(id="kc-g", name="g"))
    alice.grant_role(ConsumerRole(id="kc-r", name="r", container_id="acme"))
    alice.set_first_name("Alice")

    assert provider.remove_user(REALM, alice) is True
    assert provider.get_user_by_id(REALM, alice.id) is None
    assert provider.remove_user(REALM, alice) is False
    assert provider.repos.profiles.find_by_user_id(alice.record.id) is None


def test_pre_removal_hooks(provider: UserStorageProvider) -> None:
    repos = provider.repos
    alice = _add_user(provider, "alice")
    group = ConsumerGroup(id="kc-g", name="g")
    realm_role = ConsumerRole(id="kc-r", name="r", container_id="acme")
    client_role = ConsumerRole(id="kc-c", name="c", container_id="app", is_client_role=True)
    alice.join_group(group)
    alice.grant_role(realm_role)
    alice.grant_role(client_role)

    assert provider.pre_remove_group(REALM, group) == 1
    assert provider.pre_remove_group(REALM, group) == 0
    assert provider.pre_remove_role(REALM, realm_role) == 1
    assert provider.pre_remove_role(REALM, realm_role) == 0
    assert provider.pre_remove_client(REALM, Client("app", REALM)) == 1
    assert provider.pre_remove_client(REALM, Client("app", REALM)) == 0
    assert alice.get_role_mappings() == []
    assert repos.groups.find_by_consumer_id("kc-g") is not None

    _add_user(provider, "bob")
    assert provider.pre_remove_realm(REALM) == 2
    assert provider.pre_remove_realm(REALM) == 0
    assert provider.get_users_count(REALM) == 0
