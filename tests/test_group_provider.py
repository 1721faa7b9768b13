from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlmodel import SQLModel, create_engine

from identity_bridge.adapters.base import InMemoryAttributeStore, Repositories
from identity_bridge.adapters.sync import sync_group
from identity_bridge.domain.consumer import ConsumerGroup, ConsumerRole, Realm
from identity_bridge.domain.models import Group, User
from identity_bridge.errors import ConflictError
from identity_bridge.infra import db
from identity_bridge.providers.group_provider import GroupStorageProvider

REALM = Realm("acme")


@pytest.fixture()
def provider(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[GroupStorageProvider, None, None]:
    db_path = tmp_path / "group_provider_test.db"
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
    yield GroupStorageProvider("bridge", Repositories(), attributes=InMemoryAttributeStore())
    test_engine.dispose()


def test_create_group_assigns_consumer_id_and_rejects_duplicates(provider: GroupStorageProvider) -> None:
    eng = provider.create_group(REALM, "engineering")
    assert eng is not None
    assert eng.id == f"f:bridge:{eng.record.id}"
    assert eng.parent is None
    assert eng.parent_path is None

    assert provider.create_group(REALM, "engineering") is None

    backend = provider.create_group(REALM, "backend", to_parent=eng)
    assert backend is not None
    assert backend.parent == eng
    assert backend.parent_id == eng.id
    assert backend.path == "/engineering/backend"
    assert provider.create_group(REALM, "backend", to_parent=eng) is None
    assert provider.create_group(REALM, "backend") is not None


def test_create_group_with_unknown_parent_is_refused(provider: GroupStorageProvider) -> None:
    ghost = ConsumerGroup(id="kc-ghost", name="ghost")
    assert provider.create_group(REALM, "orphan", to_parent=ghost) is None
    assert provider.get_groups_count(REALM) == 0


def test_dual_path_group_lookup(provider: GroupStorageProvider) -> None:
    eng = provider.create_group(REALM, "engineering")
    named = provider.create_group(REALM, "design", group_id="kc-design")
    assert eng is not None and named is not None

    assert provider.get_group_by_id(REALM, eng.id) == eng
    assert provider.get_group_by_id(REALM, str(eng.record.id)) == eng
    assert provider.get_group_by_id(REALM, "kc-design") == named
    assert provider.get_group_by_id(REALM, "kc-missing") is None
    assert provider.get_group_by_id(Realm("other"), eng.id) is None


def test_move_group_invariants(provider: GroupStorageProvider) -> None:
    eng = provider.create_group(REALM, "engineering")
    ops = provider.create_group(REALM, "ops")
    assert eng is not None and ops is not None
    backend = provider.create_group(REALM, "backend", to_parent=eng)
    assert backend is not None
    api = provider.create_group(REALM, "api", to_parent=backend)
    assert api is not None

    ghost = ConsumerGroup(id="kc-ghost", name="ghost")
    assert provider.move_group(REALM, backend, ghost) is False
    unchanged = provider.get_group_by_id(REALM, backend.id)
    assert unchanged is not None
    assert unchanged.parent_id == eng.id
    assert unchanged.parent_path == "/engineering"

    assert provider.move_group(REALM, ghost, ops) is False

    assert provider.move_group(REALM, backend, ops) is True
    assert provider.get_group_by_id(REALM, api.id).parent_path == "/ops/backend"  # type: ignore[union-attr]

    assert provider.move_group(REALM, backend, api) is False

    assert provider.add_top_level_group(REALM, backend) is True
    top = provider.get_group_by_id(REALM, backend.id)
    assert top is not None
    assert top.parent is None
    assert top.parent_path is None
    assert top.record.parent_id is None
    assert provider.get_group_by_id(REALM, api.id).parent_path == "/backend"  # type: ignore[union-attr]
    assert provider.get_groups_count(REALM, only_top_groups=True) == 3


def test_group_queries(provider: GroupStorageProvider) -> None:
    eng = provider.create_group(REALM, "engineering")
    ops = provider.create_group(REALM, "operations")
    assert eng is not None and ops is not None
    backend = provider.create_group(REALM, "backend", to_parent=eng)
    assert backend is not None
    role = ConsumerRole(id="kc-dev", name="developer", container_id="acme")
    backend.grant_role(role)

    assert provider.get_groups(REALM) == [eng, ops, backend]
    assert provider.get_groups(REALM, first=1, max_results=1) == [ops]
    assert provider.get_groups_count(REALM) == 3
    assert provider.get_groups_count_by_name_containing(REALM, "ENG") == 1
    assert provider.search_for_group_by_name(REALM, "end") == [backend]
    assert provider.search_for_group_by_name(REALM, None) == []
    assert provider.get_top_level_groups(REALM) == [eng, ops]
    assert provider.get_groups_by_ids_or_search(REALM, [], None) == []
    assert provider.get_groups_by_ids_or_search(REALM, [ops.id], None) == [ops]
    assert provider.get_groups_by_role(REALM, role) == [backend]
    assert eng.get_sub_groups() == [backend]
    assert eng.get_sub_groups_count() == 1


def test_group_adapter_attributes_and_roles(provider: GroupStorageProvider) -> None:
    team = provider.create_group(REALM, "team")
    assert team is not None
    reader = ConsumerRole(id="kc-reader", name="reader", container_id="acme")
    writer = ConsumerRole(id="kc-writer", name="writer", container_id="app", is_client_role=True)

    team.set_attribute("description", ["the team"])
    team.set_single_attribute("code", "T1")
    team.set_single_attribute("color", "blue")
    assert team.get_first_attribute("description") == "the team"
    assert team.get_attribute("color") == ["blue"]
    assert team.get_attributes()["code"] == ["T1"]

    team.grant_role(reader)
    team.grant_role(writer)
    team.grant_role(reader)
    assert [role.name for role in team.get_role_mappings()] == ["reader", "writer"]
    assert [role.name for role in team.get_realm_role_mappings()] == ["reader"]
    assert team.has_role(writer)
    assert not team.has_role(ConsumerRole(id="kc-nope", name="nope", container_id="acme"))

    team.delete_role_mapping(writer)
    assert not team.has_role(writer)


def test_group_rename_and_children(provider: GroupStorageProvider) -> None:
    parent = provider.create_group(REALM, "parent")
    other = provider.create_group(REALM, "other")
    loose = provider.create_group(REALM, "loose")
    assert parent is not None and other is not None and loose is not None
    child = provider.create_group(REALM, "child", to_parent=parent)
    assert child is not None

    assert parent.set_name("other") is False
    assert parent.set_name("renamed") is True
    assert provider.get_group_by_id(REALM, child.id).path == "/renamed/child"  # type: ignore[union-attr]

    assert parent.add_child(loose) is True
    assert provider.get_group_by_id(REALM, loose.id).parent_id == parent.id  # type: ignore[union-attr]
    assert parent.remove_child(loose) is True
    assert provider.get_group_by_id(REALM, loose.id).parent_id is None  # type: ignore[union-attr]
    assert parent.remove_child(other) is False


def test_remove_group_purges_memberships(provider: GroupStorageProvider) -> None:
    repos = provider.repos
    parent = provider.create_group(REALM, "parent")
    assert parent is not None
    child = provider.create_group(REALM, "child", to_parent=parent)
    assert child is not None
    alice = repos.users.save(User(username="alice", realm_id="acme"))
    assert alice.id is not None
    repos.users.join_group(alice.id, parent.record.id)
    repos.users.join_group(alice.id, child.record.id)
    child.grant_role(ConsumerRole(id="kc-r", name="r", container_id="acme"))

    assert provider.remove_group(REALM, parent) is True
    assert provider.get_groups_count(REALM) == 0
    assert repos.users.get_groups(alice.id) == []
    assert provider.remove_group(REALM, parent) is False


def test_realm_cleanup_is_idempotent(provider: GroupStorageProvider) -> None:
    provider.create_group(REALM, "a")
    provider.create_group(REALM, "b")
    provider.create_group(Realm("other"), "a")

    assert provider.pre_remove_realm(REALM) == 2
    assert provider.pre_remove_realm(REALM) == 0
    assert provider.get_groups_count(Realm("other")) == 1


def test_sync_group_is_idempotent_and_materialises_parents(provider: GroupStorageProvider) -> None:
    repos = provider.repos
    root = ConsumerGroup(id="kc-root", name="root")
    leaf = ConsumerGroup(id="kc-leaf", name="leaf", parent=root, description="leaf group")

    first = sync_group(repos.groups, "acme", leaf, "bridge")
    second = sync_group(repos.groups, "acme", leaf, "bridge")
    assert first.id == second.id
    assert first.parent_path == "/root"
    assert first.description == "leaf group"
    assert provider.get_groups_count(REALM) == 2

    parent = repos.groups.find_by_consumer_id("kc-root")
    assert parent is not None
    assert first.parent_id == parent.id

    renamed_ref = ConsumerGroup(id="kc-other-leaf", name="leaf", parent=root)
    adopted = sync_group(repos.groups, "acme", renamed_ref, "bridge")
    assert adopted.id == first.id
    assert provider.get_groups_count(REALM) == 2


def test_sync_group_race_returns_the_committed_record(
    provider: GroupStorageProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    groups = provider.repos.groups
    winner = sync_group(groups, "acme", ConsumerGroup(id="kc-team-1", name="team"), "bridge")
    original = groups.find_by_name_and_parent
    lookups: list[str] = []

    # The late request checked for "team" before the winner committed: its own
    # lookup and the create-time check both miss.
    def _stale_lookup(realm_id: str, name: str, parent_id: int | None) -> Group | None:
        lookups.append(name)
        if len(lookups) <= 2:
            return None
        return original(realm_id, name, parent_id)

    monkeypatch.setattr(groups, "find_by_name_and_parent", _stale_lookup)
    loser = sync_group(groups, "acme", ConsumerGroup(id="kc-team-2", name="team"), "bridge")

    assert loser.id == winner.id
    assert lookups == ["team", "team", "team"]
    assert groups.count_top_level("acme") == 1
    assert groups.find_by_consumer_id("kc-team-2") is None


def test_sync_group_keeps_record_when_consumer_id_is_taken(
    provider: GroupStorageProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    groups = provider.repos.groups
    existing = groups.create_group("acme", "legacy")
    assert existing is not None

    def _taken(key: int, consumer_id: str) -> bool:
        raise ConflictError("consumer id already stored")

    monkeypatch.setattr(groups, "assign_consumer_id", _taken)
    synced = sync_group(groups, "acme", ConsumerGroup(id="kc-legacy", name="legacy"), "bridge")

    assert synced.id == existing.id
    assert synced.consumer_id is None
    assert groups.count("acme") == 1
