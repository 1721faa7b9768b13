"""Shapes of the consumer-owned objects handed to the bridge.

The consumer runtime passes its own realm, client, user, group and role
objects into provider calls. The bridge only reads the members below.
The frozen dataclasses at the end are plain-value implementations of the
same shapes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class RealmRef(Protocol):
    @property
    def id(self) -> str: ...


class ClientRef(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def realm(self) -> RealmRef: ...


class RoleRef(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str | None: ...

    @property
    def is_client_role(self) -> bool: ...

    @property
    def container_id(self) -> str: ...


class GroupRef(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str | None: ...

    @property
    def parent(self) -> GroupRef | None: ...


class UserRef(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def username(self) -> str: ...


@dataclass(frozen=True)
class Realm:
    id: str


@dataclass(frozen=True)
class Client:
    id: str
    realm: Realm


@dataclass(frozen=True)
class ConsumerRole:
    """Detached role reference, e.g. one the consumer rebuilt from its cache."""

    id: str
    name: str
    container_id: str
    is_client_role: bool = False
    description: str | None = None


@dataclass(frozen=True)
class ConsumerGroup:
    id: str
    name: str
    parent: ConsumerGroup | None = None
    description: str | None = None


@dataclass(frozen=True)
class ConsumerUser:
    id: str
    username: str
