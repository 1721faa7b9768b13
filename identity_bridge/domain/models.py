from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel


def now_utc() -> datetime:
    return datetime.now(UTC)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (Index("ix_users_realm_email", "realm_id", "email"),)

    id: int | None = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    email: str | None = Field(default=None, index=True)
    password_hash: str | None = None
    locked: bool = Field(default=False)
    email_verified: bool = Field(default=False)
    consumer_id: str | None = Field(default=None, unique=True, index=True)
    realm_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class UserProfile(SQLModel, table=True):
    __tablename__ = "user_profiles"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", unique=True, index=True)
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    address: str | None = None
    avatar_url: str | None = None
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)


class Group(SQLModel, table=True):
    __tablename__ = "groups"
    __table_args__ = (
        UniqueConstraint("realm_id", "parent_id", "name", name="uq_groups_realm_parent_name"),
        # NULL parent_id escapes the constraint above; top-level names need their own index.
        Index(
            "uq_groups_realm_top_level_name",
            "realm_id",
            "name",
            unique=True,
            sqlite_where=text("parent_id IS NULL"),
            postgresql_where=text("parent_id IS NULL"),
        ),
        Index("ix_groups_realm_parent", "realm_id", "parent_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    code: str | None = None
    description: str | None = None
    parent_id: int | None = Field(default=None, foreign_key="groups.id")
    parent_path: str | None = None
    consumer_id: str | None = Field(default=None, unique=True, index=True)
    realm_id: str = Field(index=True)
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)

    @property
    def path(self) -> str:
        return f"{self.parent_path or ''}/{self.name}"


class Role(SQLModel, table=True):
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("realm_id", "client_id", "name", name="uq_roles_realm_client_name"),
        Index(
            "uq_roles_realm_role_name",
            "realm_id",
            "name",
            unique=True,
            sqlite_where=text("client_id IS NULL"),
            postgresql_where=text("client_id IS NULL"),
        ),
        Index("ix_roles_realm_client", "realm_id", "client_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    code: str | None = None
    description: str | None = None
    consumer_id: str | None = Field(default=None, unique=True, index=True)
    realm_id: str = Field(index=True)
    client_id: str | None = Field(default=None, index=True)
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)

    @property
    def is_client_role(self) -> bool:
        return self.client_id is not None


class Permission(SQLModel, table=True):
    __tablename__ = "permissions"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    code: str = Field(index=True, unique=True)
    module: str | None = Field(default=None, index=True)
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)


class UserRoleLink(SQLModel, table=True):
    __tablename__ = "users_roles"
    __table_args__ = (Index("ix_users_roles_role", "role_id"),)

    user_id: int = Field(foreign_key="users.id", primary_key=True)
    role_id: int = Field(foreign_key="roles.id", primary_key=True)


class UserGroupLink(SQLModel, table=True):
    __tablename__ = "users_groups"
    __table_args__ = (Index("ix_users_groups_group", "group_id"),)

    user_id: int = Field(foreign_key="users.id", primary_key=True)
    group_id: int = Field(foreign_key="groups.id", primary_key=True)


class GroupRoleLink(SQLModel, table=True):
    __tablename__ = "groups_roles"
    __table_args__ = (Index("ix_groups_roles_role", "role_id"),)

    group_id: int = Field(foreign_key="groups.id", primary_key=True)
    role_id: int = Field(foreign_key="roles.id", primary_key=True)


class RolePermissionLink(SQLModel, table=True):
    __tablename__ = "roles_permissions"

    role_id: int = Field(foreign_key="roles.id", primary_key=True)
    permission_id: int = Field(foreign_key="permissions.id", primary_key=True)
