from __future__ import annotations

from identity_bridge.domain.models import Permission


class PermissionAdapter:
    def __init__(self, record: Permission) -> None:
        self._record = record

    @property
    def record(self) -> Permission:
        return self._record

    @property
    def id(self) -> str:
        return str(self._record.id)

    @property
    def name(self) -> str:
        return self._record.name

    @property
    def code(self) -> str:
        return self._record.code

    @property
    def module(self) -> str | None:
        return self._record.module

    @property
    def description(self) -> str | None:
        return self._record.description

    def __eq__(self, other: object) -> bool:
        return isinstance(other, PermissionAdapter) and other.id == self.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        return f"PermissionAdapter(code={self.code!r})"
