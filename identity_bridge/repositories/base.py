from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import Any, ClassVar, Generic, TypeVar

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import Session, SQLModel, col, select

from identity_bridge.domain.models import now_utc
from identity_bridge.domain.storage_id import external_id, parse_local_key
from identity_bridge.errors import ConflictError, PersistenceError
from identity_bridge.infra.db import get_engine, transaction

ModelT = TypeVar("ModelT", bound=SQLModel)


@contextmanager
def unit_of_work() -> Iterator[Session]:
    """Atomic unit that re-signals relational failures as bridge errors."""
    try:
        with transaction() as session:
            yield session
    except IntegrityError as exc:
        raise ConflictError(str(exc.orig)) from exc
    except SQLAlchemyError as exc:
        raise PersistenceError(str(exc)) from exc


def paginate(statement: Any, first: int | None, max_results: int | None) -> Any:
    if first is not None and first > 0:
        statement = statement.offset(first)
    if max_results is not None and max_results >= 0:
        statement = statement.limit(max_results)
    return statement


def text_match(column: Any, search: str, exact: bool = False) -> ColumnElement[bool]:
    """Case-insensitive substring match, or case-sensitive equality when exact."""
    if exact:
        return col(column) == search
    return sa.func.lower(col(column)).contains(search.lower(), autoescape=True)


def split_identifiers(identifiers: Iterable[str]) -> tuple[list[int], list[str]]:
    """Split mixed ids into local keys and the raw strings to match as consumer ids."""
    keys: list[int] = []
    raw: list[str] = []
    for identifier in identifiers:
        if not identifier:
            continue
        raw.append(identifier)
        key = parse_local_key(external_id(identifier) or identifier)
        if key is not None:
            keys.append(key)
    return keys, raw


def delete_rows(session: Session, statement: Any) -> int:
    result = session.execute(statement, execution_options={"synchronize_session": False})
    rowcount = getattr(result, "rowcount", None)
    return int(rowcount or 0)


class SqlRepository(Generic[ModelT]):
    model: ClassVar[type[Any]]

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @contextmanager
    def _atomic(self, session: Session | None = None) -> Iterator[Session]:
        """Join the caller's atomic unit when one is given, else open one."""
        if session is not None:
            yield session
            return
        with unit_of_work() as own:
            yield own

    def get_by_id(self, key: int | str | None) -> ModelT | None:
        local_key = parse_local_key(key)
        if local_key is None:
            return None
        with self._session() as session:
            return session.get(self.model, local_key)

    def save(self, record: ModelT, session: Session | None = None) -> ModelT:
        if hasattr(record, "updated_at"):
            record.updated_at = now_utc()  # type: ignore[attr-defined]
        with self._atomic(session) as active:
            active.add(record)
            active.flush()
            active.refresh(record)
        return record


class ConsumerKeyedRepository(SqlRepository[ModelT]):
    """Repository of an entity that can carry a consumer-assigned id."""

    def find_by_consumer_id(self, consumer_id: str | None) -> ModelT | None:
        if not consumer_id:
            return None
        with self._session() as session:
            statement = select(self.model).where(self.model.consumer_id == consumer_id)
            return session.exec(statement).first()

    def resolve(self, identifier: str | None, provider_id: str | None = None) -> ModelT | None:
        """Dual-path lookup: local key first, then the stored consumer id."""
        if not identifier:
            return None
        candidate = external_id(identifier, provider_id) or identifier
        found = self.get_by_id(candidate)
        if found is not None:
            return found
        return self.find_by_consumer_id(identifier)

    def assign_consumer_id(self, key: int, consumer_id: str) -> bool:
        """Store the consumer id once; an id already present is kept."""
        with self._atomic() as session:
            record = session.get(self.model, key)
            if record is None:
                return False
            if record.consumer_id is None:
                record.consumer_id = consumer_id
                record.updated_at = now_utc()
                session.add(record)
            return True
