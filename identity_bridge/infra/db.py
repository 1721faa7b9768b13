from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import Engine, text
from sqlmodel import Session, create_engine

from identity_bridge.infra import settings

engine: Engine | None = None
_engine_lock = threading.Lock()


def get_engine() -> Engine:
    """Return the process-wide engine, building it on first use."""
    global engine
    current = engine
    if current is not None:
        return current
    with _engine_lock:
        if engine is None:
            engine = create_engine(
                settings.DATABASE_URL,
                pool_pre_ping=settings.DATABASE_POOL_PRE_PING,
            )
        return engine


def dispose_engine() -> None:
    """Shutdown hook: release pooled connections and forget the engine."""
    global engine
    with _engine_lock:
        if engine is not None:
            engine.dispose()
        engine = None


@contextmanager
def transaction() -> Iterator[Session]:
    """One atomic unit: commit on success, full rollback on any failure."""
    with Session(get_engine(), expire_on_commit=False) as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


def check_db_ready() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
