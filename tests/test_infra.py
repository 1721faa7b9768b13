from __future__ import annotations

from pathlib import Path

import pytest
import structlog
from sqlmodel import Session, SQLModel, select

from identity_bridge.domain.models import Permission
from identity_bridge.infra import db, settings
from identity_bridge.infra.logging import configure_logging
from identity_bridge.providers.factory import FederationProviderFactory
from identity_bridge.providers.user_provider import UserStorageProvider


@pytest.fixture()
def sqlite_url(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> str:
    url = f"sqlite:///{tmp_path / 'infra_test.db'}"
    monkeypatch.setattr(settings, "DATABASE_URL", url)
    monkeypatch.setattr(db, "engine", None)
    return url


def test_engine_is_built_lazily_and_disposed(sqlite_url: str) -> None:
    assert db.engine is None
    first = db.get_engine()
    assert db.get_engine() is first
    assert str(first.url) == sqlite_url
    assert db.check_db_ready()

    db.dispose_engine()
    assert db.engine is None
    assert db.get_engine() is not first
    db.dispose_engine()


def test_transaction_rolls_back_on_error(sqlite_url: str) -> None:
    SQLModel.metadata.create_all(db.get_engine())

    with pytest.raises(RuntimeError):
        with db.transaction() as session:
            session.add(Permission(name="Read", code="read"))
            session.flush()
            raise RuntimeError("abort")

    with db.transaction() as session:
        session.add(Permission(name="Write", code="write"))

    with Session(db.get_engine()) as session:
        codes = [permission.code for permission in session.exec(select(Permission)).all()]
    assert codes == ["write"]
    db.dispose_engine()


def test_factory_builds_providers_sharing_configuration(sqlite_url: str) -> None:
    factory = FederationProviderFactory(provider_id="bridge", batch_size=25, patch_attempts=3)

    assert factory.init()
    users = factory.create_user_provider()
    groups = factory.create_group_provider()
    roles = factory.create_role_provider()

    assert isinstance(users, UserStorageProvider)
    assert users.batch_size == 25
    assert users.patch_attempts == 3
    assert groups.provider_id == roles.provider_id == "bridge"
    assert users.repos is groups.repos is roles.repos

    factory.close()
    assert db.engine is None


def test_factory_reports_unreachable_store(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(db, "engine", None)
    monkeypatch.setattr(settings, "DATABASE_URL", "sqlite:////nonexistent-dir/bridge.db")

    factory = FederationProviderFactory()
    assert factory.init() is False
    assert factory.create_user_provider().provider_id == settings.FEDERATION_PROVIDER_ID
    factory.close()


def test_configure_logging_filters_below_level(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging("warning")
    logger = structlog.get_logger("identity_bridge.test")

    logger.info("quiet_event")
    logger.warning("loud_event", realm_id="acme")

    output = capsys.readouterr().out
    assert "quiet_event" not in output
    assert "loud_event" in output
    structlog.reset_defaults()
