"""
Root test configuration and fixtures.

Provides a fresh database per test (the engine commits for real, so a
rollback-per-test session would not isolate anything), configuration and
registry fixtures, and an account factory.

Uses PostgreSQL if TEST_DATABASE_URL is set, otherwise SQLite in-memory.
"""

import os
from datetime import datetime, timezone
from typing import Generator
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")

# Fixed reference time: period math in tests never depends on the wall clock
NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _get_test_database_url() -> str:
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url
    return "sqlite:///:memory:"


def _is_postgres() -> bool:
    return _get_test_database_url().startswith("postgresql")


def _import_models():
    from entitlement_engine.db_base import Base
    from entitlement_engine import models  # noqa: F401 - registers every table
    return Base


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Configuration, registry, audit and alert singletons start clean."""
    from entitlement_engine.entitlements.audit import reset_audit_logger
    from entitlement_engine.entitlements.loader import reset_entitlement_config
    from entitlement_engine.entitlements.policy import reset_policy_registry
    from entitlement_engine.monitoring.alerts import reset_alert_manager

    def _reset():
        reset_entitlement_config()
        reset_policy_registry()
        reset_audit_logger()
        reset_alert_manager()

    _reset()
    yield
    _reset()


@pytest.fixture
def db_engine():
    """
    Create a database engine with every table.

    SQLite in-memory uses StaticPool so all sessions share one connection.
    """
    from entitlement_engine.database.session import configure_sqlite_engine

    database_url = _get_test_database_url()

    if _is_postgres():
        try:
            engine = create_engine(database_url, pool_pre_ping=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            pytest.skip(f"PostgreSQL not available: {e}")
    else:
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        configure_sqlite_engine(engine)

    Base = _import_models()
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def config():
    """The packaged entitlement configuration."""
    from entitlement_engine.entitlements.loader import get_entitlement_config
    return get_entitlement_config()


@pytest.fixture
def registry(config):
    from entitlement_engine.entitlements.policy import PolicyRegistry

    registry = PolicyRegistry()
    registry.register(config.policies, config.version, config.tier_order)
    return registry


@pytest.fixture
def alert_manager():
    """Alert manager double; assert on send_alert calls."""
    manager = MagicMock()
    manager.send_alert.return_value = True
    return manager


@pytest.fixture
def account_service(db_session, config):
    from entitlement_engine.services.account_service import AccountService
    return AccountService(db_session, config=config)


@pytest.fixture
def make_account(account_service):
    """
    Factory for accounts with their credit account and opening allotment.

    Defaults: PROFESSOR on FREE, open-ended trial, anchored at NOW.
    """
    counter = {"n": 0}

    def _make(role="PROFESSOR", tier="FREE", now=NOW, **kwargs):
        counter["n"] += 1
        kwargs.setdefault("owner_type", "USER")
        kwargs.setdefault("owner_id", f"user-{counter['n']}")
        return account_service.create_account(role=role, tier=tier, now=now, **kwargs)

    return _make


@pytest.fixture
def evaluator(db_session, config, registry, alert_manager):
    from entitlement_engine.entitlements.evaluator import EntitlementEvaluator
    return EntitlementEvaluator(
        db_session,
        registry=registry,
        config=config,
        alert_manager=alert_manager,
    )


@pytest.fixture
def ledger(db_session, config, alert_manager):
    from entitlement_engine.entitlements.ledger import CreditLedger
    return CreditLedger(
        db_session,
        credit_config=config.credits,
        usage_config=config.usage,
        alert_manager=alert_manager,
    )
