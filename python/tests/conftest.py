"""
Shared fixtures: in-memory SQLite database, fixed clock, actors and a
fully wired service graph with a mocked notifier.
"""

from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from evisit.actors import Actor
from evisit.config_manager import ConfigManager
from evisit.database.connection import create_test_provider
from evisit.database.lifecycle_service import ApplicationInput
from evisit.database.models import Base, UserRole
from evisit.notifications import NotificationDispatcher
from evisit.security_logger import SecurityLogger, set_security_logger
from evisit.services import build_services

CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"


class FixedClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def security_logger():
    """Security events go to a handler-less logger during tests."""
    logger = SecurityLogger(enable_file=False)
    set_security_logger(logger)
    yield logger
    set_security_logger(None)


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 3, 10, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def config():
    return ConfigManager(config_path=str(CONFIG_PATH), load_env=False)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    return create_test_provider(engine=engine)


@pytest.fixture
def notifier():
    return MagicMock(spec=NotificationDispatcher)


@pytest.fixture
def services(db, config, clock, notifier, security_logger):
    return build_services(config, db, clock=clock, notifier=notifier, security_logger=security_logger)


# ============================================
# ACTORS
# ============================================

@pytest.fixture
def officer():
    return Actor(id="officer-1", role=UserRole.OFFICER, name="Officer One")


@pytest.fixture
def supervisor():
    return Actor(id="supervisor-1", role=UserRole.SUPERVISOR)


@pytest.fixture
def director():
    return Actor(id="director-1", role=UserRole.DIRECTOR)


@pytest.fixture
def checkpoint_officer():
    return Actor(id="cp-officer-1", role=UserRole.CHECKPOINT_OFFICER)


def applicant_for(national_id: str) -> Actor:
    return Actor(id=f"applicant:{national_id}", role=UserRole.APPLICANT)


# ============================================
# APPLICATION HELPERS
# ============================================

@pytest.fixture
def make_input(clock):
    """Factory for valid ApplicationInput values starting tomorrow."""
    def factory(**overrides) -> ApplicationInput:
        today = clock().date()
        values = {
            "national_id": "19900101001",
            "full_name": "Ahmad Hassan",
            "phone_number": "+9647501234567",
            "email": "ahmad@example.com",
            "date_of_birth": date(1990, 1, 1),
            "origin_governorate": "Baghdad",
            "destination_governorate": "Erbil",
            "visit_purpose": "TOURISM",
            "visit_start_date": today,
            "visit_end_date": today + timedelta(days=30),
        }
        values.update(overrides)
        return ApplicationInput(**values)
    return factory


@pytest.fixture
def submit(services, make_input):
    """Submit an application and return it."""
    def factory(**overrides):
        data = make_input(**overrides)
        return services.lifecycle.submit(data, applicant_for(data.national_id)).unwrap()
    return factory


@pytest.fixture
def under_review(services, submit, officer, supervisor):
    """Submit, assign to officer-1 and start review."""
    def factory(**overrides):
        application = submit(**overrides)
        services.lifecycle.assign(application.id, officer.id, supervisor).unwrap()
        return services.lifecycle.review(application.id, officer, notes="ok").unwrap()
    return factory


@pytest.fixture
def approved(services, under_review, director):
    """Walk an application to APPROVED; returns the PermitDecision."""
    def factory(valid_from=None, valid_until=None, **overrides):
        application = under_review(**overrides)
        return services.lifecycle.approve(
            application.id, director, valid_from=valid_from, valid_until=valid_until
        ).unwrap()
    return factory
