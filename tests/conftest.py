"""
Shared fixtures: an in-memory database seeded with a small community.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from messaging.core import metrics
from messaging.core.config import Settings
from messaging.core.database import Base, enable_sqlite_foreign_keys
from messaging.models import message, user  # noqa: F401 - Import to register models
from messaging.models.user import UserProfile, UserRole
from messaging.services.delivery import DeliveryResolver
from messaging.services.directory import UserDirectory
from messaging.services.store import MessageStore

TEST_SECRET = "test-secret-key-12345"

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

ADMIN = 1
ADMIN_2 = 2
PAT = 10      # paid, sponsorship expiring in 3 days
SAM = 11      # paid, subscribed 2 days ago
LEE = 12      # registered badge holder, joined yesterday
GUEST = 13
BLOCKED = 14  # paid, expiring soon, but blocked


class RecordingNotifier:
    """Notifier double that remembers every dispatch."""

    def __init__(self):
        self.calls = []

    def notify(self, message, recipient_ids):
        self.calls.append((message.id, tuple(recipient_ids)))


def make_user(user_id, username, role, **fields):
    fields.setdefault("created_at", NOW - timedelta(days=100))
    return UserProfile(
        id=user_id,
        username=username,
        email=f"{username}@example.com",
        role=role,
        **fields,
    )


def get_test_settings(**overrides) -> Settings:
    """Settings for testing, isolated from any local .env file."""
    values = dict(
        webhook_secret=TEST_SECRET,
        database_url="sqlite://",
        log_level="DEBUG",
        log_format="text",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def settings() -> Settings:
    return get_test_settings()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def users(db):
    """Seed the user directory."""
    people = [
        make_user(ADMIN, "ada", UserRole.ADMIN, first_name="Ada", last_name="Admin"),
        make_user(ADMIN_2, "grace", UserRole.ADMIN, full_name="Grace Hopper"),
        make_user(
            PAT, "pat", UserRole.PAID,
            first_name="Pat",
            subscription_start_date=NOW - timedelta(days=30),
            subscription_end_date=NOW + timedelta(days=3),
        ),
        make_user(
            SAM, "sam", UserRole.PAID,
            first_name="Sam",
            subscription_start_date=NOW - timedelta(days=2),
            subscription_end_date=NOW + timedelta(days=30),
        ),
        make_user(
            LEE, "lee", UserRole.REGISTERED,
            first_name="Lee",
            has_membership_badge=True,
            membership_badge_number="B-042",
            created_at=NOW - timedelta(days=1),
        ),
        make_user(GUEST, "guest", UserRole.GUEST),
        make_user(
            BLOCKED, "mallory", UserRole.PAID,
            first_name="Mallory",
            is_blocked=True,
            subscription_end_date=NOW + timedelta(days=2),
        ),
    ]
    db.add_all(people)
    db.commit()
    return {person.id: person for person in people}


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def resolver(db, settings, users) -> DeliveryResolver:
    return DeliveryResolver(UserDirectory(db), settings, clock=lambda: NOW)


@pytest.fixture
def store(db, resolver, settings, notifier) -> MessageStore:
    return MessageStore(db, resolver, settings, notifier)
