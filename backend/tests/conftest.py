"""
Pytest configuration and fixtures for backend tests.

Provides shared fixtures for:
- Test database sessions
- Service instances
- Sample data factories (intents, subscriptions)
- A fake push gateway
- Access tokens and an authenticated FastAPI test client
"""

import os
import time

import pytest
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

TEST_JWT_SECRET = "test-jwt-secret-for-servicebell-0123456789"
TEST_CRON_SECRET = "test-cron-secret"

# Set test environment variables before importing app modules
os.environ['SERVICEBELL_DB_URL'] = 'sqlite:///:memory:'
os.environ['JWT_SECRET_KEY'] = TEST_JWT_SECRET
os.environ['SERVICEBELL_CRON_SECRET'] = TEST_CRON_SECRET
os.environ['SERVICEBELL_DISPATCH_ENABLED'] = 'false'
for _var in ('VAPID_PUBLIC_KEY', 'VAPID_PRIVATE_KEY'):
    os.environ.pop(_var, None)

from backend.src.models import (  # noqa: E402
    Base,
    IntentChannel,
    IntentPriority,
    IntentStatus,
    NotificationIntent,
    PushSubscription,
)
from backend.src.services.outbox_service import OutboxService  # noqa: E402
from backend.src.services.push_subscription_service import PushSubscriptionService  # noqa: E402


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope='function')
def test_db_engine():
    """Create an in-memory SQLite database engine for testing."""
    from sqlalchemy import event

    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    # Acknowledgements cascade with their intent
    def _fk_pragma_on_connect(dbapi_con, con_record):
        dbapi_con.execute('pragma foreign_keys=ON')

    event.listen(engine, 'connect', _fk_pragma_on_connect)

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope='function')
def test_db_session(test_db_engine):
    """Create a test database session."""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ============================================================================
# Service Fixtures
# ============================================================================

@pytest.fixture
def outbox(test_db_session):
    """OutboxService with a retry budget of 3."""
    return OutboxService(db=test_db_session, max_attempts=3)


@pytest.fixture
def registry(test_db_session):
    """PushSubscriptionService instance."""
    return PushSubscriptionService(db=test_db_session)


class FakePushGateway:
    """
    Push gateway double.

    ``outcomes`` maps an endpoint to the exception its send raises; any
    other endpoint accepts the message.
    """

    def __init__(self, outcomes=None):
        self.outcomes = outcomes or {}
        self.sent = []

    def send(self, subscription, message, urgency="normal", topic=None):
        self.sent.append(
            {"endpoint": subscription.endpoint, "message": message, "urgency": urgency}
        )
        outcome = self.outcomes.get(subscription.endpoint)
        if outcome is not None:
            raise outcome


@pytest.fixture
def fake_gateway():
    return FakePushGateway()


# ============================================================================
# Sample Data Factories
# ============================================================================

@pytest.fixture
def sample_intent(test_db_session):
    """Factory for creating NotificationIntent rows directly."""
    def _create(
        recipient_id='staff_1',
        tenant_id='rest_1',
        title='New Order',
        body='Order #12 placed',
        payload=None,
        channel=IntentChannel.PUSH,
        priority=IntentPriority.NORMAL,
        status=IntentStatus.QUEUED,
        attempts=0,
        max_attempts=3,
        **kwargs
    ):
        intent = NotificationIntent(
            recipient_id=recipient_id,
            tenant_id=tenant_id,
            title=title,
            body=body,
            payload=payload if payload is not None else {'order_id': 12},
            channel=channel,
            priority=priority,
            status=status,
            attempts=attempts,
            max_attempts=max_attempts,
            **kwargs
        )
        test_db_session.add(intent)
        test_db_session.commit()
        test_db_session.refresh(intent)
        return intent
    return _create


@pytest.fixture
def sample_subscription(registry):
    """Factory for registering push subscriptions through the registry."""
    counter = {'n': 0}

    def _create(recipient_id='staff_1', tenant_id='rest_1', endpoint=None, **kwargs):
        counter['n'] += 1
        endpoint = endpoint or f"https://push.example.com/send/{recipient_id}-{counter['n']}"
        return registry.upsert(
            endpoint=endpoint,
            recipient_id=recipient_id,
            tenant_id=tenant_id,
            p256dh_key=kwargs.pop('p256dh_key', 'BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA_0'),
            auth_key=kwargs.pop('auth_key', 'tBHItJI5svbpC7htUH8g'),
            **kwargs
        )
    return _create


# ============================================================================
# Auth Fixtures
# ============================================================================

def make_token(user_id='staff_1', tenant_id='rest_1', secret=TEST_JWT_SECRET, expires_in=3600):
    """Issue an HS256 access token the way the auth service does."""
    claims = {'sub': user_id, 'exp': int(time.time()) + expires_in}
    if tenant_id is not None:
        claims['tenant_id'] = tenant_id
    return jwt.encode(claims, secret, algorithm='HS256')


@pytest.fixture
def access_token():
    """The token factory itself, for query-string and negative cases."""
    return make_token


@pytest.fixture
def auth_headers():
    """Factory for Authorization headers."""
    def _headers(user_id='staff_1', tenant_id='rest_1'):
        return {'Authorization': f'Bearer {make_token(user_id, tenant_id)}'}
    return _headers


@pytest.fixture
def cron_headers():
    return {'Authorization': f'Bearer {TEST_CRON_SECRET}'}


# ============================================================================
# API Client Fixtures
# ============================================================================

@pytest.fixture(scope='function')
def test_client(test_db_session):
    """Create a test client for the FastAPI application."""
    from fastapi.testclient import TestClient
    from backend.src.main import app
    from backend.src.db.database import get_db
    from backend.src.utils.rate_limit import limiter

    def get_test_db():
        try:
            yield test_db_session
        finally:
            pass

    app.dependency_overrides[get_db] = get_test_db
    limiter.reset()

    with TestClient(app) as client:
        yield client

    # Clear overrides
    app.dependency_overrides.clear()
