import pytest
from fastapi.testclient import TestClient

from notifyhub.notifications.broker import BrokerClient
from notifyhub.resilience import reset_snapshot
from tests.fakes import FakeRedis, Registry, make_engine


@pytest.fixture(autouse=True)
def _reset_resilience():
    reset_snapshot()
    yield


@pytest.fixture
def engine():
    eng = make_engine()
    yield eng
    eng.dispose()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def broker(fake_redis):
    client = BrokerClient(exchange="notifications", client_factory=lambda: fake_redis)
    yield client
    client.close()


@pytest.fixture
def registry():
    return Registry(existing={1})


@pytest.fixture
def notification_app(engine, broker, registry):
    from notifyhub.notifications.main import create_app
    return create_app(engine=engine, broker=broker, http=registry.client(), bootstrap_attempts=1)


@pytest.fixture
def client(notification_app):
    with TestClient(notification_app) as c:
        yield c
