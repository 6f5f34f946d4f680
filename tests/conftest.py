from unittest.mock import AsyncMock

import httpx
import pytest

from checkout_service.config import Settings
from checkout_service.db import create_engine, create_schema, create_session_factory
from checkout_service.events import EventPublisher
from checkout_service.main import create_app
from checkout_service.orchestrator import CheckoutOrchestrator

from .factories import Store


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}",
        store_timeout_seconds=5.0,
    )


@pytest.fixture
async def engine(settings):
    engine = create_engine(settings.database_url)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return Store(session_factory)


@pytest.fixture
def redis():
    return AsyncMock()


@pytest.fixture
def publisher(redis):
    return EventPublisher(redis)


@pytest.fixture
def orchestrator(session_factory, publisher, settings):
    return CheckoutOrchestrator(session_factory, publisher, settings.checkout_policy())


@pytest.fixture
async def client(settings, session_factory, redis):
    app = create_app(settings)
    app.state.session_factory = session_factory
    app.state.redis = redis
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
