from collections.abc import AsyncGenerator, Callable

import pytest
from fakeredis import FakeAsyncRedis, FakeServer
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff

from oauthmcp.server.auth.storage.base import OAuthStorage
from oauthmcp.server.auth.storage.memory import InMemoryStorage
from oauthmcp.server.auth.storage.redis import RedisStorage
from oauthmcp.settings import RedisSettings


def fake_client_factory(server: FakeServer) -> Callable[[], FakeAsyncRedis]:
    def factory() -> FakeAsyncRedis:
        client = FakeAsyncRedis(server=server, decode_responses=True)
        # Only the storage backend may retry, so backoff timing stays observable
        client.connection_pool.connection_kwargs["retry"] = Retry(NoBackoff(), 0)
        return client

    return factory


def make_redis_storage(server: FakeServer, **settings) -> RedisStorage:
    settings.setdefault("retry_delay", 0.01)
    settings.setdefault("max_retry_delay", 0.05)
    settings.setdefault("connection_timeout", 1.0)
    return RedisStorage(
        RedisSettings(**settings), connection_factory=fake_client_factory(server)
    )


@pytest.fixture
def fake_server() -> FakeServer:
    return FakeServer()


@pytest.fixture
async def redis_storage(fake_server) -> AsyncGenerator[RedisStorage, None]:
    storage = make_redis_storage(fake_server)
    await storage.connect()
    yield storage
    await storage.disconnect()


@pytest.fixture(params=["memory", "redis"])
async def backend(request, fake_server) -> AsyncGenerator[OAuthStorage, None]:
    storage: OAuthStorage
    if request.param == "memory":
        storage = InMemoryStorage()
    else:
        storage = make_redis_storage(fake_server)
    await storage.connect()
    yield storage
    await storage.disconnect()


@pytest.fixture
def make_storage(fake_server) -> Callable[..., RedisStorage]:
    """Factory for Redis storages on the shared fake server."""

    def factory(**settings) -> RedisStorage:
        return make_redis_storage(fake_server, **settings)

    return factory
