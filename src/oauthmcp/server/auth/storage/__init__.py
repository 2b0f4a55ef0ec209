from .base import ComponentHealth, HealthCheckResult, OAuthStorage, StorageStats
from .memory import InMemoryStorage
from .redis import RedisStorage

__all__ = [
    "ComponentHealth",
    "HealthCheckResult",
    "InMemoryStorage",
    "OAuthStorage",
    "RedisStorage",
    "StorageStats",
]
