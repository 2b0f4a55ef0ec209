"""oauthmcp - An OAuth 2.1 authorization server for MCP servers."""

from importlib.metadata import version
from oauthmcp.settings import Settings

settings = Settings()

from oauthmcp.server.auth.provider import LocalOAuthProvider
from oauthmcp.server.auth.models import ClientConfig
from oauthmcp.server.auth.storage import InMemoryStorage, OAuthStorage, RedisStorage
import oauthmcp.server

__version__ = version("oauthmcp")
__all__ = [
    "LocalOAuthProvider",
    "ClientConfig",
    "InMemoryStorage",
    "OAuthStorage",
    "RedisStorage",
    "settings",
]
