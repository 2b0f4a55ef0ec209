from collections.abc import AsyncGenerator

import pytest
from passlib.context import CryptContext

from oauthmcp.server.auth.audit import AuditLogger
from oauthmcp.server.auth.clients import ClientRegistry
from oauthmcp.server.auth.codes import AuthorizationCodeIssuer
from oauthmcp.server.auth.models import ClientConfig
from oauthmcp.server.auth.pkce import compute_challenge, generate_code_verifier
from oauthmcp.server.auth.provider import LocalOAuthProvider
from oauthmcp.server.auth.storage.memory import InMemoryStorage
from oauthmcp.server.auth.tokens import TokenService

# Cheap argon2 parameters so hashing does not dominate the test run
FAST_SECRET_CONTEXT = CryptContext(
    schemes=["argon2"],
    argon2__rounds=1,
    argon2__memory_cost=1024,
    argon2__parallelism=1,
)

PUBLIC_CLIENT = ClientConfig(
    client_id="c1",
    redirect_uris=["https://a/cb"],
    scopes=["read", "write"],
)

CONFIDENTIAL_CLIENT = ClientConfig(
    client_id="svc",
    client_secret="svc-secret",
    redirect_uris=["https://svc.example.com/callback"],
    scopes=["read", "tools:execute"],
)


def pkce_pair() -> tuple[str, str]:
    """Return a (code_verifier, code_challenge) pair."""
    verifier = generate_code_verifier()
    return verifier, compute_challenge(verifier)


@pytest.fixture
def secret_context() -> CryptContext:
    return FAST_SECRET_CONTEXT


@pytest.fixture
def audit() -> AuditLogger:
    return AuditLogger(enabled=False)


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
async def registry(storage, audit, secret_context) -> ClientRegistry:
    registry = ClientRegistry(storage, audit, context=secret_context)
    await registry.register(PUBLIC_CLIENT)
    await registry.register(CONFIDENTIAL_CLIENT)
    return registry


@pytest.fixture
def issuer(storage, registry, audit) -> AuthorizationCodeIssuer:
    return AuthorizationCodeIssuer(storage, registry, audit, code_expiry=600)


@pytest.fixture
def token_service(storage, registry, audit) -> TokenService:
    return TokenService(
        storage,
        registry,
        audit,
        access_token_expiry=3600,
        refresh_token_expiry=86400,
        rotate_refresh_tokens=True,
        revoke_family_on_reuse=True,
    )


@pytest.fixture
async def provider(secret_context, audit) -> AsyncGenerator[LocalOAuthProvider, None]:
    provider = LocalOAuthProvider(
        clients=[PUBLIC_CLIENT, CONFIDENTIAL_CLIENT],
        issuer_url="https://auth.example.com",
        audit=audit,
        secret_context=secret_context,
    )
    async with provider:
        yield provider


@pytest.fixture
def pkce() -> tuple[str, str]:
    return pkce_pair()
