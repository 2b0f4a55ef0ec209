from .auth import OAuthProvider, TokenVerifier
from .provider import LocalOAuthProvider


__all__ = [
    "OAuthProvider",
    "TokenVerifier",
    "LocalOAuthProvider",
]
