"""PKCE (RFC 7636) helpers. Only the S256 method is supported."""

from __future__ import annotations

import hmac
import re
import secrets

from authlib.oauth2.rfc7636 import create_s256_code_challenge

from oauthmcp.exceptions import PkceRequiredError, UnsupportedChallengeMethodError
from oauthmcp.server.auth.models import S256

# RFC 7636 section 4.1: 43-128 characters from the unreserved set
CODE_VERIFIER_PATTERN = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


def generate_code_verifier() -> str:
    return secrets.token_urlsafe(64)[:96]


def compute_challenge(code_verifier: str) -> str:
    return create_s256_code_challenge(code_verifier)


def check_challenge(
    code_challenge: str | None, method: str | None
) -> tuple[str, str]:
    """Validate the PKCE parameters of an authorization request.

    A missing method defaults to S256. Returns the challenge and method to
    store.
    """
    if not code_challenge:
        raise PkceRequiredError()
    method = method or S256
    if method != S256:
        raise UnsupportedChallengeMethodError(
            f"Unsupported code_challenge_method {method!r}; only {S256} is accepted"
        )
    return code_challenge, method


def verify_code_verifier(code_verifier: str | None, code_challenge: str) -> bool:
    if not code_verifier or not CODE_VERIFIER_PATTERN.match(code_verifier):
        return False
    return hmac.compare_digest(compute_challenge(code_verifier), code_challenge)
