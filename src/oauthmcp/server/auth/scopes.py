"""Mapping from OAuth scopes to internal permission patterns."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Final

WILDCARD: Final = "*"

SCOPE_PERMISSIONS: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        "read": ("read:*",),
        "write": ("write:*",),
        "tools:execute": ("tools:*",),
        "resources:read": ("resources:*",),
        "prompts:read": ("prompts:*",),
        "admin": (WILDCARD,),
    }
)


def map_scopes_to_permissions(scopes: Iterable[str]) -> set[str]:
    """Translate granted scopes into permission patterns.

    Scopes missing from `SCOPE_PERMISSIONS` are carried through unchanged.
    """
    permissions: set[str] = set()
    for scope in scopes:
        permissions.update(SCOPE_PERMISSIONS.get(scope, (scope,)))
    return permissions


def has_permission(permissions: Iterable[str], required: str) -> bool:
    """Check `required` against permission patterns.

    A pattern matches if it is `*`, equal to `required`, or a namespace
    wildcard such as `tools:*` whose prefix `required` starts with.
    """
    for pattern in permissions:
        if pattern == WILDCARD or pattern == required:
            return True
        if pattern.endswith(":*") and required.startswith(pattern[:-1]):
            return True
    return False
