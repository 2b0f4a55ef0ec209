import pytest

from oauthmcp.server.auth.scopes import has_permission, map_scopes_to_permissions


def test_known_scopes():
    assert map_scopes_to_permissions(["read", "tools:execute"]) == {
        "read:*",
        "tools:*",
    }


def test_unknown_scopes_pass_through():
    assert map_scopes_to_permissions(["custom", "tools:search"]) == {
        "custom",
        "tools:search",
    }


def test_no_scopes():
    assert map_scopes_to_permissions([]) == set()


@pytest.mark.parametrize(
    "permissions, required, expected",
    [
        ({"*"}, "tools:anything", True),
        ({"tools:*"}, "tools:search", True),
        ({"tools:*"}, "resources:file://x", False),
        ({"tools:search"}, "tools:search", True),
        ({"tools:search"}, "tools:searcher", False),
        ({"tools:*"}, "toolsearch", False),
        (set(), "tools:search", False),
    ],
)
def test_has_permission(permissions, required, expected):
    assert has_permission(permissions, required) is expected


def test_admin_grants_everything():
    permissions = map_scopes_to_permissions(["admin"])
    assert has_permission(permissions, "prompts:summary")
    assert has_permission(permissions, "resources:file://docs/readme")
