from __future__ import annotations

import copy
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

import oauthmcp


@contextmanager
def temporary_settings(**kwargs: Any) -> Generator[None, None, None]:
    """
    Temporarily override oauthmcp setting values.

    Nested settings are addressed with a double underscore, the same way
    environment variables address them.

    Args:
        **kwargs: The settings to override, including nested settings.

    Example:
        ```python
        import oauthmcp
        from oauthmcp.utilities.tests import temporary_settings

        with temporary_settings(access_token_expiry=60, redis__retry_attempts=1):
            assert oauthmcp.settings.access_token_expiry == 60
            assert oauthmcp.settings.redis.retry_attempts == 1
        ```
    """
    old_settings = copy.deepcopy(oauthmcp.settings)
    targets: list[tuple[Any, str, Any]] = []

    for name in kwargs:
        *parents, attr = name.split("__")
        target: Any = oauthmcp.settings
        original: Any = old_settings
        for parent in parents:
            target = getattr(target, parent)
            original = getattr(original, parent)
        if not hasattr(target, attr):
            raise AttributeError(f"Setting {name} does not exist.")
        targets.append((target, attr, getattr(original, attr)))

    try:
        for (target, attr, _), value in zip(targets, kwargs.values()):
            setattr(target, attr, value)
        yield
    finally:
        for target, attr, original_value in targets:
            setattr(target, attr, original_value)
