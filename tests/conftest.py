"""Pytest configuration shared across the suite."""

try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import pytest

from kabalot import dependencies


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO-powered tests to run against asyncio backend only."""
    return "asyncio"


@pytest.fixture(autouse=True)
def _fresh_dependency_singletons():
    """Drop process-wide factories so one test's settings never leak into the next."""
    yield
    for name in dependencies.__all__:
        factory = getattr(dependencies, name)
        cache_clear = getattr(factory, "cache_clear", None)
        if cache_clear is not None:
            cache_clear()
