"""
Shared pytest setup.

Coroutine tests are driven by a plain event loop created per test, so the
suite does not depend on pytest-asyncio or anyio being installed.
"""

import asyncio
import inspect

import pytest

from targetgraph.core.config import reset_config
from targetgraph.core.logging_config import set_correlation_id


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Run ``async def`` tests to completion on a fresh loop."""
    if not inspect.iscoroutinefunction(pyfuncitem.obj):
        return None

    # Autouse fixtures are in funcargs too; pass only what the test declares
    arguments = {name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames}
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(pyfuncitem.obj(**arguments))
        loop.run_until_complete(loop.shutdown_asyncgens())
    finally:
        asyncio.set_event_loop(None)
        loop.close()
    return True


@pytest.fixture(autouse=True)
def isolated_globals():
    """Each test starts without a cached global Config or run id."""
    reset_config()
    set_correlation_id(None)
    yield
    reset_config()
