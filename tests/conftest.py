"""
Pytest configuration for fastapi_ws_pledge tests.

Registers the markers used by the tests that start a real uvicorn server, so
they can be deselected with ``-m "not integration"``. Fakes are defined in
each test module next to the tests using them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import pytest


def pytest_configure(config: pytest.Config) -> None:
    """
    Register custom pytest markers.
    """
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow (tests starting a server process)",
    )
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (runs uvicorn on a local port)",
    )
