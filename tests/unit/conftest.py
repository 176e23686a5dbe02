"""Unit test fixtures (mocks and stubs).

Provides mock objects for testing without external dependencies.
"""

import pytest
from unittest.mock import AsyncMock


@pytest.fixture
def mock_async_redis():
    """Mock AsyncRedis client: every SET NX succeeds, every release matches."""
    mock = AsyncMock()
    mock.set = AsyncMock(return_value=True)
    mock.get = AsyncMock(return_value=None)
    mock.eval = AsyncMock(return_value=1)
    mock.delete = AsyncMock(return_value=1)
    return mock
