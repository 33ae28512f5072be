"""
Global pytest configuration for genqueue tests.

IMPORTANT: Keeps tests off real Redis and real generation backends.
"""

import pytest
import os
from unittest.mock import patch


@pytest.fixture(autouse=True)
def force_local_store(monkeypatch):
    """
    Force the in-memory store for every test.

    Any configuration loaded from the environment during a test resolves
    to the local store, so nothing ever connects to a real Redis server.
    """
    monkeypatch.setenv('GENQUEUE_LOCAL_ONLY', 'true')
    yield


@pytest.fixture(autouse=True)
def prevent_real_backend_calls():
    """
    Fail loudly if a test reaches the real HTTP client for a backend.

    Tests exercise the queue with fake execution clients; a real aiohttp
    request would hang on a nonexistent GPU server.
    """
    with patch('aiohttp.ClientSession._request', side_effect=AssertionError("real HTTP request in test")) as mock_request:
        yield mock_request


# Ensure tests run in test mode
@pytest.fixture(autouse=True)
def test_environment_marker():
    """
    Set environment marker to indicate we're in test mode.
    """
    os.environ['GENQUEUE_TEST_MODE'] = 'true'
    yield
    if 'GENQUEUE_TEST_MODE' in os.environ:
        del os.environ['GENQUEUE_TEST_MODE']
