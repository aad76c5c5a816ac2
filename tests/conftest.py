"""Shared pytest fixtures for all tests."""

import pytest

from common.config import Config
from downloader.cache import CacheService
from drivers.memory import InMemoryLedgerDriver
from uploader.progress import ProgressStore


@pytest.fixture
def temp_config_dir(tmp_path):
    """
    Create temporary config directory.

    Returns:
        Path to temporary .cartstore directory
    """
    config_dir = tmp_path / '.cartstore'
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def temp_config(temp_config_dir):
    """Config instance backed by a temp file."""
    return Config(temp_config_dir / 'config.json')


@pytest.fixture
def ledger():
    """Empty in-memory ledger with an authorized writer."""
    return InMemoryLedgerDriver()


@pytest.fixture
def progress_store(tmp_path):
    return ProgressStore(tmp_path / 'progress')


@pytest.fixture
def cache(tmp_path):
    """
    Open cache service, closed after the test.

    Yields:
        CacheService with a 1 MiB budget
    """
    service = CacheService(tmp_path / 'cache.db', max_bytes=1024 * 1024)
    service.open()
    yield service
    service.close()


@pytest.fixture
def sample_data():
    """1020 bytes: exactly 20 chunks of 51 bytes."""
    return bytes((i * 7) % 256 for i in range(20 * 51))
