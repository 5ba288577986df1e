"""Shared fixtures."""

from pathlib import Path
from typing import Callable, List, Optional
from unittest.mock import patch

import pytest

from middleware_manager.datasources import DataSourceManager
from middleware_manager.fetchers import Deadline, FetchError, Fetcher
from middleware_manager.models import DataSourceConfig, Resource, Service
from middleware_manager.store import Store


class FakeFetcher(Fetcher):
    """Fetcher returning whatever the test queued."""

    def __init__(self, config: DataSourceConfig, request_timeout: float = 10.0):
        super().__init__(config, request_timeout)
        self.resources: List[Resource] = []
        self.services: List[Service] = []
        self.error: Optional[FetchError] = None

    @property
    def name(self) -> str:
        return "fake"

    def fetch_resources(self, deadline: Optional[Deadline] = None) -> List[Resource]:
        if self.error:
            raise self.error
        return list(self.resources)

    def fetch_services(self, deadline: Optional[Deadline] = None) -> List[Service]:
        if self.error:
            raise self.error
        return list(self.services)


@pytest.fixture
def store(tmp_path: Path):
    """Store backed by a throwaway SQLite file."""
    db = Store(f"sqlite:///{tmp_path / 'middleware.db'}")
    yield db
    db.close()


@pytest.fixture
def datasources(tmp_path: Path) -> DataSourceManager:
    """Manager with the two default sources, gateway active."""
    return DataSourceManager(
        str(tmp_path / "config.json"),
        gateway_url="http://gateway:3001/api/v1",
        proxy_url="http://traefik:8080",
    )


@pytest.fixture
def no_probe():
    """Keep DataSourceManager.update from probing the network."""
    with patch.object(DataSourceManager, "test_connection", return_value=True) as probe:
        yield probe


@pytest.fixture
def fetchers() -> List[FakeFetcher]:
    """Every FakeFetcher built by `fetcher_factory`, oldest first."""
    return []


@pytest.fixture
def fetcher_factory(fetchers: List[FakeFetcher]) -> Callable[[DataSourceConfig, float], FakeFetcher]:
    def factory(config: DataSourceConfig, timeout: float) -> FakeFetcher:
        fetcher = FakeFetcher(config, timeout)
        fetchers.append(fetcher)
        return fetcher

    return factory
