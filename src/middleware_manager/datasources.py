"""Configured data sources and which one is active.

The configuration lives in a small JSON file that is rewritten whole on
every change:

    {
      "active_data_source": "gateway",
      "data_sources": {
        "gateway":   {"type": "gateway",   "url": "...", "basic_auth": {...}},
        "proxy-api": {"type": "proxy-api", "url": "...", "basic_auth": {...}}
      }
    }

Watchers and the generator hold a reference to one DataSourceManager and
re-read the active source at the start of every tick, so switching sources
takes effect on the next tick without a restart.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

import requests
from requests.auth import HTTPBasicAuth

from middleware_manager.models import DataSourceConfig, DataSourceType

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_NAME = "gateway"
DEFAULT_PROXY_NAME = "proxy-api"
DEFAULT_GATEWAY_URL = "http://gateway:3001/api/v1"
DEFAULT_PROXY_URL = "http://host.docker.internal:8080"

HEALTH_ENDPOINTS = {
    DataSourceType.GATEWAY: "/status",
    DataSourceType.PROXY_API: "/api/version",
}

PROBE_TIMEOUT_SECONDS = 5.0


class DataSourceNotFound(KeyError):
    """No data source is configured under the requested name."""


class ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


def _session_for(config: DataSourceConfig) -> requests.Session:
    session = requests.Session()
    if config.basic_auth:
        session.auth = HTTPBasicAuth(config.basic_auth.username, config.basic_auth.password)
    return session


class DataSourceManager:
    def __init__(
        self,
        path: str,
        *,
        gateway_url: str = DEFAULT_GATEWAY_URL,
        proxy_url: str = DEFAULT_PROXY_URL,
        active_name: str = DEFAULT_GATEWAY_NAME,
        probe_timeout: float = PROBE_TIMEOUT_SECONDS,
    ):
        self.path = Path(path)
        self._gateway_url = gateway_url.rstrip("/")
        self._proxy_url = proxy_url.rstrip("/")
        self._default_active = active_name
        self._probe_timeout = probe_timeout
        self._lock = ReadWriteLock()
        self._active = ""
        self._sources: Dict[str, DataSourceConfig] = {}
        self._load()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _defaults(self) -> Dict[str, DataSourceConfig]:
        return {
            DEFAULT_GATEWAY_NAME: DataSourceConfig(DataSourceType.GATEWAY, self._gateway_url),
            DEFAULT_PROXY_NAME: DataSourceConfig(DataSourceType.PROXY_API, self._proxy_url),
        }

    def _load(self) -> None:
        if not self.path.exists():
            self._sources = self._defaults()
            self._active = self._default_active
            logger.info(f"Creating data source config at {self.path}")
            self._save()
            return

        try:
            raw = json.loads(self.path.read_text("utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("top level must be an object")
            if not isinstance(raw.get("data_sources") or {}, dict):
                raise ValueError("data_sources must be an object")
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load data source config {self.path}: {e}; using defaults")
            self._sources = self._defaults()
            self._active = self._default_active
            return

        sources: Dict[str, DataSourceConfig] = {}
        for name, entry in (raw.get("data_sources") or {}).items():
            if not isinstance(entry, dict):
                logger.warning(f"Skipping malformed data source '{name}'")
                continue
            try:
                sources[name] = DataSourceConfig.from_dict(entry)
            except ValueError as e:
                logger.warning(f"Skipping data source '{name}': {e}")
        self._sources = sources
        self._active = str(raw.get("active_data_source") or "")

    def _save(self) -> None:
        """Rewrite the whole file. Callers hold the write lock."""
        state: Dict[str, Any] = {
            "active_data_source": self._active,
            "data_sources": {name: cfg.to_dict() for name, cfg in self._sources.items()},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(state, indent=2, sort_keys=True), "utf-8")
        tmp_path.replace(self.path)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def fallback(self) -> DataSourceConfig:
        """Used when the active name does not resolve."""
        return DataSourceConfig(DataSourceType.GATEWAY, self._gateway_url)

    def get_active(self) -> DataSourceConfig:
        with self._lock.read():
            config = self._sources.get(self._active)
            if config is None:
                raise DataSourceNotFound(self._active)
            return config

    def get_active_or_fallback(self) -> DataSourceConfig:
        try:
            return self.get_active()
        except DataSourceNotFound as e:
            logger.warning(
                f"Active data source {e} is not configured; falling back to gateway at {self._gateway_url}"
            )
            return self.fallback

    def get_active_name(self) -> str:
        with self._lock.read():
            return self._active

    def get_all(self) -> Dict[str, DataSourceConfig]:
        with self._lock.read():
            return dict(self._sources)

    # -------------------------------------------------------------------------
    # Changes
    # -------------------------------------------------------------------------

    def set_active(self, name: str) -> None:
        with self._lock.write():
            if name not in self._sources:
                raise DataSourceNotFound(name)
            if name == self._active:
                return
            previous, self._active = self._active, name
            self._save()
        logger.info(f"Active data source changed from '{previous}' to '{name}'")

    def update(self, name: str, config: DataSourceConfig) -> None:
        """Store `config` under `name`, then probe it.

        A failed probe is only logged; the config is saved regardless.
        """
        config = config.with_url(config.url.rstrip("/"))
        with self._lock.write():
            self._sources[name] = config
            self._save()
        logger.info(f"Updated data source '{name}' ({config.type.value} at {config.url})")
        if not self.test_connection(config):
            logger.warning(f"Data source '{name}' saved but not reachable at {config.url}")

    def ensure_defaults(self) -> bool:
        """Add missing default sources and repair a dangling active name.

        Returns True when the file was rewritten.
        """
        changed = False
        with self._lock.write():
            for name, config in self._defaults().items():
                if name not in self._sources:
                    self._sources[name] = config
                    changed = True
            if self._active not in self._sources:
                logger.warning(
                    f"Active data source '{self._active}' not configured; resetting to '{self._default_active}'"
                )
                self._active = (
                    self._default_active
                    if self._default_active in self._sources
                    else DEFAULT_GATEWAY_NAME
                )
                changed = True
            if changed:
                self._save()
        return changed

    # -------------------------------------------------------------------------
    # Connectivity
    # -------------------------------------------------------------------------

    def test_connection(self, config: DataSourceConfig) -> bool:
        url = config.url.rstrip("/") + HEALTH_ENDPOINTS[config.type]
        try:
            response = _session_for(config).get(url, timeout=self._probe_timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.warning(f"Connection test to {url} failed: {e}")
            return False
        logger.info(f"Connection test to {url} succeeded")
        return True

    def discover_proxy_url(self, candidates: Iterable[str]) -> Optional[str]:
        """First base URL whose proxy API answers, trying the configured one first."""
        configured = self.get_all().get(DEFAULT_PROXY_NAME)
        ordered: List[str] = []
        if configured is not None:
            ordered.append(configured.url)
        for url in candidates:
            url = url.rstrip("/")
            if url not in ordered:
                ordered.append(url)

        auth_source = configured or DataSourceConfig(DataSourceType.PROXY_API, self._proxy_url)
        for url in ordered:
            if self.test_connection(auth_source.with_url(url)):
                if configured is not None and url != configured.url:
                    logger.info(
                        f"Proxy API reachable at {url}; consider updating data source "
                        f"'{DEFAULT_PROXY_NAME}' (currently {configured.url})"
                    )
                return url
        return None
