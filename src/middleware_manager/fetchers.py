"""Upstream fetchers: one interface, one implementation per data source type.

Both implementations map upstream data into the same Resource/Service shapes
so the watchers never branch on where the data came from.
"""

from __future__ import annotations

import copy
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import requests
from requests.auth import HTTPBasicAuth

from middleware_manager.identifiers import FILE_PROVIDER, extract_host_from_rule
from middleware_manager.models import DataSourceConfig, DataSourceType, Resource, Service, ServiceType
from middleware_manager.protocols import mark_udp_servers

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_REQUEST_TIMEOUT = 10.0

FALLBACK_PROXY_URLS = (
    "http://host.docker.internal:8080",
    "http://localhost:8080",
    "http://127.0.0.1:8080",
    "http://traefik:8080",
)

GATEWAY_SYSTEM_ROUTERS = ("api-router", "next-router", "ws-router")
GATEWAY_SYSTEM_SERVICES = ("api-service", "next-service", "noop")
PROXY_SYSTEM_SERVICES = (
    "api@internal",
    "dashboard@internal",
    "noop@internal",
    "acme-http@internal",
)

# Checked in this order; the first populated one decides the service type.
SERVICE_KINDS = (
    ServiceType.LOAD_BALANCER.value,
    ServiceType.WEIGHTED.value,
    ServiceType.MIRRORING.value,
    ServiceType.FAILOVER.value,
)


class FetchError(Exception):
    """A fetch failed; the caller retries on its next tick.

    `connection_failed` is set when the server could not be reached at all,
    as opposed to answering with an error or an unreadable body.
    """

    def __init__(self, message: str, *, connection_failed: bool = False):
        super().__init__(message)
        self.connection_failed = connection_failed


class Deadline:
    """Time budget shared by every request of one fetch."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self._expires = time.monotonic() + seconds

    def remaining(self) -> float:
        return self._expires - time.monotonic()

    def timeout(self, cap: float) -> float:
        remaining = self.remaining()
        if remaining <= 0:
            raise FetchError(f"Fetch deadline of {self.seconds}s exceeded")
        return min(cap, remaining)


# =============================================================================
# Helpers
# =============================================================================


def _contains_any(name: str, markers: Tuple[str, ...]) -> bool:
    return any(marker in name for marker in markers)


def _cert_resolver(router: Dict[str, Any]) -> str:
    tls = router.get("tls")
    if not isinstance(tls, dict):
        return ""
    return str(tls.get("certResolver") or "")


def _join_entrypoints(router: Dict[str, Any]) -> str:
    entrypoints = router.get("entryPoints") or []
    if not isinstance(entrypoints, list):
        return ""
    return ",".join(str(e).strip() for e in entrypoints if str(e).strip())


def _join_tls_domains(router: Dict[str, Any]) -> str:
    """Flatten tls.domains into "main,san1,san2", keeping first occurrences."""
    tls = router.get("tls")
    domains = tls.get("domains") if isinstance(tls, dict) else None
    if not isinstance(domains, list):
        return ""
    names: List[str] = []
    for domain in domains:
        if not isinstance(domain, dict):
            continue
        candidates = [domain.get("main")] + list(domain.get("sans") or [])
        for candidate in candidates:
            if isinstance(candidate, str) and candidate.strip() and candidate.strip() not in names:
                names.append(candidate.strip())
    return ",".join(names)


def _section(document: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = document.get(name) or {}
    if not isinstance(section, dict):
        raise FetchError(f"Gateway {name} section is not an object")
    return section


def _service_kind(entry: Dict[str, Any]) -> Optional[str]:
    for kind in SERVICE_KINDS:
        if isinstance(entry.get(kind), dict):
            return kind
    return None


def _named_items(data: Any, what: str) -> List[Tuple[str, Dict[str, Any]]]:
    """Accept either [{"name": ..., ...}] or {name: {...}} bodies."""
    items: List[Tuple[str, Dict[str, Any]]] = []
    if isinstance(data, list):
        for entry in data:
            if not isinstance(entry, dict):
                logger.debug(f"Skipping non-object {what} entry: {entry!r}")
                continue
            items.append((str(entry.get("name") or ""), entry))
    elif isinstance(data, dict):
        for name, entry in data.items():
            if not isinstance(entry, dict):
                logger.debug(f"Skipping non-object {what} entry: {name}")
                continue
            items.append((str(entry.get("name") or name), entry))
    else:
        raise FetchError(f"Unexpected {what} payload: {type(data).__name__}")
    return items


# =============================================================================
# Fetcher Interface
# =============================================================================


class Fetcher(ABC):
    """Reads the current resources and services from one upstream."""

    def __init__(self, config: DataSourceConfig, request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self.config = config
        self._request_timeout = request_timeout
        self._session = requests.Session()
        if config.basic_auth:
            self._session.auth = HTTPBasicAuth(
                config.basic_auth.username, config.basic_auth.password
            )

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the fetcher name for logging."""
        pass

    @abstractmethod
    def fetch_resources(self, deadline: Optional[Deadline] = None) -> List[Resource]:
        """Return every routable resource the upstream reports.

        Raises:
            FetchError: when the upstream could not be read. An empty list
                means the upstream really reports nothing routable.
        """
        pass

    @abstractmethod
    def fetch_services(self, deadline: Optional[Deadline] = None) -> List[Service]:
        """Return every non-system service the upstream reports."""
        pass

    def _get(self, url: str, deadline: Optional[Deadline]) -> requests.Response:
        timeout = deadline.timeout(self._request_timeout) if deadline else self._request_timeout
        try:
            return self._session.get(url, timeout=timeout)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise FetchError(f"Cannot reach {url}: {e}", connection_failed=True) from e
        except requests.exceptions.RequestException as e:
            raise FetchError(f"Request to {url} failed: {e}") from e

    def _get_json(self, url: str, deadline: Optional[Deadline]) -> Any:
        return self._decode(url, self._get(url, deadline))

    @staticmethod
    def _decode(url: str, response: requests.Response) -> Any:
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise FetchError(f"Unexpected response from {url}: {e}") from e
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(f"Invalid JSON from {url}: {e}") from e


# =============================================================================
# Gateway
# =============================================================================


class GatewayFetcher(Fetcher):
    """Reads the proxy configuration document the gateway publishes."""

    CONFIG_ENDPOINT = "/traefik-config"

    @property
    def name(self) -> str:
        return "gateway"

    def _fetch_document(self, deadline: Optional[Deadline]) -> Dict[str, Any]:
        url = self.config.url.rstrip("/") + self.CONFIG_ENDPOINT
        document = self._get_json(url, deadline)
        if not isinstance(document, dict):
            raise FetchError(f"Unexpected gateway payload from {url}: {type(document).__name__}")
        return document

    def fetch_resources(self, deadline: Optional[Deadline] = None) -> List[Resource]:
        document = self._fetch_document(deadline)
        routers = _section(document, "http").get("routers") or {}
        if not isinstance(routers, dict):
            raise FetchError("Gateway http.routers is not an object")

        found: List[Resource] = []
        for router_id, router in sorted(routers.items()):
            if not isinstance(router, dict):
                logger.warning(f"Skipping malformed gateway router: {router_id}")
                continue
            if _contains_any(router_id, GATEWAY_SYSTEM_ROUTERS):
                continue
            if not _cert_resolver(router):
                logger.debug(f"Skipping gateway router without TLS: {router_id}")
                continue
            host = extract_host_from_rule(str(router.get("rule") or ""))
            if not host:
                logger.debug(f"Skipping gateway router without Host rule: {router_id}")
                continue
            found.append(
                Resource(
                    id=router_id,
                    host=host,
                    service_id=str(router.get("service") or ""),
                    source_type=DataSourceType.GATEWAY.value,
                    entrypoints=_join_entrypoints(router),
                    tls_domains=_join_tls_domains(router),
                )
            )
        logger.info(f"Fetched {len(found)} resources from gateway")
        return found

    def fetch_services(self, deadline: Optional[Deadline] = None) -> List[Service]:
        document = self._fetch_document(deadline)
        found: List[Service] = []
        for section in ("http", "tcp", "udp"):
            entries = _section(document, section).get("services") or {}
            if not isinstance(entries, dict):
                logger.warning(f"Gateway {section}.services is not an object, skipping")
                continue
            for service_id, entry in sorted(entries.items()):
                if not isinstance(entry, dict) or _contains_any(service_id, GATEWAY_SYSTEM_SERVICES):
                    continue
                kind = _service_kind(entry)
                if kind is None:
                    logger.warning(f"Skipping gateway service with no known type: {service_id}")
                    continue
                config = copy.deepcopy(entry[kind])
                if section == "udp":
                    config = mark_udp_servers(config)
                found.append(
                    Service(
                        id=service_id,
                        name="",
                        type=kind,
                        config=config,
                        source_type=DataSourceType.GATEWAY.value,
                    )
                )
        logger.info(f"Fetched {len(found)} services from gateway")
        return found


# =============================================================================
# Proxy Runtime API
# =============================================================================


class ProxyAPIFetcher(Fetcher):
    """Reads routers and services from the proxy's runtime API."""

    def __init__(
        self,
        config: DataSourceConfig,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        fallback_urls: Tuple[str, ...] = FALLBACK_PROXY_URLS,
    ):
        super().__init__(config, request_timeout)
        base = config.url.rstrip("/")
        self._fallback_urls = tuple(u.rstrip("/") for u in fallback_urls if u.rstrip("/") != base)

    @property
    def name(self) -> str:
        return "proxy-api"

    def _with_fallbacks(self, what: str, fetch: Callable[[str], T]) -> T:
        """Run `fetch` against the configured URL, then each fallback in turn.

        Fallbacks are only tried when the previous URL could not be reached.
        """
        primary = self.config.url.rstrip("/")
        try:
            return fetch(primary)
        except FetchError as e:
            if not e.connection_failed:
                raise
            logger.warning(f"Proxy API at {primary} unreachable while fetching {what}: {e}")
            last_error = e

        for url in self._fallback_urls:
            logger.info(f"Trying fallback proxy API URL for {what}: {url}")
            try:
                result = fetch(url)
            except FetchError as e:
                logger.debug(f"Fallback URL {url} failed: {e}")
                last_error = e
                if not e.connection_failed:
                    break
                continue
            logger.info(
                f"Proxy API answered at {url}; consider updating the data source URL "
                f"(currently {primary})"
            )
            return result

        raise FetchError(f"All proxy API URLs failed while fetching {what}; last error: {last_error}")

    def _collection(
        self, url: str, what: str, deadline: Optional[Deadline], missing_ok: bool = False
    ) -> List[Tuple[str, Dict[str, Any]]]:
        response = self._get(url, deadline)
        if missing_ok and response.status_code == 404:
            logger.debug(f"{url} not available, treating as empty")
            return []
        return _named_items(self._decode(url, response), what)

    def fetch_resources(self, deadline: Optional[Deadline] = None) -> List[Resource]:
        return self._with_fallbacks("resources", lambda base: self._fetch_resources_from(base, deadline))

    def _fetch_resources_from(self, base: str, deadline: Optional[Deadline]) -> List[Resource]:
        routers = self._collection(f"{base}/api/http/routers", "router", deadline)
        found: List[Resource] = []
        for name, router in routers:
            if not name or router.get("provider") == "internal":
                continue
            # File-provider routers are the ones we publish ourselves.
            if router.get("provider") == "file" or name.endswith(FILE_PROVIDER):
                logger.debug(f"Skipping generated proxy router: {name}")
                continue
            if not _cert_resolver(router):
                logger.debug(f"Skipping proxy router without TLS: {name}")
                continue
            host = extract_host_from_rule(str(router.get("rule") or ""))
            if not host:
                logger.debug(f"Skipping proxy router without Host rule: {name}")
                continue
            priority = router.get("priority")
            found.append(
                Resource(
                    id=name,
                    host=host,
                    service_id=str(router.get("service") or ""),
                    source_type=DataSourceType.PROXY_API.value,
                    entrypoints=_join_entrypoints(router),
                    tls_domains=_join_tls_domains(router),
                    router_priority=priority if isinstance(priority, int) and priority > 0 else 100,
                )
            )
        logger.info(f"Fetched {len(found)} resources from proxy API at {base}")
        return found

    def fetch_services(self, deadline: Optional[Deadline] = None) -> List[Service]:
        return self._with_fallbacks("services", lambda base: self._fetch_services_from(base, deadline))

    def _fetch_services_from(self, base: str, deadline: Optional[Deadline]) -> List[Service]:
        http_services = self._services(
            self._collection(f"{base}/api/http/services", "service", deadline), udp=False
        )

        tcp_services: List[Service] = []
        try:
            tcp_services = self._services(
                self._collection(f"{base}/api/tcp/services", "tcp service", deadline), udp=False
            )
        except FetchError as e:
            logger.warning(f"Failed to fetch TCP services: {e}")

        udp_services: List[Service] = []
        try:
            udp_services = self._services(
                self._collection(f"{base}/api/udp/services", "udp service", deadline, missing_ok=True),
                udp=True,
            )
        except FetchError as e:
            logger.warning(f"Failed to fetch UDP services: {e}")

        logger.info(
            f"Fetched {len(http_services) + len(tcp_services) + len(udp_services)} services "
            f"from proxy API ({len(http_services)} HTTP, {len(tcp_services)} TCP, {len(udp_services)} UDP)"
        )
        return http_services + tcp_services + udp_services

    def _services(self, items: List[Tuple[str, Dict[str, Any]]], *, udp: bool) -> List[Service]:
        found: List[Service] = []
        for name, entry in items:
            if not name or entry.get("provider") == "internal" or name.endswith("@internal"):
                continue
            if _contains_any(name, PROXY_SYSTEM_SERVICES):
                continue
            kind = _service_kind(entry)
            if kind is None:
                logger.debug(f"Skipping proxy service with no known type: {name}")
                continue
            config = copy.deepcopy(entry[kind])
            if udp:
                config = mark_udp_servers(config)
            found.append(
                Service(
                    id=name,
                    name="",
                    type=kind,
                    config=config,
                    source_type=DataSourceType.PROXY_API.value,
                )
            )
        return found


# =============================================================================
# Fetcher Registry
# =============================================================================


def create_fetcher(
    config: DataSourceConfig, request_timeout: float = DEFAULT_REQUEST_TIMEOUT
) -> Fetcher:
    """Factory function to create the fetcher for a data source."""
    if config.type == DataSourceType.GATEWAY:
        return GatewayFetcher(config, request_timeout)
    if config.type == DataSourceType.PROXY_API:
        return ProxyAPIFetcher(config, request_timeout)
    raise ValueError(f"Unsupported data source type: {config.type!r}")
