"""Reconciliation watchers.

Each watcher polls the active data source through a Fetcher and brings the
local rows in line with what the upstream reports, without touching anything
an operator configured on top.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from middleware_manager.datasources import DataSourceManager
from middleware_manager.fetchers import (
    DEFAULT_REQUEST_TIMEOUT,
    Deadline,
    Fetcher,
    create_fetcher,
)
from middleware_manager.identifiers import (
    add_provider_suffix,
    default_service_suffix,
    format_service_name,
    normalize_id,
)
from middleware_manager.loop import PollingLoop
from middleware_manager.models import (
    DataSourceConfig,
    DataSourceType,
    ResourceStatus,
    Service,
    ServiceType,
)
from middleware_manager.store import Store
from middleware_manager.value_types import normalize_service_config

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 30.0

FetcherFactory = Callable[[DataSourceConfig, float], Fetcher]


class _UpstreamWatcher(PollingLoop):
    """Polling loop that follows the active data source from tick to tick."""

    def __init__(
        self,
        name: str,
        store: Store,
        datasources: DataSourceManager,
        *,
        interval: float,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        fetcher_factory: FetcherFactory = create_fetcher,
    ):
        super().__init__(name, interval)
        self.store = store
        self.datasources = datasources
        self.fetch_timeout = fetch_timeout
        self._request_timeout = request_timeout
        self._fetcher_factory = fetcher_factory
        self._fetcher: Optional[Fetcher] = None

    def _refresh_fetcher(self) -> Fetcher:
        config = self.datasources.get_active_or_fallback()
        if self._fetcher is None or self._fetcher.config != config:
            self._fetcher = self._fetcher_factory(config, self._request_timeout)
            logger.info(f"{self.name} using {self._fetcher.name} at {config.url}")
        return self._fetcher


# =============================================================================
# Resource Watcher
# =============================================================================


class ResourceWatcher(_UpstreamWatcher):
    """Keeps resource rows in line with the upstream router list.

    first sighting      -> inserted as active with stock defaults
    seen again          -> host/service refreshed, status back to active
    missing from fetch  -> disabled (never deleted)
    """

    def __init__(self, store: Store, datasources: DataSourceManager, **kwargs: Any):
        super().__init__("Resource watcher", store, datasources, **kwargs)

    def tick(self) -> None:
        fetcher = self._refresh_fetcher()
        fetched = fetcher.fetch_resources(Deadline(self.fetch_timeout))

        previously_active = set(self.store.list_resource_ids(ResourceStatus.ACTIVE))
        seen: Set[str] = set()
        created = reactivated = 0

        for resource in fetched:
            if resource.id in seen:
                logger.debug(f"Duplicate resource {resource.id} in fetch, ignoring")
                continue
            seen.add(resource.id)
            try:
                previous = self.store.upsert_discovered_resource(resource)
            except SQLAlchemyError as e:
                logger.error(f"Error processing resource {resource.id}: {e}")
                continue
            if previous is None:
                created += 1
                logger.info(f"Added new resource: {resource.host} ({resource.id})")
            elif previous == ResourceStatus.DISABLED:
                reactivated += 1
                logger.info(f"Resource {resource.id} was disabled but is now active again")

        if not fetched and previously_active:
            logger.info(
                f"No routers reported upstream; disabling {len(previously_active)} active resource(s)"
            )
        missing = previously_active - seen
        for resource_id in sorted(missing):
            logger.info(f"Resource {resource_id} no longer exists upstream, marking as disabled")
        disabled = self.store.disable_resources(missing)

        logger.info(
            f"Resource check complete: {len(seen)} seen, {created} created, "
            f"{reactivated} reactivated, {disabled} disabled"
        )


# =============================================================================
# Service Watcher
# =============================================================================


def resolve_service_type(service_type: str, config: Dict[str, Any]) -> str:
    """Map whatever the upstream called the type onto a known service type."""
    if service_type in ServiceType.values():
        return service_type
    lowered = (service_type or "").lower()
    if "load" in lowered or "servers" in config:
        return ServiceType.LOAD_BALANCER.value
    if "weight" in lowered:
        return ServiceType.WEIGHTED.value
    if "mirror" in lowered:
        return ServiceType.MIRRORING.value
    if "fail" in lowered:
        return ServiceType.FAILOVER.value
    return ServiceType.LOAD_BALANCER.value


def _server_endpoints(servers: List[Any]) -> List[Any]:
    endpoints = []
    for server in servers:
        if isinstance(server, dict):
            endpoints.append((server.get("url"), server.get("address")))
        else:
            endpoints.append(server)
    return endpoints


def configs_differ(current: Dict[str, Any], incoming: Dict[str, Any]) -> bool:
    """True when two service configs differ in a way worth writing.

    Server lists are compared element-wise on url/address only, so servers
    reported with extra runtime fields or keys in another order compare equal.
    """
    if set(current) != set(incoming):
        return True
    for key, value in current.items():
        other = incoming[key]
        if key == "servers" and isinstance(value, list) and isinstance(other, list):
            if _server_endpoints(value) != _server_endpoints(other):
                return True
            continue
        if value != other:
            return True
    return False


class ServiceWatcher(_UpstreamWatcher):
    """Keeps service rows in line with the upstream service list.

    The same service can be reported as "svc@docker" by the proxy and
    "svc@http" by the gateway, so rows are matched on the normalized id.
    Services that disappear upstream are kept: operators attach them to
    resources by hand.
    """

    def __init__(self, store: Store, datasources: DataSourceManager, **kwargs: Any):
        super().__init__("Service watcher", store, datasources, **kwargs)

    def tick(self) -> None:
        active = self.datasources.get_active_or_fallback()
        fetcher = self._refresh_fetcher()
        fetched = fetcher.fetch_services(Deadline(self.fetch_timeout))

        if not fetched:
            logger.info("No services found in data source")
            return

        seen: Set[str] = set()
        counts = {"created": 0, "updated": 0, "unchanged": 0}
        for service in fetched:
            if not service.id or not service.type:
                logger.debug(f"Skipping service without id or type: {service!r}")
                continue
            if not service.source_type:
                service.source_type = active.type.value
            try:
                outcome = self.reconcile_service(service, active.type)
            except (SQLAlchemyError, ValueError) as e:
                logger.error(f"Error processing service {service.id}: {e}")
                continue
            counts[outcome] += 1
            seen.add(normalize_id(service.id))

        missing = [s.id for s in self.store.list_services() if normalize_id(s.id) not in seen]
        if missing:
            logger.debug(
                f"{len(missing)} stored service(s) not reported upstream, keeping: {', '.join(missing)}"
            )
        logger.info(
            f"Service check complete: {counts['created']} created, {counts['updated']} updated, "
            f"{counts['unchanged']} unchanged"
        )

    def reconcile_service(self, service: Service, active_type: DataSourceType) -> str:
        """Create or update the row for one fetched service.

        Returns "created", "updated" or "unchanged".
        """
        normalized = normalize_id(service.id)
        service_type = resolve_service_type(service.type, service.config)
        config = normalize_service_config(service_type, service.config)
        upstream_named = bool(service.name) and service.name != service.id

        existing = self.store.find_service_by_normalized_id(normalized)
        if existing is not None:
            if existing.type == service_type and not configs_differ(existing.config, config):
                return "unchanged"
            name = service.name if upstream_named else existing.name or format_service_name(normalized)
            logger.info(f"Updating existing service: {existing.id} (from {service.id})")
            self.store.update_service(
                existing.id,
                Service(id=existing.id, name=name, type=service_type, config=config),
            )
            return "updated"

        new_id = add_provider_suffix(normalized, default_service_suffix(active_type))
        name = service.name if upstream_named else format_service_name(normalized)
        inserted = self.store.insert_service(
            Service(
                id=new_id,
                name=name,
                type=service_type,
                config=config,
                source_type=service.source_type,
            )
        )
        if not inserted:
            return "unchanged"
        logger.info(f"Created new service: {new_id}")
        return "created"
