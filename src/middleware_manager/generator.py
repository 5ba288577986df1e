"""Config generator: store rows in, one dynamic proxy configuration file out.

Each tick:

    1. middlewares         -> http.middlewares
    2. services            -> http/tcp/udp.services, by protocol
    3. active resources    -> http.routers (+ per-resource headers middleware)
    4. tcp-enabled ones    -> tcp.routers
    5. field types         -> every known field forced to its declared type
    6. publish             -> skipped when unchanged, else temp file + rename

The proxy only ever sees a complete file, and an unchanged store produces
byte-identical output and no write.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import yaml

from middleware_manager.datasources import DataSourceManager
from middleware_manager.identifiers import (
    FILE_PROVIDER,
    middleware_reference,
    parse_comma_list,
    resolve_service_reference,
    strip_provider_suffix,
)
from middleware_manager.loop import PollingLoop
from middleware_manager.models import (
    DataSourceType,
    MiddlewareAssignment,
    Resource,
    ServiceType,
)
from middleware_manager.protocols import classify_service_protocol, strip_udp_markers
from middleware_manager.store import Store
from middleware_manager.value_types import (
    normalize_middleware_config,
    normalize_service_config,
    preserve_document_values,
)

logger = logging.getLogger(__name__)

OUTPUT_FILENAME = "resource-overrides.yml"
CERT_RESOLVER = "letsencrypt"
GATEWAY_AUTH_MIDDLEWARE = "badger@http"
DEFAULT_HTTP_ENTRYPOINTS = ["websecure"]
DEFAULT_TCP_ENTRYPOINTS = ["tcp"]


class ConfigGenerationError(Exception):
    """The document could not be rendered or published."""


def _empty_document() -> Dict[str, Dict[str, Dict[str, Any]]]:
    return {
        "http": {"middlewares": {}, "routers": {}, "services": {}},
        "tcp": {"routers": {}, "services": {}},
        "udp": {"services": {}},
    }


def _prune_empty(document: Dict[str, Any]) -> Dict[str, Any]:
    """Drop empty tables and sections; `http` always stays."""
    pruned: Dict[str, Any] = {}
    for section, tables in document.items():
        kept = {name: table for name, table in tables.items() if table}
        if kept or section == "http":
            pruned[section] = kept
    return pruned


class ConfigGenerator(PollingLoop):
    expected_errors = PollingLoop.expected_errors + (ConfigGenerationError,)

    def __init__(
        self,
        store: Store,
        datasources: DataSourceManager,
        conf_dir: str,
        *,
        interval: float = 10.0,
    ):
        super().__init__("Config generator", interval)
        self.store = store
        self.datasources = datasources
        self.output_path = Path(conf_dir) / OUTPUT_FILENAME
        self._last_output: Optional[bytes] = None

    def tick(self) -> None:
        self.generate()

    # -------------------------------------------------------------------------
    # Document assembly
    # -------------------------------------------------------------------------

    def build_document(self) -> Dict[str, Any]:
        active_type = self.datasources.get_active_or_fallback().type
        document = _empty_document()

        self._add_middlewares(document)
        self._add_services(document)

        resources = self.store.list_active_resources()
        chains = self._middleware_chains()
        custom_services = self.store.list_service_assignments()
        known_middlewares = set(document["http"]["middlewares"])

        for resource in resources:
            if not (custom_services.get(resource.id) or resource.service_id.strip()):
                logger.warning(f"Skipping resource {resource.id}: no service to route to")
                continue
            self._add_http_router(
                document, resource, chains.get(resource.id, []), known_middlewares,
                custom_services.get(resource.id), active_type,
            )
            if resource.tcp_enabled:
                self._add_tcp_router(document, resource, custom_services.get(resource.id), active_type)

        return _prune_empty(preserve_document_values(document))

    def _middleware_chains(self) -> Dict[str, List[MiddlewareAssignment]]:
        """Assignments per resource, highest priority first."""
        chains: Dict[str, List[MiddlewareAssignment]] = {}
        for assignment in self.store.list_middleware_assignments():
            chains.setdefault(assignment.resource_id, []).append(assignment)
        for assignments in chains.values():
            assignments.sort(key=lambda a: (-a.priority, a.middleware_id))
        return chains

    def _add_middlewares(self, document: Dict[str, Any]) -> None:
        table = document["http"]["middlewares"]
        for middleware in self.store.list_middlewares():
            table[middleware.id] = {
                middleware.type: normalize_middleware_config(middleware.type, middleware.config)
            }

    def _add_services(self, document: Dict[str, Any]) -> None:
        for service in self.store.list_services():
            if service.type not in ServiceType.values():
                logger.warning(f"Skipping service {service.id} with unknown type '{service.type}'")
                continue
            config = normalize_service_config(service.type, service.config)
            protocol = classify_service_protocol(service.id, service.type, config, service.name)
            key = strip_provider_suffix(service.id)
            table = document[protocol.value]["services"]
            if key in table:
                logger.warning(f"Service {service.id} collides with an earlier service named {key}, skipping")
                continue
            table[key] = {service.type: strip_udp_markers(config)}

    def _add_http_router(
        self,
        document: Dict[str, Any],
        resource: Resource,
        assignments: List[MiddlewareAssignment],
        known_middlewares: Set[str],
        custom_service_id: Optional[str],
        active_type: DataSourceType,
    ) -> None:
        base = strip_provider_suffix(resource.id)
        chain: List[str] = []

        if resource.custom_headers:
            headers_name = f"{base}-customheaders"
            document["http"]["middlewares"][headers_name] = {
                "headers": {"customRequestHeaders": dict(resource.custom_headers)}
            }
            chain.append(headers_name + FILE_PROVIDER)

        for assignment in assignments:
            middleware_id = assignment.middleware_id
            if "@" not in middleware_id and middleware_id not in known_middlewares:
                logger.warning(
                    f"Resource {resource.id}: middleware {middleware_id} is not defined, leaving it out"
                )
                continue
            reference = middleware_reference(middleware_id)
            if reference not in chain:
                chain.append(reference)

        if active_type == DataSourceType.GATEWAY and GATEWAY_AUTH_MIDDLEWARE not in chain:
            chain.append(GATEWAY_AUTH_MIDDLEWARE)

        service_reference = resolve_service_reference(
            custom_service_id or resource.service_id,
            source_type=resource.source_type,
            active_type=active_type,
            custom=bool(custom_service_id),
        )
        logger.debug(
            f"Resource {resource.id} (HTTP): service {service_reference} "
            f"(source: {resource.source_type or '-'}, active: {active_type.value})"
        )

        router: Dict[str, Any] = {
            "rule": f"Host(`{resource.host}`)",
            "service": service_reference,
            "entryPoints": parse_comma_list(resource.entrypoints) or list(DEFAULT_HTTP_ENTRYPOINTS),
            "priority": resource.router_priority,
        }
        if chain:
            router["middlewares"] = chain

        tls: Dict[str, Any] = {"certResolver": CERT_RESOLVER}
        sans = parse_comma_list(resource.tls_domains)
        if sans:
            tls["domains"] = [{"main": resource.host, "sans": sans}]
        router["tls"] = tls

        document["http"]["routers"][f"{base}-auth"] = router

    def _add_tcp_router(
        self,
        document: Dict[str, Any],
        resource: Resource,
        custom_service_id: Optional[str],
        active_type: DataSourceType,
    ) -> None:
        base = strip_provider_suffix(resource.id)
        service_reference = resolve_service_reference(
            custom_service_id or resource.service_id,
            source_type=resource.source_type,
            active_type=active_type,
            custom=bool(custom_service_id),
        )
        document["tcp"]["routers"][f"{base}-tcp"] = {
            "rule": resource.tcp_sni_rule.strip() or f"HostSNI(`{resource.host}`)",
            "service": service_reference,
            "entryPoints": parse_comma_list(resource.tcp_entrypoints) or list(DEFAULT_TCP_ENTRYPOINTS),
            "priority": resource.router_priority,
            "tls": {},
        }

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def render(self) -> bytes:
        document = self.build_document()
        try:
            text = yaml.safe_dump(
                document,
                sort_keys=True,
                default_flow_style=False,
                allow_unicode=True,
            )
        except yaml.YAMLError as e:
            raise ConfigGenerationError(f"Failed to serialize configuration: {e}") from e
        return text.encode("utf-8")

    def _previous_output(self) -> Optional[bytes]:
        if self._last_output is None and self.output_path.exists():
            try:
                self._last_output = self.output_path.read_bytes()
            except OSError as e:
                logger.warning(f"Cannot read existing {self.output_path}: {e}")
        return self._last_output

    def _write(self, data: bytes) -> None:
        tmp_path = self.output_path.with_suffix(self.output_path.suffix + ".tmp")
        try:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(data)
            tmp_path.replace(self.output_path)
        except OSError as e:
            raise ConfigGenerationError(f"Failed to write {self.output_path}: {e}") from e

    def generate(self) -> bool:
        """Render and publish. Returns True when the file was (re)written."""
        data = self.render()
        if data == self._previous_output():
            logger.debug("Configuration unchanged, skipping file write")
            return False
        self._write(data)
        self._last_output = data
        logger.info(f"Generated new configuration at {self.output_path}")
        return True
