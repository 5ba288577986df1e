"""Relational store for middlewares, services, resources and their assignments.

Built on SQLAlchemy Core so the same code runs against the bundled SQLite
file and against a networked database. Every write happens inside
`Store.transaction()`, one transaction per row or per assignment change, so a
watcher upsert and an operator edit never interleave inside a row.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, TypeVar

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    event,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine, make_url

from middleware_manager.identifiers import FILE_PROVIDER, get_provider_suffix, normalize_id
from middleware_manager.models import (
    Middleware,
    MiddlewareAssignment,
    Resource,
    ResourceStatus,
    Service,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# =============================================================================
# Schema
# =============================================================================

metadata = MetaData()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


middlewares = Table(
    "middlewares",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("type", String(64), nullable=False),
    Column("config", Text, nullable=False, default="{}"),
    Column("created_at", DateTime, default=_utcnow),
    Column("updated_at", DateTime, default=_utcnow),
)

services = Table(
    "services",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("type", String(64), nullable=False),
    Column("config", Text, nullable=False, default="{}"),
    Column("source_type", String(32), nullable=False, default=""),
    Column("created_at", DateTime, default=_utcnow),
    Column("updated_at", DateTime, default=_utcnow),
)

resources = Table(
    "resources",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("host", String(255), nullable=False),
    Column("service_id", String(255), nullable=False),
    Column("org_id", String(255), nullable=False, default=""),
    Column("site_id", String(255), nullable=False, default=""),
    Column("status", String(16), nullable=False, default=ResourceStatus.ACTIVE.value),
    Column("source_type", String(32), nullable=False, default=""),
    Column("entrypoints", String(255), nullable=False, default="websecure"),
    Column("tls_domains", Text, nullable=False, default=""),
    Column("tcp_enabled", Boolean, nullable=False, default=False),
    Column("tcp_entrypoints", String(255), nullable=False, default="tcp"),
    Column("tcp_sni_rule", Text, nullable=False, default=""),
    Column("custom_headers", Text, nullable=False, default=""),
    Column("router_priority", Integer, nullable=False, default=100),
    Column("created_at", DateTime, default=_utcnow),
    Column("updated_at", DateTime, default=_utcnow),
)

resource_middlewares = Table(
    "resource_middlewares",
    metadata,
    Column(
        "resource_id",
        String(255),
        ForeignKey("resources.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "middleware_id",
        String(255),
        ForeignKey("middlewares.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("priority", Integer, nullable=False, default=100),
    Column("created_at", DateTime, default=_utcnow),
)

# One custom service per resource.
resource_services = Table(
    "resource_services",
    metadata,
    Column(
        "resource_id",
        String(255),
        ForeignKey("resources.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "service_id",
        String(255),
        ForeignKey("services.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("created_at", DateTime, default=_utcnow),
)

RESOURCE_CONFIG_FIELDS = frozenset(
    {
        "entrypoints",
        "tls_domains",
        "custom_headers",
        "router_priority",
        "tcp_enabled",
        "tcp_entrypoints",
        "tcp_sni_rule",
    }
)


class ResourceStateError(Exception):
    """Operation refused because of the current state of a resource."""


# =============================================================================
# Row Decoding
# =============================================================================


def _load_config(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError(f"expected a JSON object, got {type(value).__name__}")
    return value


def _dump_json(value: Dict[str, Any]) -> str:
    return json.dumps(value, sort_keys=True)


def _load_headers(resource_id: str, raw: Optional[str]) -> Dict[str, str]:
    if not raw or raw in ("{}", "null"):
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring unparseable custom headers on resource {resource_id}: {e}")
        return {}
    if not isinstance(value, dict):
        logger.warning(f"Ignoring non-object custom headers on resource {resource_id}")
        return {}
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


def _middleware_from_row(row: Any) -> Middleware:
    return Middleware(
        id=row.id,
        name=row.name,
        type=row.type,
        config=_load_config(row.config),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _service_from_row(row: Any) -> Service:
    return Service(
        id=row.id,
        name=row.name,
        type=row.type,
        config=_load_config(row.config),
        source_type=row.source_type or "",
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _resource_from_row(row: Any) -> Resource:
    return Resource(
        id=row.id,
        host=row.host,
        service_id=row.service_id,
        status=ResourceStatus(row.status),
        source_type=row.source_type or "",
        org_id=row.org_id or "",
        site_id=row.site_id or "",
        entrypoints=row.entrypoints or "",
        tls_domains=row.tls_domains or "",
        router_priority=100 if row.router_priority is None else int(row.router_priority),
        custom_headers=_load_headers(row.id, row.custom_headers),
        tcp_enabled=bool(row.tcp_enabled),
        tcp_entrypoints=row.tcp_entrypoints or "",
        tcp_sni_rule=row.tcp_sni_rule or "",
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _decode_rows(rows: Iterable[Any], decode: Callable[[Any], T], kind: str) -> List[T]:
    """Decode rows, skipping (and logging) the ones that do not parse."""
    decoded: List[T] = []
    for row in rows:
        try:
            decoded.append(decode(row))
        except (ValueError, TypeError) as e:
            logger.warning(f"Skipping {kind} row '{row.id}': {e}")
    return decoded


def _duplicate_preference(service_id: str) -> tuple:
    """Sort key: unsuffixed ids first, then @file, then shorter ids."""
    suffix = get_provider_suffix(service_id)
    if not suffix:
        rank = 0
    elif suffix == FILE_PROVIDER:
        rank = 1
    else:
        rank = 2
    return (rank, len(service_id), service_id)


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# =============================================================================
# Store
# =============================================================================


class Store:
    def __init__(self, url: str, *, echo: bool = False):
        self.url = url
        engine_kwargs: Dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
        parsed = make_url(url)
        if parsed.get_backend_name() == "sqlite":
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if parsed.database and parsed.database != ":memory:":
                Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        self.engine: Engine = create_engine(url, **engine_kwargs)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        metadata.create_all(self.engine)
        logger.info(f"Data store ready ({self.engine.dialect.name})")

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Commit on success, roll back on any exception."""
        with self.engine.begin() as conn:
            yield conn

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list_middlewares(self) -> List[Middleware]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(middlewares).order_by(middlewares.c.id)).all()
        return _decode_rows(rows, _middleware_from_row, "middleware")

    def get_middleware(self, middleware_id: str) -> Optional[Middleware]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(middlewares).where(middlewares.c.id == middleware_id)
            ).first()
        return _middleware_from_row(row) if row is not None else None

    def list_services(self) -> List[Service]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(services).order_by(services.c.id)).all()
        return _decode_rows(rows, _service_from_row, "service")

    def get_service(self, service_id: str) -> Optional[Service]:
        with self.engine.connect() as conn:
            row = conn.execute(select(services).where(services.c.id == service_id)).first()
        return _service_from_row(row) if row is not None else None

    def list_resources(self, status: Optional[ResourceStatus] = None) -> List[Resource]:
        stmt = select(resources).order_by(resources.c.id)
        if status is not None:
            stmt = stmt.where(resources.c.status == status.value)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return _decode_rows(rows, _resource_from_row, "resource")

    def list_active_resources(self) -> List[Resource]:
        return self.list_resources(ResourceStatus.ACTIVE)

    def get_resource(self, resource_id: str) -> Optional[Resource]:
        with self.engine.connect() as conn:
            row = conn.execute(select(resources).where(resources.c.id == resource_id)).first()
        return _resource_from_row(row) if row is not None else None

    def list_resource_ids(self, status: ResourceStatus) -> List[str]:
        with self.engine.connect() as conn:
            return list(
                conn.execute(
                    select(resources.c.id)
                    .where(resources.c.status == status.value)
                    .order_by(resources.c.id)
                ).scalars()
            )

    def list_middleware_assignments(
        self, resource_id: Optional[str] = None
    ) -> List[MiddlewareAssignment]:
        """Assignments ordered by resource, then priority DESC, then middleware id."""
        stmt = select(resource_middlewares).order_by(
            resource_middlewares.c.resource_id,
            resource_middlewares.c.priority.desc(),
            resource_middlewares.c.middleware_id,
        )
        if resource_id is not None:
            stmt = stmt.where(resource_middlewares.c.resource_id == resource_id)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [
            MiddlewareAssignment(
                resource_id=row.resource_id,
                middleware_id=row.middleware_id,
                priority=100 if row.priority is None else int(row.priority),
            )
            for row in rows
        ]

    def list_service_assignments(self) -> Dict[str, str]:
        """resource id -> custom service id."""
        with self.engine.connect() as conn:
            rows = conn.execute(select(resource_services)).all()
        return {row.resource_id: row.service_id for row in rows}

    def find_service_by_normalized_id(self, normalized_id: str) -> Optional[Service]:
        """Exact id match first, then any id that normalizes to the same key.

        Rows whose config does not decode are skipped and logged.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(services)
                .where(services.c.id.startswith(normalized_id, autoescape=True))
                .order_by(services.c.id)
            ).all()
        candidates = _decode_rows(rows, _service_from_row, "service")
        for service in candidates:
            if service.id == normalized_id:
                return service
        for service in candidates:
            if normalize_id(service.id) == normalized_id:
                return service
        return None

    # -------------------------------------------------------------------------
    # Watcher writes
    # -------------------------------------------------------------------------

    def upsert_discovered_resource(self, resource: Resource) -> Optional[ResourceStatus]:
        """Record a resource seen upstream.

        An existing row only gets host, service_id, status=active and
        updated_at; everything the operator configured stays. A new row
        gets the stock defaults. Returns the previous status, or None when
        the row was created.
        """
        now = _utcnow()
        with self.transaction() as conn:
            current = conn.execute(
                select(resources.c.status).where(resources.c.id == resource.id)
            ).scalar_one_or_none()
            if current is not None:
                conn.execute(
                    update(resources)
                    .where(resources.c.id == resource.id)
                    .values(
                        host=resource.host,
                        service_id=resource.service_id,
                        status=ResourceStatus.ACTIVE.value,
                        updated_at=now,
                    )
                )
                return ResourceStatus(current)
            conn.execute(
                insert(resources).values(
                    id=resource.id,
                    host=resource.host,
                    service_id=resource.service_id,
                    org_id=resource.org_id,
                    site_id=resource.site_id,
                    status=ResourceStatus.ACTIVE.value,
                    source_type=resource.source_type,
                    entrypoints="websecure",
                    tls_domains="",
                    tcp_enabled=False,
                    tcp_entrypoints="tcp",
                    tcp_sni_rule="",
                    custom_headers="",
                    router_priority=100,
                    created_at=now,
                    updated_at=now,
                )
            )
        return None

    def disable_resources(self, resource_ids: Iterable[str]) -> int:
        ids = sorted(set(resource_ids))
        if not ids:
            return 0
        with self.transaction() as conn:
            result = conn.execute(
                update(resources)
                .where(resources.c.id.in_(ids))
                .where(resources.c.status == ResourceStatus.ACTIVE.value)
                .values(status=ResourceStatus.DISABLED.value, updated_at=_utcnow())
            )
        return result.rowcount

    def insert_service(self, service: Service) -> bool:
        """Insert unless the id already exists. Returns True when inserted."""
        now = _utcnow()
        with self.transaction() as conn:
            exists = conn.execute(
                select(services.c.id).where(services.c.id == service.id)
            ).first()
            if exists is not None:
                return False
            conn.execute(
                insert(services).values(
                    id=service.id,
                    name=service.name,
                    type=service.type,
                    config=_dump_json(service.config),
                    source_type=service.source_type,
                    created_at=now,
                    updated_at=now,
                )
            )
        return True

    def update_service(self, existing_id: str, service: Service) -> bool:
        with self.transaction() as conn:
            result = conn.execute(
                update(services)
                .where(services.c.id == existing_id)
                .values(
                    name=service.name,
                    type=service.type,
                    config=_dump_json(service.config),
                    updated_at=_utcnow(),
                )
            )
        if result.rowcount == 0:
            logger.warning(f"Update did not affect any rows for service {existing_id}")
        return result.rowcount > 0

    # -------------------------------------------------------------------------
    # Operator writes
    # -------------------------------------------------------------------------

    def upsert_middleware(self, middleware: Middleware) -> None:
        now = _utcnow()
        values = {
            "name": middleware.name,
            "type": middleware.type,
            "config": _dump_json(middleware.config),
            "updated_at": now,
        }
        with self.transaction() as conn:
            exists = conn.execute(
                select(middlewares.c.id).where(middlewares.c.id == middleware.id)
            ).first()
            if exists is not None:
                conn.execute(
                    update(middlewares).where(middlewares.c.id == middleware.id).values(**values)
                )
            else:
                conn.execute(
                    insert(middlewares).values(id=middleware.id, created_at=now, **values)
                )

    def upsert_service(self, service: Service) -> None:
        if not self.insert_service(service):
            self.update_service(service.id, service)

    def _require_active_resource(self, conn: Connection, resource_id: str) -> None:
        status = conn.execute(
            select(resources.c.status).where(resources.c.id == resource_id)
        ).scalar_one_or_none()
        if status is None:
            raise ResourceStateError(f"Resource not found: {resource_id}")
        if status != ResourceStatus.ACTIVE.value:
            raise ResourceStateError(f"Resource {resource_id} is {status}")

    def assign_middleware(self, resource_id: str, middleware_id: str, priority: int = 100) -> None:
        """Attach a middleware; re-assigning replaces the earlier priority."""
        with self.transaction() as conn:
            self._require_active_resource(conn, resource_id)
            known = conn.execute(
                select(middlewares.c.id).where(middlewares.c.id == middleware_id)
            ).first()
            if known is None:
                raise ResourceStateError(f"Middleware not found: {middleware_id}")
            conn.execute(
                delete(resource_middlewares)
                .where(resource_middlewares.c.resource_id == resource_id)
                .where(resource_middlewares.c.middleware_id == middleware_id)
            )
            conn.execute(
                insert(resource_middlewares).values(
                    resource_id=resource_id,
                    middleware_id=middleware_id,
                    priority=int(priority),
                    created_at=_utcnow(),
                )
            )

    def remove_middleware(self, resource_id: str, middleware_id: str) -> bool:
        with self.transaction() as conn:
            result = conn.execute(
                delete(resource_middlewares)
                .where(resource_middlewares.c.resource_id == resource_id)
                .where(resource_middlewares.c.middleware_id == middleware_id)
            )
        return result.rowcount > 0

    def assign_service(self, resource_id: str, service_id: str) -> None:
        with self.transaction() as conn:
            self._require_active_resource(conn, resource_id)
            known = conn.execute(select(services.c.id).where(services.c.id == service_id)).first()
            if known is None:
                raise ResourceStateError(f"Service not found: {service_id}")
            conn.execute(
                delete(resource_services).where(resource_services.c.resource_id == resource_id)
            )
            conn.execute(
                insert(resource_services).values(
                    resource_id=resource_id, service_id=service_id, created_at=_utcnow()
                )
            )

    def remove_service_assignment(self, resource_id: str) -> bool:
        with self.transaction() as conn:
            result = conn.execute(
                delete(resource_services).where(resource_services.c.resource_id == resource_id)
            )
        return result.rowcount > 0

    def update_resource_config(self, resource_id: str, **fields: Any) -> None:
        """Change operator-owned settings of a resource.

        Raises:
            ValueError: for fields that are not operator settings.
            ResourceStateError: if the resource does not exist.
        """
        unknown = set(fields) - RESOURCE_CONFIG_FIELDS
        if unknown:
            raise ValueError(f"Not a resource setting: {', '.join(sorted(unknown))}")
        values = dict(fields)
        if "custom_headers" in values:
            headers = values["custom_headers"] or {}
            values["custom_headers"] = _dump_json(headers) if headers else ""
        if "router_priority" in values:
            values["router_priority"] = int(values["router_priority"])
        if "tcp_enabled" in values:
            values["tcp_enabled"] = bool(values["tcp_enabled"])
        values["updated_at"] = _utcnow()
        with self.transaction() as conn:
            result = conn.execute(
                update(resources).where(resources.c.id == resource_id).values(**values)
            )
            if result.rowcount == 0:
                raise ResourceStateError(f"Resource not found: {resource_id}")

    def delete_resource(self, resource_id: str) -> None:
        """Hard delete, allowed only once the watcher has disabled the resource."""
        with self.transaction() as conn:
            status = conn.execute(
                select(resources.c.status).where(resources.c.id == resource_id)
            ).scalar_one_or_none()
            if status is None:
                raise ResourceStateError(f"Resource not found: {resource_id}")
            if status != ResourceStatus.DISABLED.value:
                raise ResourceStateError(
                    f"Resource {resource_id} is {status}; only disabled resources can be deleted"
                )
            conn.execute(
                delete(resource_middlewares).where(resource_middlewares.c.resource_id == resource_id)
            )
            conn.execute(
                delete(resource_services).where(resource_services.c.resource_id == resource_id)
            )
            conn.execute(delete(resources).where(resources.c.id == resource_id))
        logger.info(f"Deleted resource {resource_id}")

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def cleanup_duplicate_services(self) -> int:
        """Collapse services that normalize to the same id into one row.

        Custom-service assignments pointing at a removed duplicate are moved
        to the kept row. Returns the number of rows removed.
        """
        with self.engine.connect() as conn:
            ids = list(conn.execute(select(services.c.id)).scalars())

        groups: Dict[str, List[str]] = {}
        for service_id in ids:
            groups.setdefault(normalize_id(service_id), []).append(service_id)

        removed = 0
        for normalized, members in sorted(groups.items()):
            if len(members) < 2:
                continue
            members.sort(key=_duplicate_preference)
            keep, duplicates = members[0], members[1:]
            with self.transaction() as conn:
                conn.execute(
                    update(resource_services)
                    .where(resource_services.c.service_id.in_(duplicates))
                    .values(service_id=keep)
                )
                conn.execute(delete(services).where(services.c.id.in_(duplicates)))
            removed += len(duplicates)
            logger.info(
                f"Merged duplicate services for '{normalized}' into {keep}: {', '.join(duplicates)}"
            )
        return removed

    def cleanup_duplicate_resources(self) -> int:
        """Disable all but one active resource per host.

        The kept row is the one with the shortest normalized id. Rows are
        disabled rather than deleted so their assignments survive. Returns
        the number of rows disabled.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(resources.c.id, resources.c.host)
                .where(resources.c.status == ResourceStatus.ACTIVE.value)
                .order_by(resources.c.id)
            ).all()

        by_host: Dict[str, List[str]] = {}
        for row in rows:
            if row.host:
                by_host.setdefault(row.host, []).append(row.id)

        duplicates: List[str] = []
        for host, members in sorted(by_host.items()):
            if len(members) < 2:
                continue
            members.sort(key=lambda resource_id: (len(normalize_id(resource_id)), resource_id))
            keep, extra = members[0], members[1:]
            logger.info(f"Keeping resource {keep} for {host}; disabling duplicates: {', '.join(extra)}")
            duplicates.extend(extra)

        return self.disable_resources(duplicates)
