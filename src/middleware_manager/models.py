"""Data model shared by the store, the watchers and the config generator."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

# =============================================================================
# Enums
# =============================================================================


class DataSourceType(Enum):
    """Upstream truth a data source points at.

    GATEWAY:   gateway-management API exposing an embedded proxy config
               document under /traefik-config.
    PROXY_API: the proxy's own runtime introspection API (/api/...).
    """

    GATEWAY = "gateway"
    PROXY_API = "proxy-api"


class ResourceStatus(Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class ServiceType(Enum):
    LOAD_BALANCER = "loadBalancer"
    WEIGHTED = "weighted"
    MIRRORING = "mirroring"
    FAILOVER = "failover"

    @classmethod
    def values(cls) -> tuple:
        return tuple(t.value for t in cls)


class Protocol(Enum):
    HTTP = "http"
    TCP = "tcp"
    UDP = "udp"


# =============================================================================
# Data Source Configuration
# =============================================================================


@dataclass(frozen=True)
class BasicAuth:
    username: str = ""
    password: str = ""

    def __bool__(self) -> bool:
        return bool(self.username)


@dataclass(frozen=True)
class DataSourceConfig:
    """Connection settings for one upstream data source."""

    type: DataSourceType
    url: str
    basic_auth: BasicAuth = field(default_factory=BasicAuth)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "url": self.url,
            "basic_auth": {
                "username": self.basic_auth.username,
                "password": self.basic_auth.password,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataSourceConfig":
        """Build a config from its JSON form.

        Raises:
            ValueError: if the type is unknown or the url is missing.
        """
        auth = data.get("basic_auth") or {}
        url = str(data.get("url") or "").strip()
        if not url:
            raise ValueError("data source url is required")
        return cls(
            type=DataSourceType(data.get("type")),
            url=url,
            basic_auth=BasicAuth(
                username=str(auth.get("username") or ""),
                password=str(auth.get("password") or ""),
            ),
        )

    def with_url(self, url: str) -> "DataSourceConfig":
        return replace(self, url=url)


# =============================================================================
# Entities
# =============================================================================


@dataclass
class Middleware:
    id: str
    name: str
    type: str
    config: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Service:
    """A backend target definition.

    `id` may carry a provider suffix (@file, @docker, @http). `type` is one of
    ServiceType's values once stored; fetched services may carry anything the
    upstream reported until the watcher maps it.
    """

    id: str
    name: str
    type: str
    config: Dict[str, Any] = field(default_factory=dict)
    source_type: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Resource:
    """A routable host.

    Operator-owned fields (entrypoints, tls_domains, custom_headers,
    router_priority, tcp_*) are never touched by the resource watcher once
    the row exists.
    """

    id: str
    host: str
    service_id: str
    status: ResourceStatus = ResourceStatus.ACTIVE
    source_type: str = ""
    org_id: str = ""
    site_id: str = ""
    entrypoints: str = "websecure"
    tls_domains: str = ""
    router_priority: int = 100
    custom_headers: Dict[str, str] = field(default_factory=dict)
    tcp_enabled: bool = False
    tcp_entrypoints: str = "tcp"
    tcp_sni_rule: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == ResourceStatus.ACTIVE


@dataclass(frozen=True)
class MiddlewareAssignment:
    resource_id: str
    middleware_id: str
    priority: int = 100
