"""Protocol classification for service definitions.

The proxy keeps HTTP, TCP and UDP services in separate tables, but a stored
service only has a kind and a config. A loadBalancer whose servers carry
`url` is HTTP; one whose servers carry `address` is TCP unless something says
UDP: an explicit "udp://" address prefix (written by the fetchers for
services found under a UDP section) or a "udp" token in the id or name.
Composite kinds and loadBalancers with neither field are HTTP.
"""

from __future__ import annotations

import copy
import re
from typing import Any, Dict

from middleware_manager.models import Protocol, ServiceType

UDP_ADDRESS_PREFIX = "udp://"

UDP_TOKEN_RE = re.compile(r"(?:^|[-_.@])udp(?:$|[-_.@])", re.IGNORECASE)


def _has_udp_hint(service_id: str, name: str) -> bool:
    return bool(UDP_TOKEN_RE.search(service_id or "") or UDP_TOKEN_RE.search(name or ""))


def classify_service_protocol(
    service_id: str, service_type: str, config: Dict[str, Any], name: str = ""
) -> Protocol:
    if service_type != ServiceType.LOAD_BALANCER.value:
        return Protocol.HTTP
    servers = config.get("servers")
    if not isinstance(servers, list):
        return Protocol.HTTP
    for server in servers:
        if not isinstance(server, dict):
            continue
        if "url" in server:
            return Protocol.HTTP
        if "address" in server:
            address = server.get("address")
            if isinstance(address, str) and address.lower().startswith(UDP_ADDRESS_PREFIX):
                return Protocol.UDP
            if _has_udp_hint(service_id, name):
                return Protocol.UDP
            return Protocol.TCP
    return Protocol.HTTP


def mark_udp_servers(config: Dict[str, Any]) -> Dict[str, Any]:
    """Prefix server addresses with udp:// so the service classifies as UDP."""
    marked = copy.deepcopy(config)
    for server in marked.get("servers") or []:
        if not isinstance(server, dict):
            continue
        address = server.get("address")
        if isinstance(address, str) and not address.lower().startswith(UDP_ADDRESS_PREFIX):
            server["address"] = UDP_ADDRESS_PREFIX + address
    return marked


def strip_udp_markers(config: Dict[str, Any]) -> Dict[str, Any]:
    """Inverse of mark_udp_servers, applied before the config is published."""
    stripped = copy.deepcopy(config)
    for server in stripped.get("servers") or []:
        if not isinstance(server, dict):
            continue
        address = server.get("address")
        if isinstance(address, str) and address.lower().startswith(UDP_ADDRESS_PREFIX):
            server["address"] = address[len(UDP_ADDRESS_PREFIX):]
    return stripped
